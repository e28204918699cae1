"""Quota gate in front of document registration.

Units are reserved with a single atomic conditional decrement before any
document row is written, so concurrent submissions can never over-allocate
a license. After the document exists, the reservation is tied to it in the
usage ledger; if registration fails instead, the units are given back.
"""

from dataclasses import dataclass

from src.pipeline.errors import QuotaCheckError, QuotaExceeded
from src.storage.base import LicenseStore
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class QuotaReservation:
    """Units taken from a license and not yet tied to a document."""

    license_id: str | None
    units: int
    settled: bool = False

    @property
    def unmetered(self) -> bool:
        return self.license_id is None


class LicenseGate:
    """Checks and consumes document quota units.

    Args:
        store: License store holding the quota.
        license_id: License to meter against. ``None`` leaves the gate
            open (unlicensed or administrative installs).
    """

    def __init__(self, store: LicenseStore, license_id: str | None) -> None:
        self.store = store
        self.license_id = license_id

    async def has_capacity(self, units: int = 1) -> bool:
        """Read-only check that at least ``units`` remain.

        Nothing is taken from the license, so the answer can be stale by
        the time a submission arrives. Submissions go through
        :meth:`reserve`; this backs the license status endpoint.
        """
        if self.license_id is None:
            return True
        license = await self.store.get_license(self.license_id)
        if license is None:
            return False
        return license.has_capacity(units)

    async def reserve(
        self, units: int = 1, file_name: str | None = None
    ) -> QuotaReservation:
        """Atomically take ``units`` from the license.

        Args:
            units: Units to take.
            file_name: File the units are for, attached to any error.

        Raises:
            QuotaExceeded: If the license lacks capacity, is inactive, or
                has expired. Nothing has been written in that case.
            QuotaCheckError: If the license store itself failed.
        """
        if self.license_id is None:
            return QuotaReservation(license_id=None, units=units)

        try:
            available = await self.store.consume_if_available(self.license_id, units)
        except Exception as exc:
            logger.error("Could not check license %s: %s", self.license_id, exc)
            raise QuotaCheckError(
                f"Could not check license {self.license_id}: {exc}",
                file_name=file_name,
            ) from exc
        if not available:
            logger.warning(
                "License %s has no capacity for %d document(s)",
                self.license_id,
                units,
            )
            raise QuotaExceeded(
                "Your license has insufficient document capacity. "
                "Please contact your administrator.",
                file_name=file_name,
            )
        return QuotaReservation(license_id=self.license_id, units=units)

    async def consume(
        self, reservation: QuotaReservation, document_id: str, user_id: str
    ) -> bool:
        """Tie a reservation to the document that used it.

        A ledger failure does not affect the already created document; it
        is logged and reported back as ``False`` so the caller can surface
        a non-blocking warning.

        Returns:
            True if the usage was recorded (or nothing needed recording).
        """
        reservation.settled = True
        if reservation.unmetered:
            return True
        try:
            await self.store.record_usage(
                reservation.license_id, document_id, reservation.units, user_id
            )
        except Exception as exc:
            logger.warning(
                "Document %s saved but license usage was not recorded: %s",
                document_id,
                exc,
            )
            return False
        return True

    async def release(self, reservation: QuotaReservation) -> None:
        """Give back an unused reservation after a failed registration."""
        if reservation.unmetered or reservation.settled:
            return
        reservation.settled = True
        try:
            await self.store.release(reservation.license_id, reservation.units)
        except Exception as exc:
            logger.error(
                "Could not release %d unit(s) on license %s: %s",
                reservation.units,
                reservation.license_id,
                exc,
            )
