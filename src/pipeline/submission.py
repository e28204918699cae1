"""Submission entry points: single capture, interactive wait, and multi-file.

Per-file pipeline::

    capture -> CaptureNormalizer -> LicenseGate -> DocumentRegistrar
            -> JobDispatcher [-> CompletionTracker]

A multi-file submission fans every file out through one concurrency
limiter, tallies successes and failures independently, and then hands
the batch to the automation coordinator.
"""

import asyncio
from dataclasses import dataclass, field

from src.capture.normalizer import CaptureNormalizer
from src.licensing.gate import LicenseGate
from src.storage.base import DocumentStore
from src.utils.logger import get_logger

from .automation import AutomationReport, BatchAutomationCoordinator
from .dispatcher import JobDispatcher
from .errors import PipelineError
from .limiter import ConcurrencyLimiter
from .models import (
    BatchStatus,
    Capture,
    Document,
    Job,
    NormalizedPayload,
    SubmissionContext,
)
from .registrar import DocumentRegistrar
from .tracker import CompletedExtraction, CompletionTracker

logger = get_logger(__name__)

LICENSE_WARNING = "Document saved but license was not updated"


@dataclass
class SubmissionResult:
    """Outcome of submitting one capture."""

    file_name: str
    document: Document | None = None
    job: Job | None = None
    payload: NormalizedPayload | None = None
    error: PipelineError | None = None
    warnings: list[str] = field(default_factory=list)
    extraction: CompletedExtraction | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.job is not None

    @property
    def document_id(self) -> str | None:
        if self.document is not None:
            return self.document.id
        if self.error is not None:
            return self.error.document_id
        return None


@dataclass
class BatchSubmissionResult:
    """Outcome of a multi-file submission."""

    batch_id: str
    results: list[SubmissionResult]
    automation: AutomationReport | None = None

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.succeeded)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @property
    def registered_ids(self) -> list[str]:
        return [r.document_id for r in self.results if r.document_id is not None]


class IngestionPipeline:
    """Runs captures through normalization, gating, registration, and dispatch.

    Args:
        normalizer: Capture normalizer.
        gate: License gate.
        registrar: Document registrar.
        dispatcher: Job dispatcher.
        tracker: Completion tracker for interactive submissions.
        coordinator: Batch automation coordinator.
        store: Document store (batch status updates).
        max_concurrency: Cap on concurrently processed files per submission.
        units_per_document: License units consumed per document.
    """

    def __init__(
        self,
        normalizer: CaptureNormalizer,
        gate: LicenseGate,
        registrar: DocumentRegistrar,
        dispatcher: JobDispatcher,
        tracker: CompletionTracker,
        coordinator: BatchAutomationCoordinator,
        store: DocumentStore,
        max_concurrency: int = 3,
        units_per_document: int = 1,
    ) -> None:
        self.normalizer = normalizer
        self.gate = gate
        self.registrar = registrar
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.coordinator = coordinator
        self.store = store
        self.max_concurrency = max_concurrency
        self.units_per_document = units_per_document

    async def submit(self, capture: Capture, context: SubmissionContext) -> SubmissionResult:
        """Submit one capture and queue its extraction.

        Raises:
            CaptureError: The capture could not be normalized.
            QuotaExceeded: No capacity; nothing was written.
            QuotaCheckError: The license store failed; nothing was written.
            UploadError: The payload could not be stored.
            RegistrationError: The document row could not be written.
            JobDispatchError: The job could not be queued; the document
                exists and stays pending.
        """
        result = SubmissionResult(file_name=capture.file_name)

        payload = await asyncio.to_thread(self.normalizer.normalize, capture)
        result.payload = payload

        reservation = await self.gate.reserve(
            self.units_per_document, file_name=capture.file_name
        )
        try:
            document, payload = await self.registrar.register(payload, context)
        except PipelineError:
            await self.gate.release(reservation)
            raise
        result.document = document
        result.payload = payload

        if not await self.gate.consume(reservation, document.id, context.submitted_by):
            result.warnings.append(LICENSE_WARNING)

        result.job = await self.dispatcher.dispatch(document, payload, context)
        return result

    async def submit_and_wait(
        self, capture: Capture, context: SubmissionContext
    ) -> SubmissionResult:
        """Submit one capture and wait for its extraction (interactive flow).

        Raises:
            PollTimeout: Extraction did not finish in time; the document
                may still complete later.
            PollReadError: The document could not be re-read.
            PipelineError: Any error ``submit`` raises.
        """
        result = await self.submit(capture, context)
        result.extraction = await self.tracker.wait_for(result.document.id)
        return result

    async def submit_many(
        self,
        captures: list[Capture],
        context: SubmissionContext,
        automate: bool = True,
    ) -> BatchSubmissionResult:
        """Submit several captures into one batch.

        Every file is attempted; a failing file never stops the others.
        With ``automate`` the batch automation coordinator runs once all
        files have been attempted; otherwise the caller is expected to
        call ``automate`` itself (e.g. as a background task).
        """
        await self._mark_scanning(context.batch_id)

        limiter = ConcurrencyLimiter(self.max_concurrency, name="submission")
        outcomes = await limiter.map(lambda c: self.submit(c, context), captures)

        results: list[SubmissionResult] = []
        for capture, outcome in zip(captures, outcomes):
            if isinstance(outcome, SubmissionResult):
                results.append(outcome)
            elif isinstance(outcome, PipelineError):
                logger.error("Error processing file %s: %s", capture.file_name, outcome.message)
                results.append(
                    SubmissionResult(
                        file_name=capture.file_name,
                        error=outcome,
                    )
                )
            else:
                raise outcome

        batch_result = BatchSubmissionResult(batch_id=context.batch_id, results=results)
        logger.info(
            "Batch %s: %d of %d file(s) submitted",
            context.batch_id,
            batch_result.successful,
            batch_result.total,
        )
        if automate:
            batch_result.automation = await self.automate(batch_result)
        return batch_result

    async def automate(self, batch_result: BatchSubmissionResult) -> AutomationReport:
        """Run batch automation for a finished multi-file submission."""
        return await self.coordinator.run(
            batch_result.batch_id,
            succeeded=batch_result.successful,
            document_ids=batch_result.registered_ids,
        )

    async def _mark_scanning(self, batch_id: str) -> None:
        try:
            batch = await self.store.get_batch(batch_id)
            if batch is not None and batch.status == BatchStatus.NEW:
                await self.store.update_batch_status(batch_id, BatchStatus.SCANNING)
        except Exception as exc:
            logger.warning("Could not mark batch %s as scanning: %s", batch_id, exc)

