"""Batch-wide follow-on automation after a multi-file submission.

Two best-effort triggers run once per submission: bounded-concurrency
batch extraction, then duplicate detection across the batch once the
submitted documents report extraction complete (or the wait bound runs
out). Failures are logged and never retried or rolled back into the
submission's own success/failure tally.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from src.storage.base import DocumentStore
from src.utils.config import AutomationConfig, DuplicateThresholds
from src.utils.logger import get_logger

from .errors import AutomationTriggerError
from .events import CompletionHub, wait_until_set
from .models import DuplicateMatch

logger = get_logger(__name__)


@dataclass
class BatchExtractionRequest:
    batch_id: str
    max_parallel: int


@dataclass
class DuplicateCheckRequest:
    document_id: str
    batch_id: str
    check_cross_batch: bool
    thresholds: DuplicateThresholds


class BatchExtractionTrigger(ABC):
    """Asks the extraction tier to process a batch's pending documents."""

    @abstractmethod
    async def trigger(self, request: BatchExtractionRequest) -> None:
        """Start (or run) extraction of the batch under ``max_parallel``."""


class DuplicateDetectionTrigger(ABC):
    """Runs duplicate detection for one document against its batch."""

    @abstractmethod
    async def detect(self, request: DuplicateCheckRequest) -> list[DuplicateMatch]:
        """Return the probable duplicates found for the document."""


@dataclass
class AutomationReport:
    """What one automation run did; used for logging and tests."""

    batch_id: str
    extraction_triggered: bool = False
    extraction_error: str | None = None
    all_completed: bool = False
    documents_checked: int = 0
    duplicates_found: int = 0
    detection_errors: dict[str, str] = field(default_factory=dict)


class BatchAutomationCoordinator:
    """Triggers batch extraction and duplicate detection after a submission.

    Args:
        store: Document store, re-read before duplicate detection.
        hub: Completion events published by the extraction worker.
        extraction: Batch extraction trigger.
        duplicates: Duplicate detection trigger.
        config: Concurrency cap, wait bound, and thresholds.
    """

    def __init__(
        self,
        store: DocumentStore,
        hub: CompletionHub,
        extraction: BatchExtractionTrigger,
        duplicates: DuplicateDetectionTrigger,
        config: AutomationConfig,
    ) -> None:
        self.store = store
        self.hub = hub
        self.extraction = extraction
        self.duplicates = duplicates
        self.config = config

    async def run(
        self, batch_id: str, succeeded: int, document_ids: list[str]
    ) -> AutomationReport:
        """Run both triggers for a finished submission.

        Args:
            batch_id: Batch the files were submitted to.
            succeeded: Number of files that were registered.
            document_ids: Ids of the documents registered by the submission.

        Returns:
            A report of what ran. This method does not raise.
        """
        report = AutomationReport(batch_id=batch_id)
        if not self.config.enabled:
            logger.info("Batch automation disabled, skipping batch %s", batch_id)
            return report
        if succeeded < 1:
            logger.info("No documents registered in batch %s, skipping automation", batch_id)
            return report

        try:
            await self._trigger_extraction(batch_id)
            report.extraction_triggered = True
        except AutomationTriggerError as exc:
            report.extraction_error = exc.message
            logger.error("Batch extraction trigger failed: %s", exc.message)

        report.all_completed = await self._wait_for_extraction(document_ids)
        if not report.all_completed:
            logger.info(
                "Batch %s: not every document finished within %.1fs, "
                "checking duplicates on what is there",
                batch_id,
                self.config.duplicate_check_delay,
            )
        try:
            await self._detect_duplicates(batch_id, report)
        except AutomationTriggerError as exc:
            logger.error("Duplicate detection failed for batch %s: %s", batch_id, exc.message)
        return report

    async def _wait_for_extraction(self, document_ids: list[str]) -> bool:
        with self.hub.subscribe(document_ids) as events:
            pending = [
                event
                for document_id, event in zip(document_ids, events)
                if not await self._is_extracted(document_id)
            ]
            return await wait_until_set(pending, self.config.duplicate_check_delay)

    async def _is_extracted(self, document_id: str) -> bool:
        try:
            document = await self.store.get_document(document_id)
        except Exception as exc:
            logger.warning("Could not read document %s: %s", document_id, exc)
            return False
        return document is None or document.is_extracted

    async def _trigger_extraction(self, batch_id: str) -> None:
        request = BatchExtractionRequest(
            batch_id=batch_id, max_parallel=self.config.max_parallel
        )
        logger.info(
            "Triggering batch extraction for %s (max %d parallel)",
            batch_id,
            request.max_parallel,
        )
        try:
            await self.extraction.trigger(request)
        except Exception as exc:
            raise AutomationTriggerError(
                f"Batch extraction for {batch_id} failed: {exc}"
            ) from exc

    async def _detect_duplicates(self, batch_id: str, report: AutomationReport) -> None:
        try:
            documents = await self.store.list_documents(batch_id=batch_id)
        except Exception as exc:
            raise AutomationTriggerError(
                f"Could not list documents of batch {batch_id}: {exc}"
            ) from exc

        if len(documents) < 2:
            logger.info(
                "Batch %s has %d document(s), skipping duplicate detection",
                batch_id,
                len(documents),
            )
            return

        for document in documents:
            request = DuplicateCheckRequest(
                document_id=document.id,
                batch_id=batch_id,
                check_cross_batch=self.config.check_cross_batch,
                thresholds=self.config.thresholds,
            )
            try:
                matches = await self.duplicates.detect(request)
            except Exception as exc:
                report.detection_errors[document.id] = str(exc)
                logger.error(
                    "Duplicate detection failed for document %s: %s", document.id, exc
                )
                continue
            report.documents_checked += 1
            report.duplicates_found += len(matches)

        logger.info(
            "Duplicate detection for batch %s: %d checked, %d probable duplicate(s)",
            batch_id,
            report.documents_checked,
            report.duplicates_found,
        )
