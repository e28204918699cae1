"""Interactive wait for one document's extraction to complete.

Completion means the document's extracted text is non-empty. The tracker
re-reads the document at most ``max_attempts`` times; between reads it
waits on the document's completion event for up to ``interval`` seconds,
so a published completion is picked up immediately while the overall
wait never exceeds ``max_attempts * interval``.
"""

from dataclasses import dataclass, field
from typing import Any

from src.storage.base import DocumentStore
from src.utils.logger import get_logger

from .errors import PollReadError, PollTimeout
from .events import CompletionHub, wait_until_set
from .models import Document

logger = get_logger(__name__)


@dataclass
class PollSession:
    """Attempt bookkeeping for one interactive wait."""

    document_id: str
    interval: float
    max_attempts: int
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass
class CompletedExtraction:
    """Populated fields of a document whose extraction finished."""

    document_id: str
    extracted_text: str
    extracted_metadata: dict[str, Any]
    line_items: list[dict[str, Any]] = field(default_factory=list)
    word_bounding_boxes: list[dict[str, Any]] = field(default_factory=list)
    confidence_score: float | None = None
    attempts: int = 0

    @classmethod
    def from_document(cls, document: Document, attempts: int) -> "CompletedExtraction":
        return cls(
            document_id=document.id,
            extracted_text=document.extracted_text,
            extracted_metadata=document.extracted_metadata,
            line_items=document.line_items,
            word_bounding_boxes=document.word_bounding_boxes,
            confidence_score=document.confidence_score,
            attempts=attempts,
        )


class CompletionTracker:
    """Waits for a single document to be extracted.

    Args:
        store: Document store to re-read from.
        hub: Completion events published by the extraction worker.
        interval: Seconds between reads.
        max_attempts: Maximum number of reads.
    """

    def __init__(
        self,
        store: DocumentStore,
        hub: CompletionHub,
        interval: float = 2.0,
        max_attempts: int = 30,
    ) -> None:
        self.store = store
        self.hub = hub
        self.interval = interval
        self.max_attempts = max_attempts

    async def wait_for(self, document_id: str) -> CompletedExtraction:
        """Wait until the document has extracted text.

        Raises:
            PollTimeout: If all attempts ran without text appearing. The
                extraction job keeps running and may still complete.
            PollReadError: If re-reading the document fails. Not retried.
        """
        session = PollSession(
            document_id=document_id,
            interval=self.interval,
            max_attempts=self.max_attempts,
        )
        with self.hub.subscribe([document_id]) as events:
            while not session.exhausted:
                session.attempts += 1
                try:
                    document = await self.store.get_document(document_id)
                except Exception as exc:
                    raise PollReadError(
                        f"Could not read document {document_id}: {exc}",
                        document_id=document_id,
                    ) from exc
                if document is None:
                    raise PollReadError(
                        f"Document {document_id} no longer exists",
                        document_id=document_id,
                    )

                if document.is_extracted:
                    logger.info(
                        "Document %s extracted after %d poll(s)",
                        document_id,
                        session.attempts,
                    )
                    return CompletedExtraction.from_document(document, session.attempts)

                if not session.exhausted:
                    await wait_until_set(events, session.interval)

        logger.warning(
            "Document %s not extracted after %d attempts; it may still complete",
            document_id,
            session.attempts,
        )
        raise PollTimeout(
            "Processing is taking longer than expected. "
            "The document will appear in the queue when it completes.",
            document_id=document_id,
        )
