"""Abstract interfaces for the pipeline's external collaborators.

The pipeline talks to the document/batch store, the license store, the
job queue, and durable blob storage only through these interfaces, so
backends can be swapped:
- In-memory (tests, single-process demos)
- SQLite (single-instance deployments)
- A hosted relational store / object store (production)
"""

from abc import ABC, abstractmethod

from src.pipeline.models import (
    Batch,
    BatchStatus,
    Document,
    DuplicateMatch,
    ExtractionResult,
    Job,
    License,
    ValidationStatus,
)


class DocumentStore(ABC):
    """Persistent store for documents, batches, and duplicate detections."""

    @abstractmethod
    async def create_batch(self, batch: Batch) -> Batch:
        """Persist a new batch and return it."""

    @abstractmethod
    async def get_batch(self, batch_id: str) -> Batch | None:
        """Return a batch by id, or None if it does not exist."""

    @abstractmethod
    async def update_batch_status(self, batch_id: str, status: BatchStatus) -> Batch:
        """Move a batch to a new status.

        Raises:
            LookupError: If the batch does not exist
            InvalidTransition: If the lifecycle does not allow the change
        """

    @abstractmethod
    async def create_document(self, document: Document) -> Document:
        """Persist a new document and count it in its batch.

        The insert and the increment of the batch's total and processed
        counters happen atomically: either both are applied or neither.

        Raises:
            LookupError: If the document's batch does not exist
        """

    @abstractmethod
    async def get_document(self, document_id: str) -> Document | None:
        """Return a document by id, or None if it does not exist."""

    @abstractmethod
    async def list_documents(
        self,
        batch_id: str | None = None,
        status: ValidationStatus | None = None,
    ) -> list[Document]:
        """List documents, optionally filtered by batch and validation status."""

    @abstractmethod
    async def save_extraction(self, document_id: str, result: ExtractionResult) -> Document:
        """Write extraction output back onto a document.

        Raises:
            LookupError: If the document does not exist
        """

    @abstractmethod
    async def set_validation_status(
        self, document_id: str, status: ValidationStatus
    ) -> bool:
        """Set a document's validation status. Returns False if not found."""

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        """Delete a document. Returns False if not found.

        Batch counters are left as they are.
        """

    @abstractmethod
    async def record_duplicates(self, matches: list[DuplicateMatch]) -> None:
        """Persist duplicate detection results."""

    @abstractmethod
    async def list_duplicates(self, batch_id: str) -> list[DuplicateMatch]:
        """List duplicate detection results recorded for a batch."""


class LicenseStore(ABC):
    """Store for license quotas and their usage ledger."""

    @abstractmethod
    async def get_license(self, license_id: str) -> License | None:
        """Return a license by id, or None if it does not exist."""

    @abstractmethod
    async def save_license(self, license: License) -> None:
        """Create or replace a license."""

    @abstractmethod
    async def consume_if_available(self, license_id: str, units: int) -> bool:
        """Atomically decrement the remaining units if capacity allows.

        The capacity check and the decrement are a single operation; a
        license that reaches zero becomes exhausted.

        Returns:
            True if the units were taken, False if capacity was lacking
        """

    @abstractmethod
    async def release(self, license_id: str, units: int) -> None:
        """Give back units taken by an unused reservation."""

    @abstractmethod
    async def record_usage(
        self, license_id: str, document_id: str, units: int, user_id: str
    ) -> None:
        """Append a usage entry tying consumed units to a document."""


class JobQueue(ABC):
    """Queue of extraction jobs addressed to the extraction worker."""

    @abstractmethod
    async def enqueue(self, job: Job) -> Job:
        """Durably queue a job and return it with its assigned id."""

    @abstractmethod
    async def claim_next(self) -> Job | None:
        """Take the highest-priority, oldest unclaimed job, or None."""

    @abstractmethod
    async def claim_for_document(self, document_id: str) -> Job | None:
        """Take the oldest unclaimed job for one document, or None.

        Claims are exclusive across both claim methods: a job handed out
        once is never handed out again.
        """

    @abstractmethod
    async def list_jobs(self, document_id: str | None = None) -> list[Job]:
        """List queued jobs, optionally only those for one document."""


class BlobStorage(ABC):
    """Durable object storage for captured payloads."""

    @abstractmethod
    async def put(self, data: bytes, content_type: str) -> str:
        """Store bytes and return a reference to them."""

    @abstractmethod
    async def get(self, reference: str) -> bytes:
        """Load bytes by reference.

        Raises:
            KeyError: If nothing is stored under the reference
        """
