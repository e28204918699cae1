"""In-memory implementations of the pipeline stores.

Records are copied on the way in and out so callers never share mutable
state with the store. Each store serializes its mutations with an
asyncio lock, which is what makes create-and-count and the conditional
quota decrement atomic within one event loop.
"""

import asyncio
import copy
import itertools

from src.pipeline.models import (
    Batch,
    BatchStatus,
    Document,
    DuplicateMatch,
    ExtractionResult,
    Job,
    License,
    LicenseStatus,
    ValidationStatus,
    next_batch_status,
    utcnow,
)

from .base import DocumentStore, JobQueue, LicenseStore

PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed document and batch store."""

    def __init__(self) -> None:
        self._documents: dict[str, Document] = {}
        self._batches: dict[str, Batch] = {}
        self._duplicates: list[DuplicateMatch] = []
        self._lock = asyncio.Lock()

    async def create_batch(self, batch: Batch) -> Batch:
        async with self._lock:
            self._batches[batch.id] = copy.deepcopy(batch)
        return copy.deepcopy(batch)

    async def get_batch(self, batch_id: str) -> Batch | None:
        batch = self._batches.get(batch_id)
        return copy.deepcopy(batch) if batch else None

    async def update_batch_status(self, batch_id: str, status: BatchStatus) -> Batch:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise LookupError(f"Batch not found: {batch_id}")
            batch.status = next_batch_status(batch.status, status)
            return copy.deepcopy(batch)

    async def create_document(self, document: Document) -> Document:
        async with self._lock:
            batch = self._batches.get(document.batch_id)
            if batch is None:
                raise LookupError(f"Batch not found: {document.batch_id}")
            self._documents[document.id] = copy.deepcopy(document)
            batch.total_documents += 1
            batch.processed_documents += 1
        return copy.deepcopy(document)

    async def get_document(self, document_id: str) -> Document | None:
        document = self._documents.get(document_id)
        return copy.deepcopy(document) if document else None

    async def list_documents(
        self,
        batch_id: str | None = None,
        status: ValidationStatus | None = None,
    ) -> list[Document]:
        documents = [
            doc
            for doc in self._documents.values()
            if (batch_id is None or doc.batch_id == batch_id)
            and (status is None or doc.validation_status == status)
        ]
        documents.sort(key=lambda d: d.created_at)
        return copy.deepcopy(documents)

    async def save_extraction(self, document_id: str, result: ExtractionResult) -> Document:
        async with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                raise LookupError(f"Document not found: {document_id}")
            document.extracted_text = result.extracted_text
            document.extracted_metadata = dict(result.extracted_metadata)
            document.line_items = list(result.line_items)
            document.word_bounding_boxes = list(result.word_bounding_boxes)
            document.confidence_score = result.confidence_score
            return copy.deepcopy(document)

    async def set_validation_status(
        self, document_id: str, status: ValidationStatus
    ) -> bool:
        async with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                return False
            document.validation_status = status
            return True

    async def delete_document(self, document_id: str) -> bool:
        async with self._lock:
            return self._documents.pop(document_id, None) is not None

    async def record_duplicates(self, matches: list[DuplicateMatch]) -> None:
        async with self._lock:
            self._duplicates.extend(copy.deepcopy(matches))

    async def list_duplicates(self, batch_id: str) -> list[DuplicateMatch]:
        return copy.deepcopy([m for m in self._duplicates if m.batch_id == batch_id])


class InMemoryLicenseStore(LicenseStore):
    """Dictionary-backed license store with a usage ledger."""

    def __init__(self) -> None:
        self._licenses: dict[str, License] = {}
        self.usage: list[dict] = []
        self._lock = asyncio.Lock()

    async def get_license(self, license_id: str) -> License | None:
        license = self._licenses.get(license_id)
        return copy.deepcopy(license) if license else None

    async def save_license(self, license: License) -> None:
        async with self._lock:
            self._licenses[license.id] = copy.deepcopy(license)

    async def consume_if_available(self, license_id: str, units: int) -> bool:
        async with self._lock:
            license = self._licenses.get(license_id)
            if license is None or not license.has_capacity(units):
                return False
            license.remaining_documents -= units
            if license.remaining_documents == 0:
                license.status = LicenseStatus.EXHAUSTED
            return True

    async def release(self, license_id: str, units: int) -> None:
        async with self._lock:
            license = self._licenses.get(license_id)
            if license is None:
                return
            license.remaining_documents += units
            if license.status == LicenseStatus.EXHAUSTED and license.remaining_documents > 0:
                license.status = LicenseStatus.ACTIVE

    async def record_usage(
        self, license_id: str, document_id: str, units: int, user_id: str
    ) -> None:
        async with self._lock:
            self.usage.append({
                "license_id": license_id,
                "document_id": document_id,
                "documents_used": units,
                "user_id": user_id,
                "created_at": utcnow().isoformat(),
            })


class InMemoryJobQueue(JobQueue):
    """List-backed job queue ordered by priority, then age."""

    def __init__(self) -> None:
        self._jobs: list[Job] = []
        self._claimed: set[str] = set()
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def enqueue(self, job: Job) -> Job:
        async with self._lock:
            stored = copy.deepcopy(job)
            stored.id = str(next(self._ids))
            self._jobs.append(stored)
        return copy.deepcopy(stored)

    async def claim_next(self) -> Job | None:
        return await self._claim(None)

    async def claim_for_document(self, document_id: str) -> Job | None:
        return await self._claim(document_id)

    async def _claim(self, document_id: str | None) -> Job | None:
        async with self._lock:
            pending = [
                j for j in self._jobs
                if j.id not in self._claimed
                and (document_id is None or j.document_id == document_id)
            ]
            if not pending:
                return None
            job = min(
                pending,
                key=lambda j: (PRIORITY_RANK.get(j.priority, 2), j.created_at),
            )
            self._claimed.add(job.id)
            return copy.deepcopy(job)

    async def list_jobs(self, document_id: str | None = None) -> list[Job]:
        return copy.deepcopy([
            j for j in self._jobs
            if document_id is None or j.document_id == document_id
        ])
