"""Domain records shared by the pipeline, the stores, and the worker."""

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from src.utils.config import ProjectSettings

from .errors import InvalidTransition

EXTRACT_DOCUMENT_JOB = "extract_document"


def new_id() -> str:
    """Generate a new record identifier."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class FileType(StrEnum):
    """Kind of file a document was captured from."""

    IMAGE = "image"
    PDF = "pdf"


class CaptureSource(StrEnum):
    """Where a capture came from."""

    UPLOAD = "upload"
    CAMERA = "camera"
    SCANNER = "scanner"


class ValidationStatus(StrEnum):
    """Operator validation state of a document."""

    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    NEEDS_REVIEW = "needs_review"


class JobPriority(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class BatchStatus(StrEnum):
    """Lifecycle of a batch; ``ERROR`` is reachable from every state."""

    NEW = "new"
    SCANNING = "scanning"
    INDEXING = "indexing"
    VALIDATION = "validation"
    VALIDATED = "validated"
    COMPLETE = "complete"
    EXPORTED = "exported"
    ERROR = "error"


_BATCH_FLOW: list[BatchStatus] = [
    BatchStatus.NEW,
    BatchStatus.SCANNING,
    BatchStatus.INDEXING,
    BatchStatus.VALIDATION,
    BatchStatus.VALIDATED,
    BatchStatus.COMPLETE,
    BatchStatus.EXPORTED,
]


def next_batch_status(
    current: BatchStatus, target: BatchStatus
) -> BatchStatus:
    """Validate a batch status change and return the new status.

    Args:
        current: Status the batch is in now.
        target: Requested status.

    Returns:
        ``target`` if the change is allowed.

    Raises:
        InvalidTransition: If ``target`` is neither ``ERROR`` nor the
            next state in the forward flow.
    """
    if target == BatchStatus.ERROR:
        return target
    if current in _BATCH_FLOW:
        idx = _BATCH_FLOW.index(current)
        if idx + 1 < len(_BATCH_FLOW) and _BATCH_FLOW[idx + 1] == target:
            return target
    raise InvalidTransition(f"Batch cannot move from {current} to {target}")


class LicenseStatus(StrEnum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    SUSPENDED = "suspended"


@dataclass
class Capture:
    """A raw captured file as received from an upload, camera, or scanner."""

    file_name: str
    content: bytes
    content_type: str
    source: CaptureSource = CaptureSource.UPLOAD

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def is_pdf(self) -> bool:
        return (
            self.content_type == "application/pdf"
            or self.file_name.lower().endswith(".pdf")
            or self.content[:4] == b"%PDF"
        )

    @property
    def is_image(self) -> bool:
        return self.content_type.startswith("image/")


@dataclass
class NormalizedPayload:
    """A submission-ready payload produced by the capture normalizer.

    ``blob`` holds bytes that still have to reach durable storage; once the
    registrar uploads them, ``storage_ref`` is set and ``blob`` dropped.
    ``text`` is set when the payload is a PDF text layer.
    """

    file_name: str
    file_type: FileType
    is_pdf: bool
    content_type: str
    original_size: int
    text: str | None = None
    blob: bytes | None = None
    storage_ref: str | None = None
    compressed: bool = False
    rasterized: bool = False

    @property
    def is_inline(self) -> bool:
        return self.blob is not None and self.storage_ref is None

    def with_reference(self, storage_ref: str) -> "NormalizedPayload":
        """Return a copy that points at durable storage instead of inline bytes."""
        return replace(self, storage_ref=storage_ref, blob=None)


@dataclass
class SubmissionContext:
    """Explicit project/batch/submitter parameters for one submission."""

    project: ProjectSettings
    batch_id: str
    submitted_by: str
    customer_id: str | None = None
    priority: JobPriority = JobPriority.NORMAL
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Document:
    """A captured document and, once extracted, its text and metadata."""

    project_id: str
    batch_id: str
    file_name: str
    file_type: FileType
    uploaded_by: str
    storage_ref: str | None = None
    id: str = field(default_factory=new_id)
    extracted_text: str = ""
    extracted_metadata: dict[str, Any] = field(default_factory=dict)
    line_items: list[dict[str, Any]] = field(default_factory=list)
    word_bounding_boxes: list[dict[str, Any]] = field(default_factory=list)
    validation_status: ValidationStatus = ValidationStatus.PENDING
    confidence_score: float | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_extracted(self) -> bool:
        return bool(self.extracted_text)


@dataclass
class ExtractionResult:
    """Fields the extraction worker writes back onto a document."""

    extracted_text: str
    extracted_metadata: dict[str, Any] = field(default_factory=dict)
    line_items: list[dict[str, Any]] = field(default_factory=list)
    word_bounding_boxes: list[dict[str, Any]] = field(default_factory=list)
    confidence_score: float | None = None

    @classmethod
    def from_document(cls, document: Document) -> "ExtractionResult":
        return cls(
            extracted_text=document.extracted_text,
            extracted_metadata=dict(document.extracted_metadata),
            line_items=list(document.line_items),
            word_bounding_boxes=list(document.word_bounding_boxes),
            confidence_score=document.confidence_score,
        )


@dataclass
class Job:
    """A queued extraction request for one document.

    ``id`` is ``None`` until the job queue assigns one.
    """

    payload: dict[str, Any]
    submitted_by: str
    job_type: str = EXTRACT_DOCUMENT_JOB
    priority: JobPriority = JobPriority.NORMAL
    customer_id: str | None = None
    id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def document_id(self) -> str:
        return self.payload["document_id"]


@dataclass
class Batch:
    """A named group of documents submitted and tracked together."""

    project_id: str
    name: str
    id: str = field(default_factory=new_id)
    status: BatchStatus = BatchStatus.NEW
    total_documents: int = 0
    processed_documents: int = 0
    validated_documents: int = 0
    error_count: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class License:
    """A tenant's document quota."""

    id: str
    total_documents: int
    remaining_documents: int
    expires_at: datetime
    status: LicenseStatus = LicenseStatus.ACTIVE

    def has_capacity(self, units: int = 1, now: datetime | None = None) -> bool:
        """Check whether ``units`` documents can still be processed."""
        now = now or utcnow()
        if self.status != LicenseStatus.ACTIVE:
            return False
        if self.expires_at < now:
            return False
        return self.remaining_documents >= units


@dataclass
class DuplicateMatch:
    """A probable duplicate found by duplicate detection."""

    document_id: str
    duplicate_document_id: str
    batch_id: str
    duplicate_type: str
    similarity_score: float
    field_scores: dict[str, float] = field(default_factory=dict)
