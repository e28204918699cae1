"""Pydantic request/response schemas for the FastAPI endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
    storage_backend: str


class LicenseResponse(BaseModel):
    """Current quota of the configured license."""

    metered: bool
    license_id: str | None = None
    status: str | None = None
    total_documents: int | None = None
    remaining_documents: int | None = None
    expires_at: datetime | None = None
    has_capacity: bool = True


class BatchCreateRequest(BaseModel):
    """Request schema for creating a batch."""

    project_id: str
    name: str


class DuplicateResponse(BaseModel):
    document_id: str
    duplicate_document_id: str
    duplicate_type: str
    similarity_score: float


class BatchResponse(BaseModel):
    """Response schema for a batch and its counters."""

    id: str
    project_id: str
    name: str
    status: str
    total_documents: int
    processed_documents: int
    validated_documents: int
    error_count: int
    created_at: datetime
    duplicates: list[DuplicateResponse] = []


class ExtractionResponse(BaseModel):
    """Extraction output of a completed document."""

    extracted_text: str
    extracted_metadata: dict[str, Any]
    line_items: list[dict[str, Any]]
    confidence_score: float | None = None


class SubmissionResponse(BaseModel):
    """Outcome of submitting one file.

    ``status`` is ``queued`` when extraction was only requested,
    ``completed`` when the interactive wait saw it finish, ``processing``
    when the wait ended first, and ``failed`` when the file was rejected.
    """

    file_name: str
    status: str
    document_id: str | None = None
    job_id: str | None = None
    message: str | None = None
    warnings: list[str] = []
    extraction: ExtractionResponse | None = None


class BatchSubmissionResponse(BaseModel):
    """Outcome of a multi-file submission."""

    batch_id: str
    total: int
    successful: int
    failed: int
    results: list[SubmissionResponse]


class DocumentResponse(BaseModel):
    """Response schema for a stored document."""

    id: str
    project_id: str
    batch_id: str
    file_name: str
    file_type: str
    validation_status: str
    extracted: bool
    extracted_text: str
    extracted_metadata: dict[str, Any]
    line_items: list[dict[str, Any]]
    confidence_score: float | None = None
    created_at: datetime
