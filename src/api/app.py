"""FastAPI application for the document ingestion API.

Provides REST endpoints for batch management, single and multi-file
document submission, document lookup, license status, and health checks.
"""

import asyncio
import json
import shutil
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    UploadFile,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.pipeline.errors import (
    CaptureError,
    JobDispatchError,
    PipelineError,
    PollReadError,
    PollTimeout,
    QuotaCheckError,
    QuotaExceeded,
    RegistrationError,
    UploadError,
)
from src.pipeline.factory import PipelineServices, build_services
from src.pipeline.models import (
    Batch,
    Capture,
    CaptureSource,
    Document,
    JobPriority,
    SubmissionContext,
)
from src.pipeline.submission import SubmissionResult
from src.utils.config import ProjectSettings, load_config
from src.utils.logger import get_logger

from .schemas import (
    BatchCreateRequest,
    BatchResponse,
    BatchSubmissionResponse,
    DocumentResponse,
    DuplicateResponse,
    ExtractionResponse,
    HealthResponse,
    LicenseResponse,
    SubmissionResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

_services: PipelineServices | None = None


def get_services() -> PipelineServices:
    """Build the shared pipeline services on first use."""
    global _services
    if _services is None:
        _services = build_services(load_config())
    return _services


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = get_services()
    worker_task = asyncio.create_task(
        services.worker.run_forever(services.config.server.worker_idle_interval)
    )
    try:
        yield
    finally:
        worker_task.cancel()


app = FastAPI(
    title="Document Ingestion API",
    description="Capture, license-gate, register, and queue documents for extraction",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Services = Annotated[PipelineServices, Depends(get_services)]

_ERROR_STATUS: list[tuple[type[PipelineError], int]] = [
    (CaptureError, 422),
    (QuotaExceeded, 402),
    (QuotaCheckError, 502),
    (UploadError, 502),
    (RegistrationError, 502),
    (JobDispatchError, 502),
]


def _http_error(exc: PipelineError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.message)
    return HTTPException(status_code=500, detail=exc.message)


def _parse_metadata(metadata: str | None) -> dict:
    if not metadata:
        return {}
    try:
        parsed = json.loads(metadata)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=422, detail=f"Invalid metadata JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise HTTPException(status_code=422, detail="Metadata must be a JSON object")
    return parsed


def _project_for(services: PipelineServices, project_id: str) -> ProjectSettings:
    return services.config.get_project(project_id) or ProjectSettings(id=project_id)


async def _load_batch(services: PipelineServices, batch_id: str) -> Batch:
    batch = await services.store.get_batch(batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch not found: {batch_id}")
    return batch


async def _read_capture(file: UploadFile, source: CaptureSource) -> Capture:
    return Capture(
        file_name=file.filename or "document",
        content=await file.read(),
        content_type=file.content_type or "application/octet-stream",
        source=source,
    )


def _submission_response(result: SubmissionResult) -> SubmissionResponse:
    if result.error is not None:
        return SubmissionResponse(
            file_name=result.file_name,
            status="failed",
            document_id=result.document_id,
            message=result.error.message,
        )
    extraction = None
    if result.extraction is not None:
        extraction = ExtractionResponse(
            extracted_text=result.extraction.extracted_text,
            extracted_metadata=result.extraction.extracted_metadata,
            line_items=result.extraction.line_items,
            confidence_score=result.extraction.confidence_score,
        )
    return SubmissionResponse(
        file_name=result.file_name,
        status="completed" if extraction is not None else "queued",
        document_id=result.document_id,
        job_id=result.job.id if result.job else None,
        warnings=result.warnings,
        extraction=extraction,
    )


def _batch_response(
    batch: Batch, duplicates: list[DuplicateResponse] | None = None
) -> BatchResponse:
    return BatchResponse(
        id=batch.id,
        project_id=batch.project_id,
        name=batch.name,
        status=batch.status.value,
        total_documents=batch.total_documents,
        processed_documents=batch.processed_documents,
        validated_documents=batch.validated_documents,
        error_count=batch.error_count,
        created_at=batch.created_at,
        duplicates=duplicates or [],
    )


def _document_response(document: Document) -> DocumentResponse:
    return DocumentResponse(
        id=document.id,
        project_id=document.project_id,
        batch_id=document.batch_id,
        file_name=document.file_name,
        file_type=document.file_type.value,
        validation_status=document.validation_status.value,
        extracted=document.is_extracted,
        extracted_text=document.extracted_text,
        extracted_metadata=document.extracted_metadata,
        line_items=document.line_items,
        confidence_score=document.confidence_score,
        created_at=document.created_at,
    )


@app.get("/health", response_model=HealthResponse)
async def health_check(services: Services) -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=VERSION,
        tesseract_available=shutil.which("tesseract") is not None,
        storage_backend=services.config.storage.backend,
    )


@app.get("/license", response_model=LicenseResponse)
async def license_status(services: Services) -> LicenseResponse:
    """Return the configured license's remaining quota."""
    license_id = services.gate.license_id
    if license_id is None:
        return LicenseResponse(metered=False)
    license = await services.licenses.get_license(license_id)
    if license is None:
        raise HTTPException(status_code=404, detail=f"License not found: {license_id}")
    return LicenseResponse(
        metered=True,
        license_id=license.id,
        status=license.status.value,
        total_documents=license.total_documents,
        remaining_documents=license.remaining_documents,
        expires_at=license.expires_at,
        has_capacity=await services.gate.has_capacity(
            services.config.license.units_per_document
        ),
    )


@app.post("/batches", response_model=BatchResponse, status_code=201)
async def create_batch(request: BatchCreateRequest, services: Services) -> BatchResponse:
    """Create a new, empty batch for a configured project."""
    if services.config.get_project(request.project_id) is None:
        raise HTTPException(
            status_code=404, detail=f"Project not found: {request.project_id}"
        )
    batch = await services.store.create_batch(
        Batch(project_id=request.project_id, name=request.name)
    )
    logger.info("Created batch %s (%s)", batch.id, batch.name)
    return _batch_response(batch)


@app.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str, services: Services) -> BatchResponse:
    """Return a batch, its counters, and recorded duplicates."""
    batch = await _load_batch(services, batch_id)
    duplicates = await services.store.list_duplicates(batch_id)
    return _batch_response(
        batch,
        [
            DuplicateResponse(
                document_id=d.document_id,
                duplicate_document_id=d.duplicate_document_id,
                duplicate_type=d.duplicate_type,
                similarity_score=d.similarity_score,
            )
            for d in duplicates
        ],
    )


@app.post("/documents", response_model=SubmissionResponse)
async def submit_document(
    services: Services,
    file: Annotated[UploadFile, File(...)],
    batch_id: Annotated[str, Form()],
    metadata: Annotated[str | None, Form()] = None,
    source: Annotated[CaptureSource, Form()] = CaptureSource.UPLOAD,
    priority: Annotated[JobPriority | None, Form()] = None,
    wait: Annotated[bool, Query()] = False,
    user_id: Annotated[str, Header(alias="X-User-Id")] = "api",
):
    """Submit one document; with ``wait`` also wait for its extraction.

    A wait that runs out (or cannot re-read the document) answers 202:
    the document is registered and may still complete later.
    """
    batch = await _load_batch(services, batch_id)
    context = SubmissionContext(
        project=_project_for(services, batch.project_id),
        batch_id=batch.id,
        submitted_by=user_id,
        priority=priority or JobPriority(services.config.submission.default_priority),
        metadata=_parse_metadata(metadata),
    )
    capture = await _read_capture(file, source)

    try:
        if wait:
            result = await services.pipeline.submit_and_wait(capture, context)
        else:
            result = await services.pipeline.submit(capture, context)
    except (PollTimeout, PollReadError) as exc:
        body = SubmissionResponse(
            file_name=capture.file_name,
            status="processing",
            document_id=exc.document_id,
            message=exc.message,
        )
        return JSONResponse(status_code=202, content=body.model_dump(mode="json"))
    except PipelineError as exc:
        logger.error("Submission of %s failed: %s", capture.file_name, exc.message)
        raise _http_error(exc) from exc

    return _submission_response(result)


@app.post("/batches/{batch_id}/documents", response_model=BatchSubmissionResponse)
async def submit_batch_documents(
    batch_id: str,
    services: Services,
    background_tasks: BackgroundTasks,
    files: Annotated[list[UploadFile], File(...)],
    source: Annotated[CaptureSource, Form()] = CaptureSource.UPLOAD,
    priority: Annotated[JobPriority | None, Form()] = None,
    user_id: Annotated[str, Header(alias="X-User-Id")] = "api",
) -> BatchSubmissionResponse:
    """Submit several documents into a batch.

    Each file succeeds or fails on its own. Batch extraction and
    duplicate detection run in the background once the response is sent.
    """
    batch = await _load_batch(services, batch_id)
    context = SubmissionContext(
        project=_project_for(services, batch.project_id),
        batch_id=batch.id,
        submitted_by=user_id,
        priority=priority or JobPriority(services.config.submission.default_priority),
    )
    captures = [await _read_capture(f, source) for f in files]

    result = await services.pipeline.submit_many(captures, context, automate=False)
    background_tasks.add_task(services.pipeline.automate, result)

    return BatchSubmissionResponse(
        batch_id=result.batch_id,
        total=result.total,
        successful=result.successful,
        failed=result.failed,
        results=[_submission_response(r) for r in result.results],
    )


@app.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(document_id: str, services: Services) -> DocumentResponse:
    """Return a stored document and its extraction output, if any."""
    document = await services.store.get_document(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail=f"Document not found: {document_id}")
    return _document_response(document)
