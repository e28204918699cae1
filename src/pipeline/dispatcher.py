"""Extraction job dispatch (fire-and-forget)."""

from typing import Any

from src.storage.base import JobQueue
from src.utils.logger import get_logger

from .errors import JobDispatchError
from .models import Document, Job, NormalizedPayload, SubmissionContext

logger = get_logger(__name__)


def build_job_payload(
    document: Document, payload: NormalizedPayload, context: SubmissionContext
) -> dict[str, Any]:
    """Build the extraction worker's request for one document.

    Text payloads travel inline; image payloads travel as the storage
    reference the registrar obtained.
    """
    project = context.project
    body: dict[str, Any] = {
        "document_id": document.id,
        "is_pdf": payload.is_pdf,
        "extraction_fields": [f.model_dump() for f in project.extraction_fields],
        "table_extraction_fields": [
            f.model_dump() for f in project.table_extraction_fields
        ]
        or None,
        "check_scanning_mode": project.check_scanning_mode,
    }
    if payload.is_pdf and payload.text is not None:
        body["text"] = payload.text
    else:
        body["storage_ref"] = payload.storage_ref
    return body


class JobDispatcher:
    """Enqueues exactly one extraction job per registered document.

    Args:
        queue: Job queue read by the extraction worker.
    """

    def __init__(self, queue: JobQueue) -> None:
        self.queue = queue

    async def dispatch(
        self,
        document: Document,
        payload: NormalizedPayload,
        context: SubmissionContext,
    ) -> Job:
        """Queue the extraction job.

        Success means the job is durably queued, not that extraction ran.
        On failure the document stays pending with no text; it is not
        rolled back and dispatch is not retried.

        Raises:
            JobDispatchError: If the job cannot be queued.
        """
        job = Job(
            payload=build_job_payload(document, payload, context),
            submitted_by=context.submitted_by,
            priority=context.priority,
            customer_id=context.customer_id,
        )
        try:
            job = await self.queue.enqueue(job)
        except Exception as exc:
            raise JobDispatchError(
                f"Could not queue extraction for {document.file_name}: {exc}",
                file_name=document.file_name,
                document_id=document.id,
            ) from exc

        logger.info("Queued job %s for document %s", job.id, document.id)
        return job
