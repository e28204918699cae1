"""Local extraction worker.

Claims queued extraction jobs, turns their payload into text (inline PDF
text as is, stored images through Tesseract), extracts the project's
requested fields, writes the result back onto the document, and publishes
the document's completion event.
"""

import asyncio

from src.pipeline.automation import BatchExtractionRequest, BatchExtractionTrigger
from src.pipeline.events import CompletionHub
from src.pipeline.limiter import ConcurrencyLimiter
from src.pipeline.models import Document, ExtractionResult, Job
from src.storage.base import BlobStorage, DocumentStore, JobQueue
from src.utils.logger import get_logger

from .field_extractor import FieldExtractor
from .ocr_engine import TesseractEngine

logger = get_logger(__name__)


class ExtractionWorker:
    """Processes extraction jobs from the job queue.

    Args:
        store: Document store the results are written to.
        queue: Job queue to claim from.
        blobs: Blob storage holding image payloads.
        hub: Completion events to publish on.
        engine: OCR engine for image payloads.
        extractor: Field extractor.
        max_parallel: Cap on extractions in flight, shared by the polling
            loop and batch extraction.
    """

    def __init__(
        self,
        store: DocumentStore,
        queue: JobQueue,
        blobs: BlobStorage,
        hub: CompletionHub,
        engine: TesseractEngine | None = None,
        extractor: FieldExtractor | None = None,
        max_parallel: int = 3,
    ) -> None:
        self.store = store
        self.queue = queue
        self.blobs = blobs
        self.hub = hub
        self.engine = engine or TesseractEngine()
        self.extractor = extractor or FieldExtractor()
        self.limiter = ConcurrencyLimiter(max_parallel, name="extraction")

    async def process_job(self, job: Job) -> Document | None:
        """Run extraction for one job.

        Documents that already carry extracted text are not processed
        again. Missing documents are skipped.

        Returns:
            The updated document, or None if it no longer exists.
        """
        document = await self.store.get_document(job.document_id)
        if document is None:
            logger.warning("Job %s refers to missing document %s", job.id, job.document_id)
            return None
        if document.is_extracted:
            logger.debug("Document %s already extracted, skipping job %s", document.id, job.id)
            self.hub.publish(document.id)
            return document

        payload = job.payload
        words: list[dict] = []
        ocr_confidence = None
        if payload.get("text") is not None:
            text = payload["text"]
        else:
            content = await self.blobs.get(payload["storage_ref"])
            ocr = await asyncio.to_thread(self.engine.extract_bytes, content)
            text = ocr.text
            words = [w.to_dict() for w in ocr.words]
            ocr_confidence = ocr.confidence

        extraction = self.extractor.extract(
            text,
            fields=payload.get("extraction_fields"),
            table_fields=payload.get("table_extraction_fields"),
            check_mode=payload.get("check_scanning_mode", False),
        )
        confidence = extraction.confidence
        if ocr_confidence is not None:
            confidence = ocr_confidence if confidence is None else (confidence + ocr_confidence) / 2

        if not text:
            logger.warning("No text found for document %s", document.id)

        updated = await self.store.save_extraction(
            document.id,
            ExtractionResult(
                extracted_text=text,
                extracted_metadata=extraction.metadata,
                line_items=extraction.line_items,
                word_bounding_boxes=words,
                confidence_score=confidence,
            ),
        )
        self.hub.publish(document.id)
        logger.info("Extracted document %s (%d characters)", document.id, len(text))
        return updated

    async def run_job(self, job: Job) -> Document | None:
        """Run ``process_job`` under the worker's concurrency cap."""
        return await self.limiter.run(lambda: self.process_job(job))

    async def run_once(self) -> bool:
        """Claim and process the next job.

        Returns:
            False if the queue was empty.
        """
        job = await self.queue.claim_next()
        if job is None:
            return False
        try:
            await self.run_job(job)
        except Exception as exc:
            logger.error("Extraction job %s failed: %s", job.id, exc)
        return True

    async def drain(self) -> int:
        """Process jobs until the queue is empty; returns how many ran."""
        count = 0
        while await self.run_once():
            count += 1
        return count

    async def run_forever(self, idle_interval: float = 1.0) -> None:
        """Keep claiming jobs; sleeps ``idle_interval`` when the queue is empty."""
        logger.info("Extraction worker started")
        while True:
            try:
                claimed = await self.run_once()
            except Exception as exc:
                logger.error("Could not claim extraction job: %s", exc)
                claimed = False
            if not claimed:
                await asyncio.sleep(idle_interval)


class LocalBatchExtraction(BatchExtractionTrigger):
    """Extracts a batch's pending documents with the local worker."""

    def __init__(self, worker: ExtractionWorker) -> None:
        self.worker = worker

    async def trigger(self, request: BatchExtractionRequest) -> None:
        documents = await self.worker.store.list_documents(batch_id=request.batch_id)
        jobs: list[Job] = []
        for document in documents:
            if document.is_extracted:
                continue
            # Jobs already claimed by the background worker stay with it.
            job = await self.worker.queue.claim_for_document(document.id)
            if job is not None:
                jobs.append(job)

        logger.info(
            "Extracting %d unclaimed document(s) of batch %s", len(jobs), request.batch_id
        )
        limiter = ConcurrencyLimiter(request.max_parallel, name="batch-extraction")
        outcomes = await limiter.map(self.worker.run_job, jobs)
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Extraction of document %s failed: %s", job.document_id, outcome)
