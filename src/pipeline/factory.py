"""Wiring of the pipeline and its collaborators from configuration."""

from dataclasses import dataclass
from pathlib import Path

from src.capture.normalizer import CaptureNormalizer
from src.duplicates.detector import SimilarityDuplicateDetector
from src.licensing.gate import LicenseGate
from src.storage.base import BlobStorage, DocumentStore, JobQueue, LicenseStore
from src.storage.blobs import InMemoryBlobStorage, LocalBlobStorage
from src.storage.memory import InMemoryDocumentStore, InMemoryJobQueue, InMemoryLicenseStore
from src.storage.sqlite import (
    SQLiteDatabase,
    SQLiteDocumentStore,
    SQLiteJobQueue,
    SQLiteLicenseStore,
)
from src.utils.config import AppConfig
from src.utils.logger import get_logger
from src.worker.extraction_worker import ExtractionWorker, LocalBatchExtraction
from src.worker.ocr_engine import TesseractEngine

from .automation import BatchAutomationCoordinator
from .dispatcher import JobDispatcher
from .events import CompletionHub
from .registrar import DocumentRegistrar
from .submission import IngestionPipeline
from .tracker import CompletionTracker

logger = get_logger(__name__)


@dataclass
class PipelineServices:
    """Everything an entry point needs, built once per process."""

    config: AppConfig
    store: DocumentStore
    licenses: LicenseStore
    queue: JobQueue
    blobs: BlobStorage
    hub: CompletionHub
    gate: LicenseGate
    worker: ExtractionWorker
    pipeline: IngestionPipeline


def build_stores(config: AppConfig) -> tuple[DocumentStore, LicenseStore, JobQueue, BlobStorage]:
    """Create the store backends named in ``config.storage``.

    Raises:
        ValueError: If the backend name is unknown.
    """
    storage = config.storage
    if storage.backend == "memory":
        blobs: BlobStorage = (
            LocalBlobStorage(Path(storage.blob_dir)) if storage.blob_dir else InMemoryBlobStorage()
        )
        return InMemoryDocumentStore(), InMemoryLicenseStore(), InMemoryJobQueue(), blobs

    if storage.backend == "sqlite":
        db = SQLiteDatabase(storage.sqlite_path)
        blob_dir = Path(storage.blob_dir or Path(storage.sqlite_path).parent / "blobs")
        logger.info("Using SQLite store at %s, blobs in %s", storage.sqlite_path, blob_dir)
        return (
            SQLiteDocumentStore(db),
            SQLiteLicenseStore(db),
            SQLiteJobQueue(db),
            LocalBlobStorage(blob_dir),
        )

    raise ValueError(f"Unknown storage backend: {storage.backend}")


def build_services(config: AppConfig) -> PipelineServices:
    """Build the ingestion pipeline, its stores, and the local worker."""
    store, licenses, queue, blobs = build_stores(config)
    hub = CompletionHub()
    gate = LicenseGate(licenses, config.license.license_id)

    worker = ExtractionWorker(
        store,
        queue,
        blobs,
        hub,
        engine=TesseractEngine(
            tesseract_cmd=config.ocr.tesseract_cmd,
            default_lang=config.ocr.default_lang,
            psm=config.ocr.psm,
        ),
        max_parallel=config.automation.max_parallel,
    )
    coordinator = BatchAutomationCoordinator(
        store,
        hub,
        extraction=LocalBatchExtraction(worker),
        duplicates=SimilarityDuplicateDetector(store),
        config=config.automation,
    )
    pipeline = IngestionPipeline(
        normalizer=CaptureNormalizer(config.capture),
        gate=gate,
        registrar=DocumentRegistrar(store, blobs),
        dispatcher=JobDispatcher(queue),
        tracker=CompletionTracker(
            store,
            hub,
            interval=config.polling.interval_seconds,
            max_attempts=config.polling.max_attempts,
        ),
        coordinator=coordinator,
        store=store,
        max_concurrency=config.submission.max_concurrency,
        units_per_document=config.license.units_per_document,
    )
    return PipelineServices(
        config=config,
        store=store,
        licenses=licenses,
        queue=queue,
        blobs=blobs,
        hub=hub,
        gate=gate,
        worker=worker,
        pipeline=pipeline,
    )
