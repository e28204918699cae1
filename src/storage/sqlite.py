"""SQLite-backed pipeline stores for single-instance deployments.

Each operation opens its own connection; SQLite's locking serializes
writers. Blocking calls run in a worker thread so the event loop stays
responsive. Multi-statement operations (create-and-count, conditional
quota decrement) run inside one transaction.
"""

import asyncio
import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from src.pipeline.models import (
    Batch,
    BatchStatus,
    Document,
    DuplicateMatch,
    ExtractionResult,
    FileType,
    Job,
    JobPriority,
    License,
    LicenseStatus,
    ValidationStatus,
    next_batch_status,
    utcnow,
)

from .base import DocumentStore, JobQueue, LicenseStore

_SCHEMA = """
CREATE TABLE IF NOT EXISTS batches (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'new',
    total_documents INTEGER NOT NULL DEFAULT 0,
    processed_documents INTEGER NOT NULL DEFAULT 0,
    validated_documents INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    batch_id TEXT NOT NULL REFERENCES batches(id),
    file_name TEXT NOT NULL,
    file_type TEXT NOT NULL,
    storage_ref TEXT,
    extracted_text TEXT NOT NULL DEFAULT '',
    extracted_metadata TEXT NOT NULL DEFAULT '{}',
    line_items TEXT NOT NULL DEFAULT '[]',
    word_bounding_boxes TEXT NOT NULL DEFAULT '[]',
    validation_status TEXT NOT NULL DEFAULT 'pending',
    confidence_score REAL,
    uploaded_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    CHECK (validation_status IN ('pending', 'validated', 'rejected', 'needs_review'))
);

CREATE INDEX IF NOT EXISTS idx_documents_batch ON documents(batch_id);
CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(validation_status);

CREATE TABLE IF NOT EXISTS duplicate_detections (
    document_id TEXT NOT NULL,
    duplicate_document_id TEXT NOT NULL,
    batch_id TEXT NOT NULL,
    duplicate_type TEXT NOT NULL,
    similarity_score REAL NOT NULL,
    field_scores TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS licenses (
    id TEXT PRIMARY KEY,
    total_documents INTEGER NOT NULL,
    remaining_documents INTEGER NOT NULL,
    expires_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
);

CREATE TABLE IF NOT EXISTS license_usage (
    license_id TEXT NOT NULL,
    document_id TEXT NOT NULL,
    documents_used INTEGER NOT NULL,
    user_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type TEXT NOT NULL,
    document_id TEXT NOT NULL,
    payload TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'normal',
    priority_rank INTEGER NOT NULL DEFAULT 2,
    submitted_by TEXT NOT NULL,
    customer_id TEXT,
    claimed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(claimed, priority_rank, id);
"""

_PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


class SQLiteDatabase:
    """Shared connection factory and schema owner for the SQLite stores.

    Args:
        db_path: Path to the SQLite database file (created if missing)
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

    def _init_database(self) -> None:
        """Create tables and indexes if they don't exist"""
        conn = sqlite3.connect(self.db_path)
        conn.executescript(_SCHEMA)
        conn.commit()
        conn.close()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with row factory for one unit of work.

        Commits when the block exits normally, rolls back on an exception,
        and always closes the connection.
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()


def _row_to_batch(row: sqlite3.Row) -> Batch:
    return Batch(
        id=row["id"],
        project_id=row["project_id"],
        name=row["name"],
        status=BatchStatus(row["status"]),
        total_documents=row["total_documents"],
        processed_documents=row["processed_documents"],
        validated_documents=row["validated_documents"],
        error_count=row["error_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        project_id=row["project_id"],
        batch_id=row["batch_id"],
        file_name=row["file_name"],
        file_type=FileType(row["file_type"]),
        storage_ref=row["storage_ref"],
        extracted_text=row["extracted_text"],
        extracted_metadata=json.loads(row["extracted_metadata"]),
        line_items=json.loads(row["line_items"]),
        word_bounding_boxes=json.loads(row["word_bounding_boxes"]),
        validation_status=ValidationStatus(row["validation_status"]),
        confidence_score=row["confidence_score"],
        uploaded_by=row["uploaded_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=json.loads(row["payload"]),
        priority=JobPriority(row["priority"]),
        submitted_by=row["submitted_by"],
        customer_id=row["customer_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SQLiteDocumentStore(DocumentStore):
    """SQLite document, batch, and duplicate-detection store."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    async def create_batch(self, batch: Batch) -> Batch:
        await asyncio.to_thread(self._create_batch, batch)
        return batch

    def _create_batch(self, batch: Batch) -> None:
        with self.db.connect() as conn:
            conn.execute("""
                INSERT INTO batches (id, project_id, name, status, total_documents,
                    processed_documents, validated_documents, error_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                batch.id, batch.project_id, batch.name, batch.status.value,
                batch.total_documents, batch.processed_documents,
                batch.validated_documents, batch.error_count,
                batch.created_at.isoformat(),
            ))

    async def get_batch(self, batch_id: str) -> Batch | None:
        return await asyncio.to_thread(self._get_batch, batch_id)

    def _get_batch(self, batch_id: str) -> Batch | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
        return _row_to_batch(row) if row else None

    async def update_batch_status(self, batch_id: str, status: BatchStatus) -> Batch:
        return await asyncio.to_thread(self._update_batch_status, batch_id, status)

    def _update_batch_status(self, batch_id: str, status: BatchStatus) -> Batch:
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM batches WHERE id = ?", (batch_id,)).fetchone()
            if row is None:
                raise LookupError(f"Batch not found: {batch_id}")
            batch = _row_to_batch(row)
            batch.status = next_batch_status(batch.status, status)
            conn.execute(
                "UPDATE batches SET status = ? WHERE id = ?",
                (batch.status.value, batch_id),
            )
        return batch

    async def create_document(self, document: Document) -> Document:
        await asyncio.to_thread(self._create_document, document)
        return document

    def _create_document(self, document: Document) -> None:
        # One transaction: the insert and the counter move together.
        with self.db.connect() as conn:
            cursor = conn.execute("""
                UPDATE batches
                SET total_documents = total_documents + 1,
                    processed_documents = processed_documents + 1
                WHERE id = ?
            """, (document.batch_id,))
            if cursor.rowcount == 0:
                raise LookupError(f"Batch not found: {document.batch_id}")
            conn.execute("""
                INSERT INTO documents (id, project_id, batch_id, file_name, file_type,
                    storage_ref, extracted_text, extracted_metadata, line_items,
                    word_bounding_boxes, validation_status, confidence_score,
                    uploaded_by, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                document.id, document.project_id, document.batch_id,
                document.file_name, document.file_type.value, document.storage_ref,
                document.extracted_text, json.dumps(document.extracted_metadata),
                json.dumps(document.line_items), json.dumps(document.word_bounding_boxes),
                document.validation_status.value, document.confidence_score,
                document.uploaded_by, document.created_at.isoformat(),
            ))

    async def get_document(self, document_id: str) -> Document | None:
        return await asyncio.to_thread(self._get_document, document_id)

    def _get_document(self, document_id: str) -> Document | None:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _row_to_document(row) if row else None

    async def list_documents(
        self,
        batch_id: str | None = None,
        status: ValidationStatus | None = None,
    ) -> list[Document]:
        return await asyncio.to_thread(self._list_documents, batch_id, status)

    def _list_documents(
        self, batch_id: str | None, status: ValidationStatus | None
    ) -> list[Document]:
        query = "SELECT * FROM documents WHERE 1 = 1"
        params: list = []
        if batch_id is not None:
            query += " AND batch_id = ?"
            params.append(batch_id)
        if status is not None:
            query += " AND validation_status = ?"
            params.append(status.value)
        query += " ORDER BY created_at"
        with self.db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_document(row) for row in rows]

    async def save_extraction(self, document_id: str, result: ExtractionResult) -> Document:
        return await asyncio.to_thread(self._save_extraction, document_id, result)

    def _save_extraction(self, document_id: str, result: ExtractionResult) -> Document:
        with self.db.connect() as conn:
            cursor = conn.execute("""
                UPDATE documents
                SET extracted_text = ?,
                    extracted_metadata = ?,
                    line_items = ?,
                    word_bounding_boxes = ?,
                    confidence_score = ?
                WHERE id = ?
            """, (
                result.extracted_text, json.dumps(result.extracted_metadata),
                json.dumps(result.line_items), json.dumps(result.word_bounding_boxes),
                result.confidence_score, document_id,
            ))
            if cursor.rowcount == 0:
                raise LookupError(f"Document not found: {document_id}")
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return _row_to_document(row)

    async def set_validation_status(
        self, document_id: str, status: ValidationStatus
    ) -> bool:
        return await asyncio.to_thread(self._set_validation_status, document_id, status)

    def _set_validation_status(self, document_id: str, status: ValidationStatus) -> bool:
        with self.db.connect() as conn:
            cursor = conn.execute(
                "UPDATE documents SET validation_status = ? WHERE id = ?",
                (status.value, document_id),
            )
        return cursor.rowcount > 0

    async def delete_document(self, document_id: str) -> bool:
        return await asyncio.to_thread(self._delete_document, document_id)

    def _delete_document(self, document_id: str) -> bool:
        with self.db.connect() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return cursor.rowcount > 0

    async def record_duplicates(self, matches: list[DuplicateMatch]) -> None:
        await asyncio.to_thread(self._record_duplicates, matches)

    def _record_duplicates(self, matches: list[DuplicateMatch]) -> None:
        with self.db.connect() as conn:
            conn.executemany("""
                INSERT INTO duplicate_detections (document_id, duplicate_document_id,
                    batch_id, duplicate_type, similarity_score, field_scores)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (m.document_id, m.duplicate_document_id, m.batch_id,
                 m.duplicate_type, m.similarity_score, json.dumps(m.field_scores))
                for m in matches
            ])

    async def list_duplicates(self, batch_id: str) -> list[DuplicateMatch]:
        return await asyncio.to_thread(self._list_duplicates, batch_id)

    def _list_duplicates(self, batch_id: str) -> list[DuplicateMatch]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM duplicate_detections WHERE batch_id = ?", (batch_id,)
            ).fetchall()
        return [
            DuplicateMatch(
                document_id=row["document_id"],
                duplicate_document_id=row["duplicate_document_id"],
                batch_id=row["batch_id"],
                duplicate_type=row["duplicate_type"],
                similarity_score=row["similarity_score"],
                field_scores=json.loads(row["field_scores"]),
            )
            for row in rows
        ]


class SQLiteLicenseStore(LicenseStore):
    """SQLite license store; the quota decrement is one conditional UPDATE."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    async def get_license(self, license_id: str) -> License | None:
        return await asyncio.to_thread(self._get_license, license_id)

    def _get_license(self, license_id: str) -> License | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM licenses WHERE id = ?", (license_id,)).fetchone()
        if row is None:
            return None
        return License(
            id=row["id"],
            total_documents=row["total_documents"],
            remaining_documents=row["remaining_documents"],
            expires_at=datetime.fromisoformat(row["expires_at"]),
            status=LicenseStatus(row["status"]),
        )

    async def save_license(self, license: License) -> None:
        await asyncio.to_thread(self._save_license, license)

    def _save_license(self, license: License) -> None:
        with self.db.connect() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO licenses
                    (id, total_documents, remaining_documents, expires_at, status)
                VALUES (?, ?, ?, ?, ?)
            """, (
                license.id, license.total_documents, license.remaining_documents,
                license.expires_at.isoformat(), license.status.value,
            ))

    async def consume_if_available(self, license_id: str, units: int) -> bool:
        return await asyncio.to_thread(self._consume_if_available, license_id, units)

    def _consume_if_available(self, license_id: str, units: int) -> bool:
        with self.db.connect() as conn:
            cursor = conn.execute("""
                UPDATE licenses
                SET remaining_documents = remaining_documents - ?,
                    status = CASE WHEN remaining_documents - ? = 0
                                  THEN 'exhausted' ELSE status END
                WHERE id = ?
                  AND status = 'active'
                  AND expires_at >= ?
                  AND remaining_documents >= ?
            """, (units, units, license_id, utcnow().isoformat(), units))
        return cursor.rowcount > 0

    async def release(self, license_id: str, units: int) -> None:
        await asyncio.to_thread(self._release, license_id, units)

    def _release(self, license_id: str, units: int) -> None:
        with self.db.connect() as conn:
            conn.execute("""
                UPDATE licenses
                SET remaining_documents = remaining_documents + ?,
                    status = CASE WHEN status = 'exhausted' THEN 'active' ELSE status END
                WHERE id = ?
            """, (units, license_id))

    async def record_usage(
        self, license_id: str, document_id: str, units: int, user_id: str
    ) -> None:
        await asyncio.to_thread(self._record_usage, license_id, document_id, units, user_id)

    def _record_usage(self, license_id: str, document_id: str, units: int, user_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("""
                INSERT INTO license_usage
                    (license_id, document_id, documents_used, user_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (license_id, document_id, units, user_id, utcnow().isoformat()))


class SQLiteJobQueue(JobQueue):
    """SQLite job queue; claiming flips a flag inside an immediate transaction."""

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db

    async def enqueue(self, job: Job) -> Job:
        return await asyncio.to_thread(self._enqueue, job)

    def _enqueue(self, job: Job) -> Job:
        with self.db.connect() as conn:
            cursor = conn.execute("""
                INSERT INTO jobs (job_type, document_id, payload, priority, priority_rank,
                    submitted_by, customer_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job.job_type, job.document_id, json.dumps(job.payload),
                job.priority.value, _PRIORITY_RANK.get(job.priority.value, 2),
                job.submitted_by, job.customer_id, job.created_at.isoformat(),
            ))
            job_id = cursor.lastrowid
        return Job(
            id=str(job_id),
            job_type=job.job_type,
            payload=dict(job.payload),
            priority=job.priority,
            submitted_by=job.submitted_by,
            customer_id=job.customer_id,
            created_at=job.created_at,
        )

    async def claim_next(self) -> Job | None:
        return await asyncio.to_thread(self._claim, None)

    async def claim_for_document(self, document_id: str) -> Job | None:
        return await asyncio.to_thread(self._claim, document_id)

    def _claim(self, document_id: str | None) -> Job | None:
        query = "SELECT * FROM jobs WHERE claimed = 0"
        params: tuple = ()
        if document_id is not None:
            query += " AND document_id = ?"
            params = (document_id,)
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                query + " ORDER BY priority_rank, id LIMIT 1", params
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE jobs SET claimed = 1 WHERE id = ?", (row["id"],))
        return _row_to_job(row)

    async def list_jobs(self, document_id: str | None = None) -> list[Job]:
        return await asyncio.to_thread(self._list_jobs, document_id)

    def _list_jobs(self, document_id: str | None) -> list[Job]:
        with self.db.connect() as conn:
            if document_id is None:
                rows = conn.execute("SELECT * FROM jobs ORDER BY id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM jobs WHERE document_id = ? ORDER BY id", (document_id,)
                ).fetchall()
        return [_row_to_job(row) for row in rows]
