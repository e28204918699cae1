"""Tests for the OCR engine, field extraction, and the extraction worker."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from src.pipeline.automation import BatchExtractionRequest
from src.pipeline.events import CompletionHub
from src.pipeline.models import Batch, Document, FileType, Job
from src.storage.blobs import InMemoryBlobStorage
from src.storage.memory import InMemoryDocumentStore, InMemoryJobQueue
from src.worker.extraction_worker import ExtractionWorker, LocalBatchExtraction
from src.worker.field_extractor import FieldExtractor, is_valid_routing_number
from src.worker.ocr_engine import BoundingBox, OCRResult, OCRWord, TesseractEngine

_INVOICE_TEXT = """ACME SUPPLY CO.
Vendor: Acme Supply Co.
Invoice #: INV-2024-001
Date: 01/15/2024

Description    Quantity    Amount
Widgets    4    40.00
Bolts    10    5.50

Total Due: $1,045.50
"""


def _tesseract_data() -> dict:
    return {
        "text": ["", "Vendor:", "Acme"],
        "conf": [-1, 96, 90],
        "left": [0, 10, 80],
        "top": [0, 10, 10],
        "width": [0, 60, 40],
        "height": [0, 12, 12],
        "line_num": [0, 1, 1],
    }


class TestTesseractEngine:
    """Tests for the TesseractEngine wrapper."""

    @patch("src.worker.ocr_engine.pytesseract")
    def test_extract_text(self, mock_tess: MagicMock) -> None:
        mock_tess.image_to_string.return_value = "Vendor: Acme\n"
        mock_tess.image_to_data.return_value = _tesseract_data()

        result = TesseractEngine(psm=6).extract_text(Image.new("RGB", (50, 50)))

        assert result.text == "Vendor: Acme"
        assert [w.text for w in result.words] == ["Vendor:", "Acme"]
        assert result.confidence == pytest.approx(0.93)
        assert mock_tess.image_to_string.call_args.kwargs["config"] == "--psm 6"

    @patch("src.worker.ocr_engine.pytesseract")
    def test_extract_bytes_decodes_image(self, mock_tess: MagicMock, small_png: bytes) -> None:
        mock_tess.image_to_string.return_value = ""
        mock_tess.image_to_data.return_value = {k: [] for k in _tesseract_data()}

        result = TesseractEngine().extract_bytes(small_png)

        assert result.words == []
        assert result.confidence == 0.0
        image = mock_tess.image_to_string.call_args.args[0]
        assert image.size == (300, 200)

    def test_word_to_dict(self) -> None:
        word = OCRWord("Acme", BoundingBox(1, 2, 3, 4), 0.9, line_num=2)
        assert word.to_dict() == {
            "text": "Acme",
            "confidence": 0.9,
            "line": 2,
            "x": 1,
            "y": 2,
            "width": 3,
            "height": 4,
        }


class TestFieldExtractor:
    """Tests for the FieldExtractor class."""

    def test_label_matching(self) -> None:
        result = FieldExtractor().extract(
            _INVOICE_TEXT, fields=[{"name": "Vendor"}, {"name": "Invoice #"}]
        )
        assert result.metadata["Vendor"] == "Acme Supply Co."
        assert result.fields["Vendor"].extraction_method == "label"

    def test_underscored_label(self) -> None:
        text = "Printed Name: Jane Doe\nZip: 90210"
        result = FieldExtractor().extract(text, fields=[{"name": "Printed_Name"}])
        assert result.metadata == {"Printed_Name": "Jane Doe"}

    def test_regex_fallback_by_field_name(self) -> None:
        result = FieldExtractor().extract(
            _INVOICE_TEXT,
            fields=[{"name": "Invoice_Date"}, {"name": "Total_Amount"}, {"name": "Invoice_Number"}],
        )
        assert result.metadata["Invoice_Date"] == "01/15/2024"
        assert result.metadata["Total_Amount"] == "1,045.50"
        assert result.metadata["Invoice_Number"] == "INV-2024-001"
        assert result.fields["Total_Amount"].confidence == 0.95

    def test_missing_field_omitted(self) -> None:
        result = FieldExtractor().extract("nothing here", fields=[{"name": "Vendor"}])
        assert result.metadata == {}
        assert result.confidence is None

    def test_line_items(self) -> None:
        result = FieldExtractor().extract(
            _INVOICE_TEXT,
            table_fields=[{"name": "Description"}, {"name": "Quantity"}, {"name": "Amount"}],
        )
        assert result.line_items == [
            {"Description": "Widgets", "Quantity": "4", "Amount": "40.00"},
            {"Description": "Bolts", "Quantity": "10", "Amount": "5.50"},
        ]

    def test_check_mode_reads_micr(self) -> None:
        text = "PAY TO THE ORDER OF Jane Doe   $ 250.00\n⑆021000021⑆ 123456789⑈ 1001"
        result = FieldExtractor().extract(text, check_mode=True)

        assert result.metadata["routing_number"] == "021000021"
        assert result.metadata["account_number"] == "123456789"
        assert result.metadata["check_number"] == "1001"
        assert result.metadata["amount"] == "250.00"

    def test_check_mode_skips_invalid_routing(self) -> None:
        result = FieldExtractor().extract("123456789 12345678 1001", check_mode=True)
        assert "routing_number" not in result.metadata

    def test_routing_checksum(self) -> None:
        assert is_valid_routing_number("021000021")
        assert not is_valid_routing_number("123456789")
        assert not is_valid_routing_number("02100002")


def _slow_down(blobs: InMemoryBlobStorage) -> None:
    read = blobs.get

    async def slow_get(reference: str) -> bytes:
        await asyncio.sleep(0.05)
        return await read(reference)

    blobs.get = slow_get


async def _setup(text: str | None = None, blob: bytes | None = None):
    store = InMemoryDocumentStore()
    queue = InMemoryJobQueue()
    blobs = InMemoryBlobStorage()
    await store.create_batch(Batch(project_id="p", name="b", id="b-1"))
    document = await store.create_document(
        Document(
            project_id="p",
            batch_id="b-1",
            file_name="a",
            file_type=FileType.IMAGE,
            uploaded_by="u",
        )
    )
    payload = {
        "document_id": document.id,
        "is_pdf": text is not None,
        "extraction_fields": [{"name": "Vendor", "description": ""}],
        "table_extraction_fields": None,
        "check_scanning_mode": False,
    }
    if text is not None:
        payload["text"] = text
    else:
        payload["storage_ref"] = await blobs.put(blob or b"img", "image/png")
    job = await queue.enqueue(Job(payload=payload, submitted_by="u"))
    return store, queue, blobs, document, job


class TestExtractionWorker:
    """Tests for the ExtractionWorker class."""

    @pytest.mark.asyncio
    async def test_text_job(self) -> None:
        store, queue, blobs, document, job = await _setup(text="Vendor: Acme")
        hub = CompletionHub()
        engine = MagicMock()
        worker = ExtractionWorker(store, queue, blobs, hub, engine=engine)

        with hub.subscribe([document.id]) as (completed,):
            updated = await worker.process_job(job)

        assert updated.extracted_text == "Vendor: Acme"
        assert updated.extracted_metadata == {"Vendor": "Acme"}
        assert completed.is_set()
        engine.extract_bytes.assert_not_called()

    @pytest.mark.asyncio
    async def test_image_job_runs_ocr(self) -> None:
        store, queue, blobs, document, job = await _setup(blob=b"png-bytes")
        engine = MagicMock()
        engine.extract_bytes.return_value = OCRResult(
            text="Vendor: Globex",
            words=[OCRWord("Vendor:", BoundingBox(0, 0, 5, 5), 0.8, 1)],
            language="eng",
            confidence=0.8,
        )
        worker = ExtractionWorker(store, queue, blobs, CompletionHub(), engine=engine)

        updated = await worker.process_job(job)

        engine.extract_bytes.assert_called_once_with(b"png-bytes")
        assert updated.extracted_metadata == {"Vendor": "Globex"}
        assert updated.word_bounding_boxes[0]["text"] == "Vendor:"
        assert updated.confidence_score == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_already_extracted_is_skipped(self) -> None:
        store, queue, blobs, document, job = await _setup(text="Vendor: Acme")
        worker = ExtractionWorker(store, queue, blobs, CompletionHub())
        await worker.process_job(job)
        extractor = MagicMock()
        worker.extractor = extractor

        await worker.process_job(job)

        extractor.extract.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_document(self) -> None:
        store, queue, blobs, document, job = await _setup(text="x")
        await store.delete_document(document.id)
        worker = ExtractionWorker(store, queue, blobs, CompletionHub())

        assert await worker.process_job(job) is None

    @pytest.mark.asyncio
    async def test_drain_survives_failing_job(self) -> None:
        store, queue, blobs, document, job = await _setup(blob=b"img")
        engine = MagicMock()
        engine.extract_bytes.side_effect = RuntimeError("tesseract not installed")
        worker = ExtractionWorker(store, queue, blobs, CompletionHub(), engine=engine)

        assert await worker.drain() == 1
        assert (await store.get_document(document.id)).is_extracted is False


class TestLocalBatchExtraction:
    """Tests for the LocalBatchExtraction trigger."""

    @pytest.mark.asyncio
    async def test_extracts_pending_documents(self) -> None:
        store, queue, blobs, document, job = await _setup(text="Vendor: Acme")
        hub = CompletionHub()
        worker = ExtractionWorker(store, queue, blobs, hub)

        with hub.subscribe([document.id]) as (completed,):
            await LocalBatchExtraction(worker).trigger(
                BatchExtractionRequest(batch_id="b-1", max_parallel=3)
            )

        assert (await store.get_document(document.id)).is_extracted
        assert completed.is_set()
        assert await queue.claim_next() is None

    @pytest.mark.asyncio
    async def test_skips_job_claimed_by_running_worker(self) -> None:
        store, queue, blobs, document, job = await _setup(blob=b"img")
        engine = MagicMock()
        engine.extract_bytes.return_value = OCRResult(
            text="Vendor: Acme", words=[], language="eng", confidence=0.9
        )
        worker = ExtractionWorker(store, queue, blobs, CompletionHub(), engine=engine)
        _slow_down(blobs)

        background = asyncio.create_task(worker.run_once())
        await asyncio.sleep(0.01)
        await LocalBatchExtraction(worker).trigger(
            BatchExtractionRequest(batch_id="b-1", max_parallel=3)
        )

        assert await background is True
        assert engine.extract_bytes.call_count == 1
        assert (await store.get_document(document.id)).is_extracted

    @pytest.mark.asyncio
    async def test_cap_is_shared_with_polling_loop(self) -> None:
        store, queue, blobs, _, _ = await _setup(blob=b"img-0")
        for i in range(1, 5):
            document = await store.create_document(
                Document(
                    project_id="p",
                    batch_id="b-1",
                    file_name=f"{i}.png",
                    file_type=FileType.IMAGE,
                    uploaded_by="u",
                )
            )
            ref = await blobs.put(f"img-{i}".encode(), "image/png")
            await queue.enqueue(
                Job(payload={"document_id": document.id, "storage_ref": ref}, submitted_by="u")
            )
        engine = MagicMock()
        engine.extract_bytes.return_value = OCRResult(
            text="Vendor: Acme", words=[], language="eng", confidence=0.9
        )
        worker = ExtractionWorker(
            store, queue, blobs, CompletionHub(), engine=engine, max_parallel=2
        )
        _slow_down(blobs)

        background = asyncio.create_task(worker.run_once())
        await asyncio.sleep(0.01)
        await LocalBatchExtraction(worker).trigger(
            BatchExtractionRequest(batch_id="b-1", max_parallel=2)
        )
        await background

        assert engine.extract_bytes.call_count == 5
        assert worker.limiter.peak == 2
