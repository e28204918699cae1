"""Tests for duplicate detection and post-submission batch automation."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.duplicates.detector import (
    SimilarityDuplicateDetector,
    comparable_fields,
    normalize_text,
)
from src.pipeline.automation import (
    BatchAutomationCoordinator,
    DuplicateCheckRequest,
)
from src.pipeline.events import CompletionHub
from src.pipeline.models import (
    Batch,
    Document,
    DuplicateMatch,
    ExtractionResult,
    FileType,
    ValidationStatus,
)
from src.storage.memory import InMemoryDocumentStore
from src.utils.config import AutomationConfig, DuplicateThresholds


def _signer(batch_id: str, **metadata: str) -> Document:
    return Document(
        project_id="petitions",
        batch_id=batch_id,
        file_name="sig.jpg",
        file_type=FileType.IMAGE,
        uploaded_by="u",
        extracted_text="signature page",
        extracted_metadata=metadata,
    )


async def _store_with(*documents: Document) -> InMemoryDocumentStore:
    store = InMemoryDocumentStore()
    for batch_id in {d.batch_id for d in documents}:
        await store.create_batch(Batch(project_id="petitions", name=batch_id, id=batch_id))
    for document in documents:
        await store.create_document(document)
    return store


def _request(document_id: str, batch_id: str = "b-1", cross: bool = False) -> DuplicateCheckRequest:
    return DuplicateCheckRequest(
        document_id=document_id,
        batch_id=batch_id,
        check_cross_batch=cross,
        thresholds=DuplicateThresholds(),
    )


class TestComparableFields:
    """Tests for metadata normalization."""

    def test_normalize_text(self) -> None:
        assert normalize_text("  John  A. Smith, Jr ") == "JOHN A SMITH JR"

    def test_collects_name_and_address(self) -> None:
        fields = comparable_fields(
            _signer("b", **{"Printed Name": "Ada", "Address": "1 Main St", "City": "X", "Zip": "9"})
        )
        assert fields == {"name": "ADA", "address": "1 MAIN ST X 9"}

    def test_empty_metadata(self) -> None:
        assert comparable_fields(_signer("b")) == {}


class TestSimilarityDuplicateDetector:
    """Tests for the SimilarityDuplicateDetector class."""

    @pytest.mark.asyncio
    async def test_name_match_flags_both(self) -> None:
        a = _signer("b-1", Printed_Name="John A. Smith")
        b = _signer("b-1", Printed_Name="JOHN A SMITH")
        c = _signer("b-1", Printed_Name="Mary Jones")
        store = await _store_with(a, b, c)

        matches = await SimilarityDuplicateDetector(store).detect(_request(a.id))

        assert [m.duplicate_document_id for m in matches] == [b.id]
        assert matches[0].duplicate_type == "name"
        assert matches[0].similarity_score == pytest.approx(1.0)
        assert (await store.get_document(a.id)).validation_status == ValidationStatus.NEEDS_REVIEW
        assert (await store.get_document(b.id)).validation_status == ValidationStatus.NEEDS_REVIEW
        assert (await store.get_document(c.id)).validation_status == ValidationStatus.PENDING
        assert len(await store.list_duplicates("b-1")) == 1

    @pytest.mark.asyncio
    async def test_combined_match(self) -> None:
        meta = {"name": "Ada Lovelace", "address": "12 Oak Road", "city": "Leeds", "zip": "LS1"}
        a = _signer("b-1", **meta)
        b = _signer("b-1", **meta)
        store = await _store_with(a, b)

        matches = await SimilarityDuplicateDetector(store).detect(_request(a.id))

        assert matches[0].duplicate_type == "combined"
        assert set(matches[0].field_scores) == {"name", "address"}

    @pytest.mark.asyncio
    async def test_below_threshold_is_not_duplicate(self) -> None:
        a = _signer("b-1", Address="12 Oak Road", City="Leeds")
        b = _signer("b-1", Address="98 Elm Avenue", City="York")
        store = await _store_with(a, b)

        assert await SimilarityDuplicateDetector(store).detect(_request(a.id)) == []

    @pytest.mark.asyncio
    async def test_cross_batch_scope(self) -> None:
        a = _signer("b-1", Printed_Name="Grace Hopper")
        b = _signer("b-2", Printed_Name="Grace Hopper")
        store = await _store_with(a, b)
        detector = SimilarityDuplicateDetector(store)

        assert await detector.detect(_request(a.id)) == []
        matches = await detector.detect(_request(a.id, cross=True))
        assert [m.duplicate_document_id for m in matches] == [b.id]

    @pytest.mark.asyncio
    async def test_missing_document(self) -> None:
        store = await _store_with()
        assert await SimilarityDuplicateDetector(store).detect(_request("nope")) == []


def _coordinator(store, hub=None, extraction=None, duplicates=None, **config):
    config.setdefault("duplicate_check_delay", 0.05)
    return BatchAutomationCoordinator(
        store,
        hub if hub is not None else CompletionHub(),
        extraction=extraction or AsyncMock(),
        duplicates=duplicates or AsyncMock(**{"detect.return_value": []}),
        config=AutomationConfig(**config),
    )


class TestBatchAutomationCoordinator:
    """Tests for the BatchAutomationCoordinator class."""

    @pytest.mark.asyncio
    async def test_skips_when_nothing_succeeded(self) -> None:
        extraction = AsyncMock()
        coordinator = _coordinator(MagicMock(), extraction=extraction)

        report = await coordinator.run("b-1", succeeded=0, document_ids=[])

        assert report.extraction_triggered is False
        extraction.trigger.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled(self) -> None:
        extraction = AsyncMock()
        coordinator = _coordinator(MagicMock(), extraction=extraction, enabled=False)

        await coordinator.run("b-1", succeeded=2, document_ids=["a", "b"])

        extraction.trigger.assert_not_called()

    @pytest.mark.asyncio
    async def test_triggers_extraction_with_parallel_cap(self) -> None:
        store = await _store_with(_signer("b-1"))
        extraction = AsyncMock()

        report = await _coordinator(store, extraction=extraction, max_parallel=5).run(
            "b-1", succeeded=1, document_ids=[]
        )

        request = extraction.trigger.call_args.args[0]
        assert request.batch_id == "b-1"
        assert request.max_parallel == 5
        assert report.extraction_triggered is True

    @pytest.mark.asyncio
    async def test_single_document_skips_detection(self) -> None:
        store = await _store_with(_signer("b-1"))
        duplicates = AsyncMock()

        report = await _coordinator(store, duplicates=duplicates).run(
            "b-1", succeeded=1, document_ids=[]
        )

        duplicates.detect.assert_not_called()
        assert report.documents_checked == 0

    @pytest.mark.asyncio
    async def test_detects_each_document(self) -> None:
        a, b = _signer("b-1"), _signer("b-1")
        store = await _store_with(a, b)
        duplicates = AsyncMock()
        duplicates.detect.return_value = [
            DuplicateMatch(a.id, b.id, "b-1", "name", 0.9)
        ]

        report = await _coordinator(store, duplicates=duplicates, check_cross_batch=True).run(
            "b-1", succeeded=2, document_ids=[a.id, b.id]
        )

        assert duplicates.detect.await_count == 2
        assert duplicates.detect.call_args.args[0].check_cross_batch is True
        assert report.documents_checked == 2
        assert report.duplicates_found == 2

    @pytest.mark.asyncio
    async def test_extraction_failure_does_not_block_detection(self) -> None:
        store = await _store_with(_signer("b-1"), _signer("b-1"))
        extraction = AsyncMock()
        extraction.trigger.side_effect = ConnectionError("worker down")
        duplicates = AsyncMock(**{"detect.return_value": []})

        report = await _coordinator(store, extraction=extraction, duplicates=duplicates).run(
            "b-1", succeeded=2, document_ids=[]
        )

        assert "worker down" in report.extraction_error
        assert duplicates.detect.await_count == 2

    @pytest.mark.asyncio
    async def test_detection_failure_is_isolated(self) -> None:
        a, b = _signer("b-1"), _signer("b-1")
        store = await _store_with(a, b)
        duplicates = AsyncMock()
        duplicates.detect.side_effect = [RuntimeError("boom"), []]

        report = await _coordinator(store, duplicates=duplicates).run(
            "b-1", succeeded=2, document_ids=[]
        )

        assert len(report.detection_errors) == 1
        assert report.documents_checked == 1

    @pytest.mark.asyncio
    async def test_waits_for_completion_events(self) -> None:
        hub = CompletionHub()
        store = InMemoryDocumentStore()
        await store.create_batch(Batch(project_id="p", name="b", id="b-1"))
        pending = [
            await store.create_document(
                Document(
                    project_id="p",
                    batch_id="b-1",
                    file_name=f"{i}.png",
                    file_type=FileType.IMAGE,
                    uploaded_by="u",
                )
            )
            for i in range(2)
        ]

        background: list[asyncio.Task] = []

        async def extract_in_background(request) -> None:
            async def finish() -> None:
                await asyncio.sleep(0.01)
                for doc in pending:
                    await store.save_extraction(
                        doc.id, ExtractionResult(extracted_text="Name: Ada")
                    )
                    hub.publish(doc.id)

            background.append(asyncio.create_task(finish()))

        extraction = AsyncMock(**{"trigger.side_effect": extract_in_background})
        seen: list[bool] = []

        async def detect(request):
            seen.append((await store.get_document(request.document_id)).is_extracted)
            return []

        duplicates = AsyncMock(**{"detect.side_effect": detect})
        report = await _coordinator(
            store, hub=hub, extraction=extraction, duplicates=duplicates,
            duplicate_check_delay=2.0,
        ).run("b-1", succeeded=2, document_ids=[d.id for d in pending])

        assert report.all_completed is True
        assert seen == [True, True]
