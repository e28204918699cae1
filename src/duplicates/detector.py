"""Similarity-based duplicate detection over extracted metadata.

Names are compared with Jaro-Winkler similarity and addresses with the
normalized Levenshtein similarity, both from rapidfuzz, after upper-casing,
stripping punctuation, and collapsing whitespace. A candidate is a probable
duplicate when at least one field class reaches its threshold; both
documents are then flagged for review.
"""

import re
from typing import Any

from rapidfuzz.distance import JaroWinkler, Levenshtein

from src.pipeline.automation import DuplicateCheckRequest, DuplicateDetectionTrigger
from src.pipeline.models import Document, DuplicateMatch, ValidationStatus
from src.storage.base import DocumentStore
from src.utils.logger import get_logger

logger = get_logger(__name__)

_NAME_KEYS = ("Printed_Name", "Printed Name", "printed_name", "Name", "name")
_ADDRESS_KEYS = ("Address", "address")
_CITY_KEYS = ("City", "city")
_ZIP_KEYS = ("Zip", "zip", "ZIP")
_SIGNATURE_KEYS = ("Signature", "signature")

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    value = _PUNCTUATION.sub("", value.upper())
    return _WHITESPACE.sub(" ", value).strip()


def _first(metadata: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = metadata.get(key)
        if value is not None and str(value).strip():
            return str(value)
    return ""


def comparable_fields(document: Document) -> dict[str, str]:
    """Collect the normalized name, address, and signature of a document.

    Field classes the document has no value for are left out.
    """
    metadata = document.extracted_metadata
    address = " ".join(
        part
        for part in (
            _first(metadata, _ADDRESS_KEYS),
            _first(metadata, _CITY_KEYS),
            _first(metadata, _ZIP_KEYS),
        )
        if part
    )
    fields = {
        "name": normalize_text(_first(metadata, _NAME_KEYS)),
        "address": normalize_text(address),
        "signature": normalize_text(_first(metadata, _SIGNATURE_KEYS)),
    }
    return {key: value for key, value in fields.items() if value}


def similarity(field_class: str, left: str, right: str) -> float:
    if field_class == "address":
        return Levenshtein.normalized_similarity(left, right)
    return JaroWinkler.similarity(left, right)


class SimilarityDuplicateDetector(DuplicateDetectionTrigger):
    """Finds probable duplicates of a document within its batch.

    Args:
        store: Document store to read candidates from and record matches in.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def detect(self, request: DuplicateCheckRequest) -> list[DuplicateMatch]:
        document = await self.store.get_document(request.document_id)
        if document is None:
            logger.warning("Document %s not found for duplicate check", request.document_id)
            return []

        fields = comparable_fields(document)
        if not fields:
            return []

        if request.check_cross_batch:
            candidates = await self.store.list_documents()
        else:
            candidates = await self.store.list_documents(batch_id=request.batch_id)

        thresholds = request.thresholds.model_dump()
        matches: list[DuplicateMatch] = []
        for candidate in candidates:
            if candidate.id == document.id:
                continue
            other = comparable_fields(candidate)
            scores = {
                field_class: similarity(field_class, value, other[field_class])
                for field_class, value in fields.items()
                if field_class in other
            }
            matched = {
                field_class: score
                for field_class, score in scores.items()
                if score >= thresholds[field_class]
            }
            if not matched:
                continue

            duplicate_type = next(iter(matched)) if len(matched) == 1 else "combined"
            matches.append(
                DuplicateMatch(
                    document_id=document.id,
                    duplicate_document_id=candidate.id,
                    batch_id=request.batch_id,
                    duplicate_type=duplicate_type,
                    similarity_score=sum(matched.values()) / len(matched),
                    field_scores=scores,
                )
            )

        if matches:
            await self.store.record_duplicates(matches)
            flagged = {document.id} | {m.duplicate_document_id for m in matches}
            for document_id in flagged:
                await self.store.set_validation_status(
                    document_id, ValidationStatus.NEEDS_REVIEW
                )
            logger.info(
                "Document %s has %d probable duplicate(s)", document.id, len(matches)
            )
        return matches
