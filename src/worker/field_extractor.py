"""Rule-based field extraction from OCR or PDF text.

Requested fields are matched as ``Label: value`` lines first; fields whose
names suggest a well-known value type (dates, amounts, emails, phones,
invoice numbers) fall back to regex patterns. Table fields are read from
rows whose cells are separated by tabs or runs of spaces. Check mode adds
the MICR line (routing, account, and check numbers).
"""

import re
from dataclasses import dataclass, field

from src.utils.logger import get_logger

logger = get_logger(__name__)

LABEL_CONFIDENCE = 0.9

# Pattern definitions: (regex, base_confidence, flags)
_DATE_PATTERNS: list[tuple[str, float, int]] = [
    (r"\b(\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4})\b", 0.9, 0),
    (r"\b(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})\b", 0.9, 0),
    (
        r"\b((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)"
        r"[a-z]*\s+\d{1,2},?\s+\d{2,4})\b",
        0.85,
        re.IGNORECASE,
    ),
]

_AMOUNT_PATTERNS: list[tuple[str, float, int]] = [
    (
        r"(?:Grand\s*Total|Total\s*Due|Amount\s*Due|Balance\s*Due)"
        r"[:\s]*\$?\s*([\d,]+\.\d{2})",
        0.95,
        re.IGNORECASE,
    ),
    (r"\$\s*([\d,]+\.\d{2})\b", 0.9, 0),
    (r"\b([\d,]+\.\d{2})\s*(?:USD|EUR|GBP)\b", 0.85, 0),
]

_EMAIL_PATTERNS: list[tuple[str, float, int]] = [
    (r"\b([A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,})\b", 0.95, 0),
]

_PHONE_PATTERNS: list[tuple[str, float, int]] = [
    (r"((?:\+1[\s.\-]?)?\(?\d{3}\)?[\s.\-]?\d{3}[\s.\-]?\d{4})\b", 0.9, 0),
]

_INVOICE_PATTERNS: list[tuple[str, float, int]] = [
    (r"(?:Invoice|Inv)\s*(?:No\.?|Number|#)?[\s#:]*([A-Z0-9][A-Z0-9\-]+)", 0.85, re.IGNORECASE),
]

# Keyword in the field name -> fallback patterns, tried in this order
_FALLBACKS: list[tuple[str, list[tuple[str, float, int]]]] = [
    ("date", _DATE_PATTERNS),
    ("amount", _AMOUNT_PATTERNS),
    ("total", _AMOUNT_PATTERNS),
    ("email", _EMAIL_PATTERNS),
    ("phone", _PHONE_PATTERNS),
    ("invoice", _INVOICE_PATTERNS),
]

# Tesseract renders the E-13B transit/on-us symbols inconsistently, so the
# MICR line is matched on its digit groups with up to three junk characters
# between them.
_MICR_PATTERN = re.compile(r"(?<!\d)(\d{9})(?!\d)\D{1,3}(\d{4,17})(?!\d)\D{1,3}(\d{3,6})(?!\d)")

_CELL_SPLIT = re.compile(r"\t+|\s{2,}")
_NUMERIC_CELL = re.compile(r"^\$?\s*[\d,]+(?:\.\d+)?$")


@dataclass
class ExtractedField:
    """A field value found in document text."""

    field_name: str
    value: str
    confidence: float
    extraction_method: str


@dataclass
class FieldExtraction:
    """Everything the extractor found in one document's text."""

    fields: dict[str, ExtractedField] = field(default_factory=dict)
    line_items: list[dict[str, str]] = field(default_factory=list)

    @property
    def metadata(self) -> dict[str, str]:
        return {name: f.value for name, f in self.fields.items()}

    @property
    def confidence(self) -> float | None:
        if not self.fields:
            return None
        return sum(f.confidence for f in self.fields.values()) / len(self.fields)


def _label_regex(name: str) -> re.Pattern:
    words = [re.escape(w) for w in re.split(r"[\s_\-]+", name.strip()) if w]
    label = r"[\s_\-]*".join(words)
    return re.compile(rf"^\s*{label}\s*[:#]\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)


def is_valid_routing_number(value: str) -> bool:
    """Check an ABA routing number's 3-7-1 checksum."""
    if len(value) != 9 or not value.isdigit():
        return False
    d = [int(c) for c in value]
    total = 3 * (d[0] + d[3] + d[6]) + 7 * (d[1] + d[4] + d[7]) + (d[2] + d[5] + d[8])
    return total % 10 == 0


class FieldExtractor:
    """Extracts a project's requested fields from document text."""

    def extract(
        self,
        text: str,
        fields: list[dict] | None = None,
        table_fields: list[dict] | None = None,
        check_mode: bool = False,
    ) -> FieldExtraction:
        """Extract requested fields, table rows, and check data.

        Args:
            text: Document text (PDF text layer or OCR output).
            fields: Requested fields as ``{"name", "description"}`` dicts.
            table_fields: Column definitions for line items.
            check_mode: Also read the MICR line of a check.

        Returns:
            The fields found; fields that could not be found are omitted.
        """
        result = FieldExtraction()
        for field_config in fields or []:
            found = self.extract_field(text, field_config["name"])
            if found is not None:
                result.fields[field_config["name"]] = found

        if table_fields:
            result.line_items = self.extract_line_items(
                text, [column["name"] for column in table_fields]
            )

        if check_mode:
            for name, found in self.extract_check_fields(text).items():
                result.fields.setdefault(name, found)

        logger.info(
            "Field extraction found %d field(s) and %d line item(s)",
            len(result.fields),
            len(result.line_items),
        )
        return result

    def extract_field(self, text: str, name: str) -> ExtractedField | None:
        match = _label_regex(name).search(text)
        if match:
            return ExtractedField(
                field_name=name,
                value=match.group(1),
                confidence=LABEL_CONFIDENCE,
                extraction_method="label",
            )

        lowered = name.lower()
        for keyword, patterns in _FALLBACKS:
            if keyword not in lowered:
                continue
            for pattern, confidence, flags in patterns:
                match = re.search(pattern, text, flags)
                if match:
                    return ExtractedField(
                        field_name=name,
                        value=match.group(1).strip(),
                        confidence=confidence,
                        extraction_method="regex",
                    )
        return None

    def extract_line_items(self, text: str, columns: list[str]) -> list[dict[str, str]]:
        """Read table rows with exactly one cell per column.

        Header rows (cells equal to the column names) are skipped, and a
        row must hold at least one numeric cell to count as an item.
        """
        header = [c.lower() for c in columns]
        items: list[dict[str, str]] = []
        for line in text.splitlines():
            cells = [c.strip() for c in _CELL_SPLIT.split(line.strip()) if c.strip()]
            if len(cells) != len(columns):
                continue
            if [c.lower() for c in cells] == header:
                continue
            if not any(_NUMERIC_CELL.match(c) for c in cells):
                continue
            items.append(dict(zip(columns, cells)))
        return items

    def extract_check_fields(self, text: str) -> dict[str, ExtractedField]:
        found: dict[str, ExtractedField] = {}
        for match in _MICR_PATTERN.finditer(text):
            routing, account, check_number = match.groups()
            if not is_valid_routing_number(routing):
                continue
            for name, value in (
                ("routing_number", routing),
                ("account_number", account),
                ("check_number", check_number),
            ):
                found[name] = ExtractedField(
                    field_name=name,
                    value=value,
                    confidence=0.8,
                    extraction_method="micr",
                )
            break

        for name, patterns in (("amount", _AMOUNT_PATTERNS), ("date", _DATE_PATTERNS)):
            for pattern, confidence, flags in patterns:
                match = re.search(pattern, text, flags)
                if match:
                    found[name] = ExtractedField(
                        field_name=name,
                        value=match.group(1).replace(",", "") if name == "amount" else match.group(1),
                        confidence=confidence,
                        extraction_method="regex",
                    )
                    break
        return found
