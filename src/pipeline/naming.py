"""Document naming from a ``{FieldName}`` pattern over known metadata."""

import re
from typing import Any

from src.utils.logger import get_logger

logger = get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([^}]+)\}")
_INVALID_CHARS = re.compile(r'[<>:"/\\|?*]')
_EXTENSION = re.compile(r"\.\w+$")


def apply_naming_pattern(
    pattern: str | None, metadata: dict[str, Any], original_file_name: str
) -> str:
    """Build a document name from a naming pattern.

    Each ``{FieldName}`` placeholder is replaced by the (stripped) value of
    that field. An empty pattern, or any placeholder whose field is missing
    or blank, yields the original file name. Characters that are invalid
    in file names become ``-`` and the original extension is kept.

    Args:
        pattern: Naming pattern, e.g. ``"{Vendor}_{InvoiceNumber}"``.
        metadata: Currently known field values.
        original_file_name: Name of the captured file.

    Returns:
        The formatted document name.
    """
    if not pattern or not pattern.strip():
        return original_file_name

    unresolved: list[str] = []

    def substitute(match: re.Match) -> str:
        value = metadata.get(match.group(1))
        if value is None or str(value).strip() == "":
            unresolved.append(match.group(1))
            return match.group(0)
        return str(value).strip()

    name = _PLACEHOLDER.sub(substitute, pattern)
    if unresolved:
        logger.debug(
            "Naming pattern fields %s unknown, keeping %s",
            unresolved,
            original_file_name,
        )
        return original_file_name

    name = _INVALID_CHARS.sub("-", name)
    extension_match = _EXTENSION.search(original_file_name)
    extension = extension_match.group(0) if extension_match else ""
    return _EXTENSION.sub("", name) + extension
