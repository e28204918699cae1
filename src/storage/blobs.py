"""Durable blob storage for captured payloads."""

import asyncio
import hashlib
import mimetypes
from pathlib import Path

from src.utils.logger import get_logger

from .base import BlobStorage

logger = get_logger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "application/pdf": ".pdf",
}


def _extension_for(content_type: str) -> str:
    return _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"


def _blob_name(data: bytes, content_type: str) -> str:
    """Content-addressed name: sha256 of the bytes plus a type extension."""
    return hashlib.sha256(data).hexdigest() + _extension_for(content_type)


class InMemoryBlobStorage(BlobStorage):
    """Keeps blobs in a dict; references look like ``memory://<name>``."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def put(self, data: bytes, content_type: str) -> str:
        ref = f"memory://{_blob_name(data, content_type)}"
        self._blobs[ref] = bytes(data)
        return ref

    async def get(self, reference: str) -> bytes:
        return self._blobs[reference]


class LocalBlobStorage(BlobStorage):
    """Stores blobs as files under ``root``; references look like ``file://<name>``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    async def put(self, data: bytes, content_type: str) -> str:
        name = _blob_name(data, content_type)
        path = self.root / name
        if not path.exists():
            await asyncio.to_thread(path.write_bytes, data)
        logger.debug("Stored blob %s (%d bytes)", name, len(data))
        return f"file://{name}"

    async def get(self, reference: str) -> bytes:
        path = self._resolve(reference)
        if path is None or not path.is_file():
            raise KeyError(reference)
        return await asyncio.to_thread(path.read_bytes)

    def _resolve(self, reference: str) -> Path | None:
        """Map a reference to a path under root. Prevents path traversal."""
        if not reference.startswith("file://"):
            return None
        name = reference[len("file://"):]
        if not name or ".." in name or "/" in name or "\\" in name:
            return None
        return self.root / name
