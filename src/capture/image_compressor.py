"""Size-bounded re-encoding of captured images.

Large camera and scanner images are downscaled and re-encoded as JPEG
so that extraction payloads stay small; TIFF captures are converted to
PNG first because most extraction backends do not accept TIFF.
"""

import io
from dataclasses import dataclass

from PIL import Image, ImageOps

from src.utils.config import CompressionProfile
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CompressedImage:
    """Result of compressing one image."""

    data: bytes
    original_size: int
    width: int
    height: int
    quality: float

    @property
    def compressed_size(self) -> int:
        return len(self.data)


def is_tiff(file_name: str, content_type: str) -> bool:
    """Check whether a capture is a TIFF image."""
    name = file_name.lower()
    return content_type == "image/tiff" or name.endswith((".tif", ".tiff"))


def convert_tiff_to_png(content: bytes) -> bytes:
    """Convert the first frame of a TIFF image to PNG bytes."""
    with Image.open(io.BytesIO(content)) as img:
        img.seek(0)
        frame = img.convert("RGBA") if img.mode in ("P", "LA") else img.copy()
    buf = io.BytesIO()
    frame.save(buf, format="PNG")
    return buf.getvalue()


class ImageCompressor:
    """Downscales and re-encodes images toward a target byte size.

    Args:
        profile: Size and quality targets.
    """

    def __init__(self, profile: CompressionProfile) -> None:
        self.profile = profile

    def compress(self, content: bytes) -> CompressedImage:
        """Compress an encoded image.

        The image is first bounded to ``max_dimension`` on its longest
        side, then encoded as JPEG starting at ``initial_quality`` and
        stepping down until it fits ``max_bytes`` or reaches
        ``min_quality``.

        Args:
            content: Encoded image bytes (any format Pillow can read).

        Returns:
            The re-encoded JPEG and its dimensions.
        """
        profile = self.profile
        with Image.open(io.BytesIO(content)) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.thumbnail((profile.max_dimension, profile.max_dimension))

            quality = profile.initial_quality
            while True:
                buf = io.BytesIO()
                img.save(buf, format="JPEG", quality=round(quality * 100), optimize=True)
                data = buf.getvalue()
                if (
                    len(data) <= profile.max_bytes
                    or quality - profile.quality_step < profile.min_quality
                ):
                    break
                quality -= profile.quality_step

            width, height = img.size

        logger.info(
            "Image compressed: %.1fKB -> %.1fKB (quality %.2f)",
            len(content) / 1024,
            len(data) / 1024,
            quality,
        )
        return CompressedImage(
            data=data,
            original_size=len(content),
            width=width,
            height=height,
            quality=quality,
        )
