"""Tests for image compression and capture normalization."""

import io
from unittest.mock import MagicMock

import pytest
from PIL import Image

from src.capture.image_compressor import (
    ImageCompressor,
    convert_tiff_to_png,
    is_tiff,
)
from src.capture.normalizer import CaptureNormalizer
from src.pipeline.errors import CaptureError
from src.pipeline.models import Capture, FileType
from src.utils.config import CaptureConfig, CompressionProfile


class TestImageCompressor:
    """Tests for the ImageCompressor class."""

    def test_bounds_dimensions(self, image_factory) -> None:
        content = image_factory(4000, 3000)
        result = ImageCompressor(CompressionProfile(max_dimension=2048)).compress(content)

        assert max(result.width, result.height) == 2048
        assert result.data[:2] == b"\xff\xd8"
        assert result.original_size == len(content)

    def test_steps_quality_down_to_fit(self, image_factory) -> None:
        content = image_factory(800, 800, noise=True)
        profile = CompressionProfile(max_bytes=50 * 1024, initial_quality=0.9)

        result = ImageCompressor(profile).compress(content)

        assert result.quality < 0.9
        assert result.quality >= profile.min_quality - 1e-9

    def test_keeps_quality_when_small_enough(self, image_factory) -> None:
        result = ImageCompressor(CompressionProfile()).compress(image_factory(100, 100))
        assert result.quality == 0.85


class TestTiff:
    """Tests for TIFF detection and conversion."""

    def test_is_tiff(self) -> None:
        assert is_tiff("scan.TIF", "application/octet-stream")
        assert is_tiff("scan", "image/tiff")
        assert not is_tiff("photo.jpg", "image/jpeg")

    def test_convert_to_png(self, image_factory) -> None:
        png = convert_tiff_to_png(image_factory(50, 40, fmt="TIFF"))
        with Image.open(io.BytesIO(png)) as img:
            assert img.format == "PNG"
            assert img.size == (50, 40)


class TestNormalizeImage:
    """Tests for image captures."""

    def test_small_image_is_byte_identical(self, small_png: bytes) -> None:
        compressor = MagicMock()
        normalizer = CaptureNormalizer(CaptureConfig(), compressor=compressor)

        payload = normalizer.normalize(Capture("a.png", small_png, "image/png"))

        assert payload.blob == small_png
        assert payload.content_type == "image/png"
        assert payload.is_pdf is False
        assert payload.compressed is False
        compressor.compress.assert_not_called()

    def test_image_at_threshold_is_unchanged(self, small_png: bytes) -> None:
        config = CaptureConfig(min_compress_bytes=len(small_png))
        payload = CaptureNormalizer(config).normalize(Capture("a.png", small_png, "image/png"))
        assert payload.blob == small_png

    def test_large_image_is_compressed(self, image_factory) -> None:
        content = image_factory(1200, 1200, noise=True)
        config = CaptureConfig(min_compress_bytes=1024)

        payload = CaptureNormalizer(config).normalize(
            Capture("big.png", content, "image/png")
        )

        assert payload.compressed is True
        assert payload.content_type == "image/jpeg"
        assert payload.file_type == FileType.IMAGE
        assert payload.original_size == len(content)

    def test_tiff_is_converted(self, image_factory) -> None:
        content = image_factory(60, 60, fmt="TIFF")
        payload = CaptureNormalizer(CaptureConfig()).normalize(
            Capture("scan.tiff", content, "image/tiff")
        )
        assert payload.blob != content
        assert payload.content_type == "image/png"
        assert payload.blob.startswith(b"\x89PNG")

    def test_undecodable_image_raises(self) -> None:
        config = CaptureConfig(min_compress_bytes=4)
        with pytest.raises(CaptureError) as exc_info:
            CaptureNormalizer(config).normalize(
                Capture("bad.jpg", b"not really an image", "image/jpeg")
            )
        assert exc_info.value.file_name == "bad.jpg"


class TestNormalizePdf:
    """Tests for PDF captures."""

    def _normalizer(self, text: str = "", render=None) -> tuple[CaptureNormalizer, MagicMock]:
        handler = MagicMock()
        handler.extract_text.return_value = text
        handler.render_first_page.return_value = render or b"\x89PNG fake"
        return CaptureNormalizer(CaptureConfig(), pdf_handler=handler), handler

    def test_text_pdf_never_rasterizes(self) -> None:
        normalizer, handler = self._normalizer("INVOICE 123 total due 45.00")

        payload = normalizer.normalize(Capture("inv.pdf", b"%PDF-1.4", "application/pdf"))

        assert payload.is_pdf is True
        assert payload.text == "INVOICE 123 total due 45.00"
        assert payload.blob == b"%PDF-1.4"
        handler.render_first_page.assert_not_called()

    def test_scanned_pdf_rasterizes_once(self) -> None:
        normalizer, handler = self._normalizer("   short ")

        payload = normalizer.normalize(Capture("scan.pdf", b"%PDF-1.4", "application/pdf"))

        handler.render_first_page.assert_called_once_with(b"%PDF-1.4")
        assert payload.is_pdf is False
        assert payload.rasterized is True
        assert payload.content_type == "image/png"
        assert payload.text is None

    def test_text_failure_falls_back_to_render(self) -> None:
        normalizer, handler = self._normalizer()
        handler.extract_text.side_effect = ValueError("broken xref")

        payload = normalizer.normalize(Capture("x.pdf", b"%PDF-1.4", "application/pdf"))

        assert payload.rasterized is True

    def test_render_failure_raises_capture_error(self) -> None:
        normalizer, handler = self._normalizer()
        handler.render_first_page.side_effect = RuntimeError("no poppler")

        with pytest.raises(CaptureError, match="Could not extract text from PDF"):
            normalizer.normalize(Capture("x.pdf", b"%PDF-1.4", "application/pdf"))

    def test_pdf_detected_by_magic(self) -> None:
        normalizer, _ = self._normalizer("plenty of text here")
        payload = normalizer.normalize(Capture("upload", b"%PDF-1.7", "application/octet-stream"))
        assert payload.is_pdf is True


class TestNormalizeRejects:
    """Tests for captures that cannot be normalized."""

    def test_empty_capture(self) -> None:
        with pytest.raises(CaptureError, match="empty"):
            CaptureNormalizer(CaptureConfig()).normalize(Capture("a.png", b"", "image/png"))

    def test_unsupported_type(self) -> None:
        with pytest.raises(CaptureError, match="Unsupported"):
            CaptureNormalizer(CaptureConfig()).normalize(
                Capture("notes.txt", b"hello", "text/plain")
            )
