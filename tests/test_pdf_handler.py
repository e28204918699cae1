"""Tests for PDF text extraction and first-page rendering."""

import io
from unittest.mock import MagicMock, patch

import pytest
from PIL import Image

from src.capture.pdf_handler import PDFHandler


def _mock_pdf(page_texts: list[str | None]) -> MagicMock:
    pdf = MagicMock()
    pdf.pages = []
    for text in page_texts:
        page = MagicMock()
        page.extract_text.return_value = text
        pdf.pages.append(page)
    pdf.__enter__.return_value = pdf
    return pdf


class TestExtractText:
    """Tests for reading the PDF text layer."""

    @patch("src.capture.pdf_handler.pdfplumber.open")
    def test_joins_pages_in_order(self, mock_open: MagicMock) -> None:
        mock_open.return_value = _mock_pdf(["page one", None, "page three"])

        text = PDFHandler().extract_text(b"%PDF-1.4")

        assert text == "page one\n\npage three"

    @patch("src.capture.pdf_handler.pdfplumber.open")
    def test_reads_only_leading_pages(self, mock_open: MagicMock) -> None:
        pdf = _mock_pdf([f"p{i}" for i in range(8)])
        mock_open.return_value = pdf

        text = PDFHandler(max_text_pages=5).extract_text(b"%PDF-1.4")

        assert text.split("\n") == ["p0", "p1", "p2", "p3", "p4"]
        pdf.pages[5].extract_text.assert_not_called()


class TestRenderFirstPage:
    """Tests for first-page rasterization."""

    @patch("src.capture.pdf_handler.convert_from_bytes")
    def test_renders_page_one_at_scaled_dpi(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = [Image.new("RGB", (600, 800), "white")]

        png = PDFHandler(render_scale=1.5).render_first_page(b"%PDF-1.4")

        mock_convert.assert_called_once_with(
            b"%PDF-1.4", dpi=108, first_page=1, last_page=1
        )
        assert png.startswith(b"\x89PNG")

    @patch("src.capture.pdf_handler.convert_from_bytes")
    def test_bounds_longest_side(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = [Image.new("RGB", (1000, 4000), "white")]

        png = PDFHandler(render_max_dimension=2000).render_first_page(b"%PDF")

        with Image.open(io.BytesIO(png)) as img:
            assert max(img.size) == 2000
            assert img.size == (500, 2000)

    @patch("src.capture.pdf_handler.convert_from_bytes")
    def test_render_failure_raises(self, mock_convert: MagicMock) -> None:
        mock_convert.side_effect = OSError("poppler missing")

        with pytest.raises(RuntimeError, match="poppler missing"):
            PDFHandler().render_first_page(b"%PDF")

    @patch("src.capture.pdf_handler.convert_from_bytes")
    def test_no_pages_raises(self, mock_convert: MagicMock) -> None:
        mock_convert.return_value = []

        with pytest.raises(RuntimeError):
            PDFHandler().render_first_page(b"%PDF")
