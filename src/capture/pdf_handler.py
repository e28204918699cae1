"""PDF text-layer reading and first-page rasterization.

Reads the embedded text of the leading pages with pdfplumber and, when a
PDF carries no usable text layer, renders its first page to a PNG with
pdf2image so it can be OCR'd as an image.
"""

import io

import pdfplumber
from pdf2image import convert_from_bytes
from PIL import Image

from src.utils.logger import get_logger

logger = get_logger(__name__)

# pdf2image renders at 72 dpi for scale 1.0
_BASE_DPI = 72


class PDFHandler:
    """Handles PDF text extraction and page rendering for capture normalization.

    Args:
        max_text_pages: Number of leading pages whose text layer is read.
        render_scale: Scale factor applied when rasterizing a page.
        render_max_dimension: Upper bound in pixels for the longest side
            of a rendered page.
    """

    def __init__(
        self,
        max_text_pages: int = 5,
        render_scale: float = 1.5,
        render_max_dimension: int = 2000,
    ) -> None:
        self.max_text_pages = max_text_pages
        self.render_scale = render_scale
        self.render_max_dimension = render_max_dimension

    def extract_text(self, pdf_bytes: bytes) -> str:
        """Concatenate the text layers of the first pages of a PDF.

        Args:
            pdf_bytes: Raw PDF content.

        Returns:
            Page texts joined by newlines, in page order.
        """
        parts: list[str] = []
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            total_pages = len(pdf.pages)
            for page in pdf.pages[: self.max_text_pages]:
                parts.append(page.extract_text() or "")

        logger.debug(
            "Read text layer of %d/%d PDF pages", len(parts), total_pages
        )
        return "\n".join(parts)

    def render_first_page(self, pdf_bytes: bytes) -> bytes:
        """Rasterize page 1 of a PDF to PNG bytes.

        Args:
            pdf_bytes: Raw PDF content.

        Returns:
            PNG-encoded image of the first page, bounded by
            ``render_max_dimension``.

        Raises:
            RuntimeError: If the page cannot be rendered.
        """
        dpi = int(_BASE_DPI * self.render_scale)
        try:
            pages = convert_from_bytes(pdf_bytes, dpi=dpi, first_page=1, last_page=1)
        except Exception as exc:
            raise RuntimeError(f"PDF rendering failed: {exc}") from exc

        if not pages:
            raise RuntimeError("PDF rendering produced no pages")

        image: Image.Image = pages[0]
        if max(image.size) > self.render_max_dimension:
            image.thumbnail((self.render_max_dimension, self.render_max_dimension))

        buf = io.BytesIO()
        image.save(buf, format="PNG")
        logger.info(
            "Rendered PDF page 1 at %d DPI to %dx%d image",
            dpi,
            image.width,
            image.height,
        )
        return buf.getvalue()
