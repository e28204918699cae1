"""Capture normalization: raw capture in, submission-ready payload out.

Images are size-bounded (small ones pass through untouched). PDFs are
submitted as their text layer when it carries enough text; otherwise the
first page is rasterized and submitted as an image.
"""

from src.pipeline.errors import CaptureError
from src.pipeline.models import Capture, FileType, NormalizedPayload
from src.utils.config import CaptureConfig
from src.utils.logger import get_logger

from .image_compressor import ImageCompressor, convert_tiff_to_png, is_tiff
from .pdf_handler import PDFHandler

logger = get_logger(__name__)


class CaptureNormalizer:
    """Converts raw captures into payloads the extraction worker accepts.

    Args:
        config: Capture normalization settings.
        pdf_handler: PDF reader/renderer. Built from ``config`` if omitted.
        compressor: Image compressor. Built from ``config`` if omitted.
    """

    def __init__(
        self,
        config: CaptureConfig,
        pdf_handler: PDFHandler | None = None,
        compressor: ImageCompressor | None = None,
    ) -> None:
        self.config = config
        self.pdf_handler = pdf_handler or PDFHandler(
            max_text_pages=config.max_text_pages,
            render_scale=config.render_scale,
            render_max_dimension=config.render_max_dimension,
        )
        self.compressor = compressor or ImageCompressor(config.compression)

    def normalize(self, capture: Capture) -> NormalizedPayload:
        """Normalize one capture.

        Args:
            capture: The raw captured file.

        Returns:
            A payload carrying either PDF text or image bytes.

        Raises:
            CaptureError: If the file is empty, of an unsupported type,
                undecodable, or the PDF fallback rendering fails.
        """
        if not capture.content:
            raise CaptureError("Capture is empty", file_name=capture.file_name)

        if capture.is_pdf:
            return self._normalize_pdf(capture)
        if capture.is_image or is_tiff(capture.file_name, capture.content_type):
            return self._normalize_image(capture)

        raise CaptureError(
            f"Unsupported file type: {capture.content_type}",
            file_name=capture.file_name,
        )

    def _normalize_image(self, capture: Capture) -> NormalizedPayload:
        content = capture.content
        content_type = capture.content_type

        try:
            if is_tiff(capture.file_name, content_type):
                content = convert_tiff_to_png(content)
                content_type = "image/png"
                logger.info("Converted TIFF capture %s to PNG", capture.file_name)

            if len(content) <= self.config.min_compress_bytes:
                return NormalizedPayload(
                    file_name=capture.file_name,
                    file_type=FileType.IMAGE,
                    is_pdf=False,
                    content_type=content_type,
                    original_size=capture.size,
                    blob=content,
                )

            compressed = self.compressor.compress(content)
        except Exception as exc:
            raise CaptureError(
                f"Could not read image: {exc}", file_name=capture.file_name
            ) from exc

        return NormalizedPayload(
            file_name=capture.file_name,
            file_type=FileType.IMAGE,
            is_pdf=False,
            content_type="image/jpeg",
            original_size=capture.size,
            blob=compressed.data,
            compressed=True,
        )

    def _normalize_pdf(self, capture: Capture) -> NormalizedPayload:
        try:
            text = self.pdf_handler.extract_text(capture.content)
        except Exception as exc:
            logger.warning(
                "PDF text extraction failed for %s: %s", capture.file_name, exc
            )
            text = ""

        if len(text.strip()) >= self.config.min_text_chars:
            logger.info(
                "Using text layer of %s (%d chars)", capture.file_name, len(text)
            )
            # The original PDF is what gets archived; the job carries the text.
            return NormalizedPayload(
                file_name=capture.file_name,
                file_type=FileType.PDF,
                is_pdf=True,
                content_type="application/pdf",
                original_size=capture.size,
                text=text,
                blob=capture.content,
            )

        logger.info(
            "PDF %s has no usable text layer, rasterizing page 1", capture.file_name
        )
        try:
            image = self.pdf_handler.render_first_page(capture.content)
        except Exception as exc:
            raise CaptureError(
                f"Could not extract text from PDF: {exc}",
                file_name=capture.file_name,
            ) from exc

        return NormalizedPayload(
            file_name=capture.file_name,
            file_type=FileType.PDF,
            is_pdf=False,
            content_type="image/png",
            original_size=capture.size,
            blob=image,
            rasterized=True,
        )
