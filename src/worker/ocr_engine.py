"""Tesseract OCR for image payloads, with word-level boxes.

Image payloads reach the worker as stored bytes (JPEG from compression,
PNG from PDF rasterization or TIFF conversion, or the original upload).
"""

import io
from dataclasses import asdict, dataclass

import pytesseract
from PIL import Image

from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class BoundingBox:
    """Axis-aligned bounding box for a detected word."""

    x: int
    y: int
    width: int
    height: int


@dataclass
class OCRWord:
    """A single word recognised by Tesseract."""

    text: str
    bbox: BoundingBox
    confidence: float
    line_num: int

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "line": self.line_num,
            **asdict(self.bbox),
        }


@dataclass
class OCRResult:
    """OCR output for one image."""

    text: str
    words: list[OCRWord]
    language: str
    confidence: float


class TesseractEngine:
    """Wrapper around Tesseract OCR.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: Default OCR language code.
        psm: Tesseract page segmentation mode.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "eng",
        psm: int = 3,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.psm = psm

    def extract_bytes(self, content: bytes, lang: str | None = None) -> OCRResult:
        """Decode image bytes and run OCR on them."""
        with Image.open(io.BytesIO(content)) as image:
            image.load()
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")
            return self.extract_text(image, lang=lang)

    def extract_text(self, image: Image.Image, lang: str | None = None) -> OCRResult:
        """Extract text from an image with word-level bounding boxes.

        Args:
            image: Decoded page image.
            lang: OCR language code. Defaults to the engine default.

        Returns:
            OCRResult containing full text, word details, and confidence.
        """
        lang = lang or self.default_lang
        config = f"--psm {self.psm}"

        text = pytesseract.image_to_string(image, lang=lang, config=config)
        data = pytesseract.image_to_data(
            image,
            lang=lang,
            config=config,
            output_type=pytesseract.Output.DICT,
        )

        words: list[OCRWord] = []
        total_conf = 0.0
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = data["text"][i].strip()
            if conf <= 0 or not word_text:
                continue
            words.append(
                OCRWord(
                    text=word_text,
                    bbox=BoundingBox(
                        x=data["left"][i],
                        y=data["top"][i],
                        width=data["width"][i],
                        height=data["height"][i],
                    ),
                    confidence=conf / 100.0,
                    line_num=data["line_num"][i],
                )
            )
            total_conf += conf

        avg_conf = (total_conf / len(words) / 100.0) if words else 0.0
        logger.info(
            "OCR extracted %d words with average confidence %.2f",
            len(words),
            avg_conf,
        )
        return OCRResult(text=text.strip(), words=words, language=lang, confidence=avg_conf)
