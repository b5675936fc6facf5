"""Local OCR service using Tesseract.

Used as the fallback engine when the primary OCR provider fails. Words are
regrouped into lines from image_to_data output so the table layout survives,
and the mean word confidence is reported (0-1).

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import logging
import os
from pathlib import Path

import pytesseract
from PIL import Image

from docengine.ocr.factory import OCRResult
from docengine.shared.config import Settings

logger = logging.getLogger(__name__)


class TesseractOCRService:
    """OCR service using Tesseract engine."""

    def __init__(self, settings: Settings) -> None:
        """Initialize OCR service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from environment.

        Allows overriding default Tesseract path via TESSERACT_CMD environment variable.
        Common paths:
        - Linux: /usr/bin/tesseract
        - macOS: /opt/homebrew/bin/tesseract or /usr/local/bin/tesseract
        """
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def is_available(self) -> bool:
        try:
            pytesseract.get_tesseract_version()
        except (pytesseract.TesseractNotFoundError, OSError):
            return False
        return True

    def extract_text(self, image_path: Path) -> OCRResult:
        """Extract text from image file.

        Args:
            image_path: Path to image file

        Returns:
            OCRResult with extracted text or error information
        """
        if not image_path.exists():
            return OCRResult(text="", success=False, error=f"Image file not found: {image_path}")

        try:
            with Image.open(image_path) as image:
                data = pytesseract.image_to_data(
                    image,
                    lang=self.settings.ocr_language,
                    output_type=pytesseract.Output.DICT,
                )
        except Exception as e:
            logger.error(f"Tesseract processing failed for {image_path.name}: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {e}")

        text, confidence = lines_from_data(data)
        return OCRResult(text=text, success=True, confidence=confidence)


def lines_from_data(data: dict[str, list]) -> tuple[str, float | None]:
    """Join image_to_data words into lines and average their confidence.

    Args:
        data: pytesseract Output.DICT result

    Returns:
        Tuple of (text with one line per OCR line, mean confidence 0-1 or None)
    """
    lines: dict[tuple[int, int, int], list[str]] = {}
    confidences: list[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue
        key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
        lines.setdefault(key, []).append(word)
        conf = float(data["conf"][i])
        if conf >= 0:  # -1 marks non-word boxes
            confidences.append(conf)

    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = sum(confidences) / len(confidences) / 100 if confidences else None
    return text, confidence
