"""PaddleOCR service, the primary OCR engine.

PaddleOCR detects text boxes, usually one per table cell. Boxes are
regrouped into visual lines (left to right) so an invoice row reads as one
line, which is what the template parser and the fingerprint expect.

The model is loaded lazily on first use.

Based on PaddleOCR v3.x:
https://github.com/PaddlePaddle/PaddleOCR
"""

import logging
import os
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from docengine.ocr.factory import OCRResult
from docengine.shared.config import Settings

logger = logging.getLogger(__name__)

# Tesseract language codes mapped to PaddleOCR ones
PADDLE_LANGUAGES = {"por": "pt", "eng": "en", "spa": "es", "fra": "fr"}

# Boxes whose vertical centres differ by less than this share of the line
# height belong to the same line
LINE_OVERLAP = 0.5


def lines_from_boxes(texts: Sequence[str], boxes: Sequence[Sequence[float]] | None) -> str:
    """Join recognized boxes into text lines.

    Args:
        texts: Recognized text of each box
        boxes: Matching [x1, y1, x2, y2] boxes; None keeps the engine order

    Returns:
        One line per visual row, boxes separated by a space
    """
    if boxes is None or len(boxes) != len(texts):
        return "\n".join(t for t in texts if t.strip())

    cells = sorted(
        (
            ((box[1] + box[3]) / 2, max(box[3] - box[1], 1.0), box[0], text.strip())
            for text, box in zip(texts, boxes, strict=True)
            if text.strip()
        ),
        key=lambda cell: cell[0],
    )

    rows: list[list[tuple[float, float, float, str]]] = []
    for cell in cells:
        if rows:
            row = rows[-1]
            centre = sum(c[0] for c in row) / len(row)
            height = max(c[1] for c in row)
            if abs(cell[0] - centre) < height * LINE_OVERLAP:
                row.append(cell)
                continue
        rows.append([cell])

    return "\n".join(" ".join(c[3] for c in sorted(row, key=lambda c: c[2])) for row in rows)


class PaddleOCRService:
    """OCR service using the PaddleOCR engine."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._ocr: Any = None
        os.environ.setdefault("DISABLE_MODEL_SOURCE_CHECK", "True")

    def _get_ocr(self) -> Any:
        if self._ocr is None:
            try:
                from paddleocr import PaddleOCR
            except ImportError as e:
                raise ImportError(
                    "PaddleOCR not installed. Install with: pip install paddlepaddle paddleocr"
                ) from e

            lang = PADDLE_LANGUAGES.get(self.settings.ocr_language, "en")
            logger.info(f"Initializing PaddleOCR engine (lang={lang})...")
            self._ocr = PaddleOCR(lang=lang)
            logger.info("PaddleOCR initialized successfully")
        return self._ocr

    def is_available(self) -> bool:
        """Check if PaddleOCR can be imported."""
        try:
            import paddleocr  # noqa: F401
        except ImportError:
            return False
        return True

    def extract_text(self, image_path: Path) -> OCRResult:
        """Extract text from an image file, one line per visual row.

        Args:
            image_path: Path to image file

        Returns:
            OCRResult with text and mean recognition score (0-1), or an error
        """
        if not image_path.exists():
            return OCRResult(text="", success=False, error=f"Image file not found: {image_path}")

        try:
            pages = self._get_ocr().ocr(str(image_path))
        except Exception as e:
            logger.error(f"PaddleOCR processing failed for {image_path.name}: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {e}")

        texts: list[str] = []
        scores: list[float] = []
        for page in pages or []:
            if not page:
                continue
            boxes = page.get("rec_boxes")
            if hasattr(boxes, "tolist"):  # numpy array
                boxes = boxes.tolist()
            texts.append(lines_from_boxes(list(page.get("rec_texts", [])), boxes))
            scores.extend(float(s) for s in page.get("rec_scores", []))

        return OCRResult(
            text="\n".join(t for t in texts if t),
            success=True,
            confidence=sum(scores) / len(scores) if scores else 0.0,
        )
