"""OCR engine contract and construction.

Routing uses up to two engines: the primary one (``ocr_provider``) and a
local fallback (``ocr_fallback_provider``) whose text is flagged for manual
review. Engine modules are imported only when selected, so PaddleOCR stays
an optional install.
"""

import importlib
import logging
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from docengine.shared.config import Settings

logger = logging.getLogger(__name__)

# engine name -> (module, class)
ENGINES: dict[str, tuple[str, str]] = {
    "tesseract": ("docengine.ocr.service", "TesseractOCRService"),
    "paddleocr": ("docengine.ocr.paddle_service", "PaddleOCRService"),
}


class OCRResult(BaseModel):
    """Text recognized on one page or image.

    Attributes:
        text: Recognized text, one line per visual row
        success: False when the engine could not read the file
        error: Failure reason
        confidence: Mean recognition confidence (0-1), when the engine reports one
    """

    text: str
    success: bool
    error: str | None = None
    confidence: float | None = None


class OCRService(Protocol):
    """An OCR engine. Calls are blocking; the router runs them in a thread."""

    def extract_text(self, image_path: Path) -> OCRResult: ...

    def is_available(self) -> bool: ...


def build_engine(name: str, settings: Settings) -> OCRService:
    """Instantiate the named OCR engine.

    Raises:
        ValueError: If no engine has that name
    """
    if name not in ENGINES:
        raise ValueError(f"Unknown OCR provider: '{name}'. Available: {', '.join(ENGINES)}")

    module_name, class_name = ENGINES[name]
    engine: OCRService = getattr(importlib.import_module(module_name), class_name)(settings)
    if not engine.is_available():
        logger.warning(f"OCR engine '{name}' is installed incompletely; its calls will fail")
    logger.info(f"Created OCR service: {name}")
    return engine


def create_ocr_service(settings: Settings) -> OCRService:
    """Primary OCR engine from ``settings.ocr_provider``."""
    return build_engine(settings.ocr_provider, settings)


def create_fallback_ocr_service(settings: Settings) -> OCRService | None:
    """Local fallback engine, or None when ``ocr_fallback_provider`` is 'none'."""
    if settings.ocr_fallback_provider == "none":
        return None
    return build_engine(settings.ocr_fallback_provider, settings)
