"""Error taxonomy for the document engine.

Provider failures are recoverable: the next strategy in a fallback chain
takes over. Validation rejections never surface as exceptions. Only the
exhaustion of a whole chain is terminal.
"""

from typing import Literal


class DocumentEngineError(Exception):
    """Base class for all engine errors."""


class ProviderError(DocumentEngineError):
    """Transient failure of an OCR or AI provider call."""


class InvalidPayloadError(DocumentEngineError):
    """AI provider returned a payload that does not describe a document."""


class ExtractionExhaustedError(DocumentEngineError):
    """Every strategy of a stage failed; there is no further fallback.

    Attributes:
        stage: Stage that ran out of options ('ocr' or 'ai')
        failures: Human-readable reason for each failed attempt
    """

    retryable = False

    def __init__(
        self,
        stage: Literal["ocr", "ai"],
        message: str,
        failures: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.failures = failures or []


class OCRExhaustedError(ExtractionExhaustedError):
    """No usable text after the primary and local OCR engines."""

    def __init__(self, message: str, failures: list[str] | None = None) -> None:
        super().__init__("ocr", message, failures)


class AIExhaustedError(ExtractionExhaustedError):
    """All AI model attempts across all available text sources failed."""

    def __init__(self, message: str, failures: list[str] | None = None) -> None:
        super().__init__("ai", message, failures)
