"""Abstract base class for AI extraction providers.

Enables switching between different extraction providers (OpenAI, Ollama)
while maintaining a consistent interface and type safety.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Providers never raise to their caller: every failure (missing key, timeout
after retries, invalid payload) comes back as ExtractionResult(success=False).
Transient errors are retried inside the provider with tenacity.
"""

import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from docengine.extraction.schema import ParsedDocument
from docengine.shared.config import Settings
from docengine.shared.errors import ProviderError

IMAGE_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif"}
PDF_TYPE = "application/pdf"


class ExtractionResult(BaseModel):
    """Result of extraction operation.

    Attributes:
        document: Extracted document or None if extraction failed
        success: Whether operation succeeded
        error: Error message if operation failed
        provider: Name of provider that performed extraction (e.g., 'openai')
        model: Model that produced the document
    """

    document: ParsedDocument | None
    success: bool
    error: str | None = None
    provider: str
    model: str | None = None


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    All extraction services must implement this interface to ensure
    consistent behavior. Example implementations:
    - OpenAIExtractionProvider: Uses OpenAI API (cloud-based)
    - OllamaExtractionProvider: Uses a self-hosted Ollama server
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def extract_from_text(self, ocr_text: str, model: str) -> ExtractionResult:
        """Extract a structured document from OCR text.

        Args:
            ocr_text: Raw text from OCR engine
            model: Model name to use

        Returns:
            ExtractionResult with structured document or error
        """
        pass

    @abstractmethod
    async def extract_from_file(self, file_path: Path, model: str) -> ExtractionResult:
        """Extract a structured document directly from an image or PDF.

        Args:
            file_path: Path to the source file
            model: Model name to use

        Returns:
            ExtractionResult with structured document or error
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'openai', 'ollama')
        """
        pass

    @property
    def supports_files(self) -> bool:
        """Whether extract_from_file can work without OCR text."""
        return False

    @property
    def default_models(self) -> list[str]:
        """Models tried in order when settings.ai_models is empty."""
        return []

    def models(self) -> list[str]:
        """Ordered model list for the retry policy."""
        return list(self.settings.ai_models) or self.default_models

    def _retrying(self) -> AsyncRetrying:
        """Bounded retry policy for transient provider errors."""
        return AsyncRetrying(
            retry=retry_if_exception_type((ProviderError, TimeoutError)),
            wait=wait_exponential_jitter(
                initial=self.settings.retry_backoff_initial,
                max=self.settings.retry_backoff_max,
                jitter=self.settings.retry_backoff_initial,
            ),
            stop=stop_after_attempt(self.settings.ai_attempts_per_model),
            reraise=True,
        )

    def _failure(self, error: str, model: str | None) -> ExtractionResult:
        return ExtractionResult(
            document=None,
            success=False,
            error=error,
            provider=self.provider_name,
            model=model,
        )


def guess_media_type(file_path: Path) -> str | None:
    """Guess a file's media type from its extension."""
    media_type, _ = mimetypes.guess_type(file_path.name)
    return media_type
