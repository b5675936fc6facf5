"""OpenAI-based extraction provider for invoice documents.

Uses the OpenAI API with tool calling for structured outputs. Images are
sent as data URLs and PDFs as inline file parts, so the same provider serves
both text and multimodal extraction.

Includes retry logic with exponential backoff for transient API errors.
"""

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any

import openai
from openai import AsyncOpenAI

from docengine.extraction.base import (
    IMAGE_TYPES,
    PDF_TYPE,
    ExtractionProvider,
    ExtractionResult,
    guess_media_type,
)
from docengine.extraction.payload import document_from_payload
from docengine.extraction.prompt import (
    EXTRACTION_FUNCTION,
    SYSTEM_PROMPT,
    build_file_prompt,
    build_text_prompt,
)
from docengine.shared.config import Settings
from docengine.shared.errors import InvalidPayloadError, ProviderError

logger = logging.getLogger(__name__)

# Errors worth another attempt on the same model
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIExtractionProvider(ExtractionProvider):
    """OpenAI-based extraction provider.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def supports_files(self) -> bool:
        return True

    @property
    def default_models(self) -> list[str]:
        return ["gpt-4o", "gpt-4o-mini"]

    def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    async def extract_from_text(self, ocr_text: str, model: str) -> ExtractionResult:
        """Extract a structured document from OCR text using OpenAI.

        Args:
            ocr_text: Raw text from OCR engine
            model: OpenAI model name

        Returns:
            ExtractionResult with document or error, provider='openai'
        """
        if not ocr_text or not ocr_text.strip():
            return self._failure("Empty OCR text provided", model)
        content = [{"type": "text", "text": build_text_prompt(ocr_text)}]
        return await self._extract(content, model)

    async def extract_from_file(self, file_path: Path, model: str) -> ExtractionResult:
        """Extract a structured document from an image or PDF using OpenAI.

        Args:
            file_path: Image or PDF to send inline
            model: OpenAI model name

        Returns:
            ExtractionResult with document or error, provider='openai'
        """
        media_type = guess_media_type(file_path)
        if media_type not in IMAGE_TYPES and media_type != PDF_TYPE:
            return self._failure(f"Unsupported file type: {media_type}", model)

        try:
            data = base64.b64encode(file_path.read_bytes()).decode("ascii")
        except OSError as e:
            return self._failure(f"Cannot read file: {e}", model)

        data_url = f"data:{media_type};base64,{data}"
        attachment: dict[str, Any]
        if media_type == PDF_TYPE:
            attachment = {
                "type": "file",
                "file": {"filename": file_path.name, "file_data": data_url},
            }
        else:
            attachment = {"type": "image_url", "image_url": {"url": data_url}}

        content = [{"type": "text", "text": build_file_prompt()}, attachment]
        return await self._extract(content, model)

    async def _extract(self, content: list[dict[str, Any]], model: str) -> ExtractionResult:
        # Check for API key at runtime
        if not self.is_available():
            return self._failure("OPENAI_API_KEY environment variable not set", model)

        try:
            arguments = await self._call_with_retry(content, model)
            document = document_from_payload(json.loads(arguments))
        except json.JSONDecodeError as e:
            logger.warning(f"OpenAI returned malformed tool arguments ({model}): {e}")
            return self._failure(f"JSON parsing failed: {e}", model)
        except InvalidPayloadError as e:
            logger.warning(f"OpenAI payload rejected ({model}): {e}")
            return self._failure(f"Invalid payload: {e}", model)
        except (ProviderError, TimeoutError, openai.OpenAIError) as e:
            logger.error(f"OpenAI extraction failed ({model}): {e}")
            return self._failure(f"Extraction failed: {e}", model)

        return ExtractionResult(
            document=document,
            success=True,
            provider=self.provider_name,
            model=model,
        )

    async def _call_with_retry(self, content: list[dict[str, Any]], model: str) -> str:
        """Call OpenAI with bounded retries for transient errors.

        Returns:
            Raw JSON arguments of the extraction tool call

        Raises:
            ProviderError: After all retry attempts are exhausted
            InvalidPayloadError: If the model did not call the extraction tool
        """
        async for attempt in self._retrying():
            with attempt:
                return await self._call(content, model)
        raise ProviderError("OpenAI retry loop ended without a result")

    async def _call(self, content: list[dict[str, Any]], model: str) -> str:
        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            # SDK retries are disabled; tenacity owns the retry budget
            self._client = AsyncOpenAI(
                api_key=api_key,
                timeout=self.settings.ai_timeout_seconds,
                max_retries=0,
            )

        try:
            response = await self._client.chat.completions.create(  # type: ignore[call-overload]
                model=model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": content},
                ],
                tools=[{"type": "function", "function": EXTRACTION_FUNCTION}],
                tool_choice={"type": "function", "function": {"name": EXTRACTION_FUNCTION["name"]}},
                temperature=0,  # Deterministic output
            )
        except TRANSIENT_ERRORS as e:
            logger.warning(f"Transient OpenAI error ({model}): {e}")
            raise ProviderError(str(e)) from e

        if not response.choices:
            raise InvalidPayloadError("No choices in API response")
        message = response.choices[0].message
        if not message.tool_calls:
            raise InvalidPayloadError("No tool call in API response")
        arguments: str = message.tool_calls[0].function.arguments
        return arguments
