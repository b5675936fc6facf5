"""Invoice extraction through a self-hosted Ollama server.

The model answers /api/generate in JSON mode with the same payload shape as
the OpenAI tool call. Vision models (e.g. qwen2.5vl) also read invoice
images; PDFs are rejected so the router falls back to OCR text.

See: https://ollama.ai/
"""

import base64
import json
import logging
from pathlib import Path

import httpx

from docengine.extraction.base import (
    IMAGE_TYPES,
    ExtractionProvider,
    ExtractionResult,
    guess_media_type,
)
from docengine.extraction.payload import document_from_payload, parse_json_response
from docengine.extraction.prompt import build_json_prompt
from docengine.shared.config import Settings
from docengine.shared.errors import InvalidPayloadError, ProviderError

logger = logging.getLogger(__name__)


class OllamaExtractionProvider(ExtractionProvider):
    """Extraction provider backed by an Ollama server (ollama_base_url).

    Each call names its model; the configured ollama_model is the default
    when ai_models is empty.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = httpx.AsyncClient(timeout=settings.ai_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def supports_files(self) -> bool:
        return True

    @property
    def default_models(self) -> list[str]:
        return [self._model] if self._model else []

    def is_available(self) -> bool:
        """Check that a server URL and model are configured.

        Use health_check() to query the server itself.
        """
        return bool(self._base_url and self._model)

    async def health_check(self) -> bool:
        """Query /api/tags for the configured model (tag suffix ignored)."""
        try:
            response = await self._client.get(f"{self._base_url}/api/tags")
        except httpx.HTTPError:
            return False
        if response.status_code != 200:
            return False
        names = {m.get("name", "").split(":")[0] for m in response.json().get("models", [])}
        return self._model.split(":")[0] in names

    async def aclose(self) -> None:
        await self._client.aclose()

    async def extract_from_text(self, ocr_text: str, model: str) -> ExtractionResult:
        """Extract a structured document from OCR text using Ollama.

        Args:
            ocr_text: Raw text from OCR engine
            model: Ollama model tag

        Returns:
            ExtractionResult with document or error
        """
        if not ocr_text or not ocr_text.strip():
            return self._failure("Empty OCR text provided", model)
        return await self._extract(build_json_prompt(ocr_text), model, images=None)

    async def extract_from_file(self, file_path: Path, model: str) -> ExtractionResult:
        """Extract a structured document from an invoice image.

        Args:
            file_path: Image file (PDFs are rejected)
            model: Ollama vision model tag

        Returns:
            ExtractionResult with document or error
        """
        media_type = guess_media_type(file_path)
        if media_type not in IMAGE_TYPES:
            return self._failure(f"Unsupported file type for Ollama: {media_type}", model)
        try:
            image = base64.b64encode(file_path.read_bytes()).decode("ascii")
        except OSError as e:
            return self._failure(f"Cannot read file: {e}", model)
        return await self._extract(build_json_prompt(), model, images=[image])

    async def _extract(self, prompt: str, model: str, images: list[str] | None) -> ExtractionResult:
        try:
            response_text = await self._call_with_retry(prompt, model, images)
            document = document_from_payload(parse_json_response(response_text))
        except InvalidPayloadError as e:
            logger.warning(f"Failed to parse JSON from Ollama response: {e}")
            return self._failure(f"JSON parsing failed: {e}", model)
        except (ProviderError, TimeoutError) as e:
            logger.error(f"Ollama extraction failed: {e}")
            return self._failure(f"Extraction failed: {e}", model)

        return ExtractionResult(
            document=document,
            success=True,
            provider=self.provider_name,
            model=model,
        )

    async def _call_with_retry(self, prompt: str, model: str, images: list[str] | None) -> str:
        """Call Ollama API with retry logic for transient errors.

        Returns:
            Raw response text from Ollama

        Raises:
            ProviderError: After all retry attempts exhausted
        """
        async for attempt in self._retrying():
            with attempt:
                return await self._call(prompt, model, images)
        raise ProviderError("Ollama retry loop ended without a result")

    async def _call(self, prompt: str, model: str, images: list[str] | None) -> str:
        body: dict[str, object] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": {
                "temperature": 0,  # Deterministic output
                "num_predict": 2048,  # Max tokens
            },
        }
        if images:
            body["images"] = images

        try:
            response = await self._client.post(f"{self._base_url}/api/generate", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama request failed: {e}") from e

        try:
            result: str = response.json().get("response", "")
        except json.JSONDecodeError as e:
            raise InvalidPayloadError(f"Ollama returned non-JSON body: {e}") from e
        return result
