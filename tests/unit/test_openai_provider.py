"""Unit tests for OpenAIExtractionProvider with a mocked API client."""

import json
from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from docengine.extraction.openai_provider import OpenAIExtractionProvider
from docengine.shared.config import Settings

PAYLOAD = {
    "header": {"supplier_name": "ACME Lda", "tax_id": "502345678", "grand_total": "12,30"},
    "line_items": [
        {"raw_description": "Azeite garrafa 1L", "quantity": 2, "unit_price": 5, "line_total": 10}
    ],
}


def completion(arguments: str | None) -> MagicMock:
    message = MagicMock()
    if arguments is None:
        message.tool_calls = []
    else:
        call = MagicMock()
        call.function.arguments = arguments
        message.tool_calls = [call]
    response = MagicMock()
    response.choices = [MagicMock(message=message)]
    return response


@pytest.fixture
def provider(fast_settings: Settings) -> OpenAIExtractionProvider:
    return OpenAIExtractionProvider(fast_settings)


@pytest.fixture
def api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")


@pytest.fixture
def create() -> AsyncMock:
    return AsyncMock(return_value=completion(json.dumps(PAYLOAD)))


@pytest.fixture
def client(create: AsyncMock) -> Iterator[MagicMock]:
    with patch("docengine.extraction.openai_provider.AsyncOpenAI") as client_class:
        client_class.return_value.chat.completions.create = create
        yield client_class


def test_properties(provider: OpenAIExtractionProvider) -> None:
    assert provider.provider_name == "openai"
    assert provider.supports_files
    assert provider.default_models == ["gpt-4o", "gpt-4o-mini"]


def test_unavailable_without_key(
    provider: OpenAIExtractionProvider, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert provider.is_available() is False


@pytest.mark.asyncio
async def test_missing_key_fails_without_calling_api(
    provider: OpenAIExtractionProvider, monkeypatch: pytest.MonkeyPatch, client: MagicMock
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    result = await provider.extract_from_text("Fatura", "gpt-4o")

    assert result.success is False
    assert "OPENAI_API_KEY" in str(result.error)
    client.assert_not_called()


@pytest.mark.usefixtures("api_key")
class TestTextExtraction:
    @pytest.mark.asyncio
    async def test_tool_call_arguments_become_a_document(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        result = await provider.extract_from_text("FATURA ACME", "gpt-4o")

        assert result.success is True
        assert result.provider == "openai"
        assert result.model == "gpt-4o"
        assert result.document is not None
        assert result.document.header.grand_total == Decimal("12.3")
        assert result.document.line_items[0].package_info is not None
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["temperature"] == 0
        assert "FATURA ACME" in kwargs["messages"][1]["content"][0]["text"]
        assert client.call_args.kwargs["max_retries"] == 0

    @pytest.mark.asyncio
    async def test_missing_tool_call_is_a_failure(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        create.return_value = completion(None)

        result = await provider.extract_from_text("FATURA", "gpt-4o")

        assert result.success is False
        assert "Invalid payload" in str(result.error)
        assert create.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_choices_is_a_failure(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        response = MagicMock()
        response.choices = []
        create.return_value = response

        result = await provider.extract_from_text("FATURA", "gpt-4o")

        assert result.success is False
        assert "No choices" in str(result.error)
        assert create.await_count == 1

    @pytest.mark.asyncio
    async def test_malformed_arguments(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        create.return_value = completion("{not json")

        result = await provider.extract_from_text("FATURA", "gpt-4o")

        assert result.success is False
        assert "JSON parsing failed" in str(result.error)

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        create.side_effect = [
            openai.APIConnectionError(request=request),
            completion(json.dumps(PAYLOAD)),
        ]

        result = await provider.extract_from_text("FATURA", "gpt-4o")

        assert result.success is True
        assert create.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(
        self, provider: OpenAIExtractionProvider, client: MagicMock, create: AsyncMock
    ) -> None:
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        create.side_effect = openai.APITimeoutError(request=request)

        result = await provider.extract_from_text("FATURA", "gpt-4o")

        assert result.success is False
        assert "Extraction failed" in str(result.error)
        assert create.await_count == 2


@pytest.mark.usefixtures("api_key")
class TestFileExtraction:
    @pytest.mark.asyncio
    async def test_pdf_sent_as_file_part(
        self,
        provider: OpenAIExtractionProvider,
        client: MagicMock,
        create: AsyncMock,
        tmp_path: Path,
    ) -> None:
        pdf = tmp_path / "fatura.pdf"
        pdf.write_bytes(b"%PDF-1.4")

        result = await provider.extract_from_file(pdf, "gpt-4o")

        assert result.success is True
        attachment = create.await_args.kwargs["messages"][1]["content"][1]
        assert attachment["type"] == "file"
        assert attachment["file"]["filename"] == "fatura.pdf"
        assert attachment["file"]["file_data"].startswith("data:application/pdf;base64,")

    @pytest.mark.asyncio
    async def test_image_sent_as_data_url(
        self,
        provider: OpenAIExtractionProvider,
        client: MagicMock,
        create: AsyncMock,
        tmp_path: Path,
    ) -> None:
        image = tmp_path / "fatura.jpg"
        image.write_bytes(b"\xff\xd8\xff")

        await provider.extract_from_file(image, "gpt-4o")

        attachment = create.await_args.kwargs["messages"][1]["content"][1]
        assert attachment["image_url"]["url"].startswith("data:image/jpeg;base64,")

    @pytest.mark.asyncio
    async def test_unsupported_type(
        self, provider: OpenAIExtractionProvider, client: MagicMock, tmp_path: Path
    ) -> None:
        sheet = tmp_path / "fatura.xlsx"
        sheet.write_bytes(b"PK")

        result = await provider.extract_from_file(sheet, "gpt-4o")

        assert result.success is False
        assert "Unsupported file type" in str(result.error)
