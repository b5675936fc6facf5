"""Integration tests for AI extraction and template learning.

These tests require:
- OPENAI_API_KEY environment variable set
- Internet connection to OpenAI API

Tests are skipped if OPENAI_API_KEY is not available.
Use pytest -v -m integration to run only integration tests.
"""

import os
import time
from decimal import Decimal

import pytest

from docengine.extraction.openai_provider import OpenAIExtractionProvider
from docengine.router.service import DocumentRouter
from docengine.shared.config import Settings
from docengine.templates.store import InMemoryTemplateStore

# Skip all tests in this module if no API key available
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not os.getenv("OPENAI_API_KEY"),
        reason="OPENAI_API_KEY not set - skipping integration tests",
    ),
]

INVOICE_TEXT = """PADARIA CENTRAL DE BRAGA LDA
NIF: 509876543
Avenida da Liberdade 45
4710-251 BRAGA
FATURA FT A/2024/88
Data: 02/04/2024
Descrição Qtd UN Preço Total
Farinha tipo 65 saco 25kg 4 UN 18,50 74,00
Fermento fresco 500g 10 UN 1,20 12,00
SUBTOTAL: 86,00
IVA 6%: 5,16
TOTAL: 91,16"""


@pytest.fixture
def settings() -> Settings:
    """Create settings for integration tests."""
    return Settings(ai_models=["gpt-4o-mini"], fallback_delay_seconds=0)


@pytest.fixture
def provider(settings: Settings) -> OpenAIExtractionProvider:
    return OpenAIExtractionProvider(settings)


@pytest.mark.asyncio
async def test_extract_invoice_from_real_text(provider: OpenAIExtractionProvider) -> None:
    """Test extraction with realistic Portuguese invoice text."""
    result = await provider.extract_from_text(INVOICE_TEXT, "gpt-4o-mini")

    assert result.success is True
    assert result.error is None
    assert result.document is not None

    header = result.document.header
    assert header.tax_id == "509876543"
    assert header.grand_total == Decimal("91.16")
    assert len(result.document.line_items) == 2


@pytest.mark.asyncio
async def test_extract_with_empty_text(provider: OpenAIExtractionProvider) -> None:
    """Empty text fails before any API call."""
    result = await provider.extract_from_text("", "gpt-4o-mini")

    assert result.success is False
    assert "empty" in str(result.error).lower()
    assert result.document is None


@pytest.mark.asyncio
async def test_second_document_uses_learned_template(settings: Settings) -> None:
    """The first invoice teaches a template that parses the second one."""
    router = DocumentRouter(settings, InMemoryTemplateStore(), OpenAIExtractionProvider(settings))

    first = await router.route(text=INVOICE_TEXT)
    if not first.validation.valid:
        pytest.skip(f"Model output failed validation: {first.validation.errors}")
    second = await router.route(text=INVOICE_TEXT)

    assert first.method_used == "ai"
    assert second.method_used == "template"
    assert second.document.header.grand_total == Decimal("91.16")


@pytest.mark.slow
@pytest.mark.asyncio
async def test_extract_invoice_performance(provider: OpenAIExtractionProvider) -> None:
    """Test that extraction completes in reasonable time."""
    start_time = time.time()
    result = await provider.extract_from_text(INVOICE_TEXT, "gpt-4o-mini")
    duration = time.time() - start_time

    assert duration < 30.0
    assert result.success is True
