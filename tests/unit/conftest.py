"""Shared fixtures: a small Portuguese supplier invoice and its extraction."""

from collections.abc import Callable

import pytest

from docengine.extraction.schema import ParsedDocument
from docengine.shared.config import Settings

INVOICE_TEXT = """DISTRIBUIDORA ALIMENTAR DO NORTE LDA
NIF: 502345678
Rua das Flores 12
4000-123 PORTO
FATURA FT 2024/123
Data: 15/03/2024
Cliente: Restaurante Sol
NIF cliente: 245678901
Descrição Quantidade UN Preço Valor
Arroz Agulha 10 UN 1,50 15,00
Azeite Virgem 2 UN 5,00 10,00
SUBTOTAL: 25,00
IVA 23%: 5,75
TOTAL: 30,75
Processado por programa certificado n.º 1234/AT"""


def make_document(**header_updates: object) -> ParsedDocument:
    """Extraction of INVOICE_TEXT as an AI provider would return it."""
    header: dict[str, object] = {
        "supplier_name": "DISTRIBUIDORA ALIMENTAR DO NORTE LDA",
        "tax_id": "502345678",
        "doc_number": "FT 2024/123",
        "doc_date": "2024-03-15",
        "subtotal": "25.00",
        "tax_amount": "5.75",
        "grand_total": "30.75",
    }
    header.update(header_updates)
    return ParsedDocument.model_validate(
        {
            "header": header,
            "line_items": [
                {
                    "line_no": 1,
                    "raw_description": "Arroz Agulha",
                    "quantity": "10",
                    "unit": "UN",
                    "unit_price": "1.50",
                    "line_total": "15.00",
                },
                {
                    "line_no": 2,
                    "raw_description": "Azeite Virgem",
                    "quantity": "2",
                    "unit": "UN",
                    "unit_price": "5.00",
                    "line_total": "10.00",
                },
            ],
        }
    )


@pytest.fixture
def invoice_text() -> str:
    return INVOICE_TEXT


@pytest.fixture
def invoice_document() -> ParsedDocument:
    return make_document()


@pytest.fixture
def document_factory() -> Callable[..., ParsedDocument]:
    """make_document with header overrides."""
    return make_document


@pytest.fixture
def fast_settings() -> Settings:
    """Settings without real delays between retries or fallbacks."""
    return Settings(
        ai_models=["model-a", "model-b"],
        ai_attempts_per_model=2,
        ai_timeout_seconds=5,
        retry_backoff_initial=0,
        retry_backoff_max=0,
        fallback_delay_seconds=0,
        ocr_timeout_seconds=5,
    )
