"""Unit tests for supplier identification and template lookup."""

import pytest

from docengine.templates.matcher import (
    SupplierMatcher,
    extract_supplier_name,
    extract_tax_id,
    normalize_name,
)
from docengine.templates.models import Template
from docengine.templates.store import InMemoryTemplateStore

PADDING = "\n" + "linha de texto\n" * 30


@pytest.fixture
def store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore()


@pytest.fixture
def matcher(store: InMemoryTemplateStore) -> SupplierMatcher:
    return SupplierMatcher(store)


class TestExtractTaxId:
    """Labelled tax ids in the top of the document."""

    @pytest.mark.parametrize(
        "line",
        [
            "NIF: 502345678",
            "N.I.F. 502 345 678",
            "NIPC 502345678",
            "Contribuinte N.º 502345678",
            "Número de Identificação Fiscal: 502345678",
            "VAT PT502345678",
        ],
    )
    def test_labelled_formats(self, line: str) -> None:
        assert extract_tax_id("ACME LDA\n" + line + PADDING) == "502345678"

    def test_unlabelled_number_is_ignored(self) -> None:
        assert extract_tax_id("ACME LDA\nTel 502345678" + PADDING) is None

    def test_number_beyond_top_section_is_ignored(self) -> None:
        assert extract_tax_id("ACME LDA" + PADDING + "NIF: 502345678") is None

    def test_invalid_leading_zero_is_rejected(self) -> None:
        assert extract_tax_id("NIF: 012345678" + PADDING) is None

    def test_first_labelled_id_wins(self, invoice_text: str) -> None:
        assert extract_tax_id(invoice_text) == "502345678"


class TestExtractSupplierName:
    def test_first_plausible_line(self, invoice_text: str) -> None:
        assert extract_supplier_name(invoice_text) == "DISTRIBUIDORA ALIMENTAR DO NORTE LDA"

    def test_document_type_lines_are_skipped(self) -> None:
        text = "FATURA FT 2024/1\nORIGINAL\n12345\nPadaria Central Lda\nNIF: 502345678"
        assert extract_supplier_name(text) == "Padaria Central Lda"

    def test_no_candidate(self) -> None:
        assert extract_supplier_name("12\n--\n") is None


def test_normalize_name() -> None:
    assert normalize_name("Armazém Lisboa, Lda.") == "armazem lisboa lda"
    assert normalize_name("  PÃO & CIA  ") == "pao cia"


class TestSupplierMatcher:
    """Lookups against the store."""

    def test_unknown_supplier_has_no_templates(self, matcher: SupplierMatcher) -> None:
        assert matcher.find_templates("502345678", "ACME") == []

    def test_templates_sorted_by_confidence(
        self, matcher: SupplierMatcher, store: InMemoryTemplateStore
    ) -> None:
        supplier = matcher.find_or_create_supplier("502345678", "ACME Lda")
        assert supplier is not None
        for score in (40, 90, 60):
            store.create_template(
                Template(supplier_id=supplier.id, name=f"t{score}", confidence_score=score)
            )

        templates = matcher.find_templates("502345678", None)

        assert [t.confidence_score for t in templates] == [90, 60, 40]

    def test_lookup_by_normalized_name(self, matcher: SupplierMatcher) -> None:
        created = matcher.find_or_create_supplier(None, "Armazém Lisboa, Lda.")
        assert created is not None

        found = matcher.find_supplier(None, "ARMAZEM LISBOA LDA")

        assert found is not None
        assert found.id == created.id

    def test_tax_id_alone_does_not_create(self, matcher: SupplierMatcher) -> None:
        assert matcher.find_or_create_supplier("502345678", None) is None
        assert matcher.find_or_create_supplier("502345678", "   ") is None
