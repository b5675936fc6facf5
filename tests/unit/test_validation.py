"""Unit tests for the validation engine."""

from collections.abc import Callable
from decimal import Decimal

import pytest

from docengine.extraction.schema import LineItem, ParsedDocument
from docengine.shared.config import Settings
from docengine.templates.parser import parse_row_heuristic
from docengine.validation.service import ValidationEngine


@pytest.fixture
def engine() -> ValidationEngine:
    return ValidationEngine(Settings())


def line(**values: object) -> LineItem:
    defaults: dict[str, object] = {
        "line_no": 1,
        "raw_description": "Arroz Agulha",
        "quantity": "10",
        "unit_price": "2.50",
        "line_total": "25.00",
    }
    defaults.update(values)
    return LineItem.model_validate(defaults)


def document(
    subtotal: str | None, tax: str | None, total: str | None, *items: LineItem
) -> ParsedDocument:
    return ParsedDocument.model_validate(
        {
            "header": {"subtotal": subtotal, "tax_amount": tax, "grand_total": total},
            "line_items": [item.model_dump() for item in items],
        }
    )


class TestLineValidation:
    """Per-line checks."""

    def test_valid_line(self, engine: ValidationEngine) -> None:
        result = engine.validate_line(line(), 1)
        assert result.valid
        assert result.warnings == []

    def test_undeclared_discount_is_a_warning(self, engine: ValidationEngine) -> None:
        item = parse_row_heuristic("Arroz 10 2.50 23.00", 1)
        assert item is not None

        result = engine.validate_line(item, 1)

        assert result.valid
        assert result.errors == []
        assert "undeclared discount" in result.warnings[0]

    def test_large_mismatch_is_an_error(self, engine: ValidationEngine) -> None:
        item = parse_row_heuristic("Arroz 10 2.50 10.00", 1)
        assert item is not None

        result = engine.validate_line(item, 1)

        assert not result.valid
        assert "Total mismatch" in result.errors[0]

    def test_declared_discount_checks_final_price(self, engine: ValidationEngine) -> None:
        item = line(
            unit_price="9.00",
            unit_price_original="10.00",
            discount_pct="10",
            line_total="85.00",
        )
        assert engine.validate_line(item, 1).valid

        wrong = item.model_copy(update={"unit_price_original": Decimal("20.00")})
        result = engine.validate_line(wrong, 1)
        assert result.valid
        assert "Discount calculation mismatch" in result.warnings[0]

    @pytest.mark.parametrize(
        ("values", "message"),
        [
            ({"raw_description": "ab"}, "Description too short"),
            ({"raw_description": "912345678"}, "phone number"),
            ({"raw_description": "tel"}, "suspicious text"),
            ({"unit_price": None}, "Missing unit price"),
            ({"unit_price": "0"}, "Invalid unit price"),
            ({"quantity": None}, "Missing quantity"),
            ({"quantity": "-1"}, "Invalid quantity"),
        ],
    )
    def test_line_errors(
        self, engine: ValidationEngine, values: dict[str, object], message: str
    ) -> None:
        result = engine.validate_line(line(**values), 1)
        assert not result.valid
        assert any(message in error for error in result.errors)

    def test_very_high_values_are_warnings(self, engine: ValidationEngine) -> None:
        result = engine.validate_line(
            line(quantity="20000", unit_price="150000", line_total=None), 1
        )
        assert result.valid
        assert len(result.warnings) == 2


class TestDocumentValidation:
    """Arithmetic and business rules across the document."""

    def test_consistent_document(
        self, engine: ValidationEngine, invoice_document: ParsedDocument
    ) -> None:
        result = engine.validate(invoice_document)
        assert result.valid
        assert result.warnings == []

    def test_subtotal_plus_tax_must_match_total(self, engine: ValidationEngine) -> None:
        item = line(quantity="1", unit_price="100", line_total="100")
        doc = document("100.00", "23.00", "122.00", item)

        result = engine.validate_document(doc)

        assert not result.valid
        assert any("grand total is 122.00" in error for error in result.errors)

    def test_no_line_items(self, engine: ValidationEngine) -> None:
        result = engine.validate_document(document("10", "2.30", "12.30"))
        assert result.errors == ["Document has no line items"]

    def test_line_sum_tolerance(self, engine: ValidationEngine) -> None:
        soft = document("26.00", None, "26.00", line())
        result = engine.validate_document(soft)
        assert result.valid
        assert "Small discrepancy" in result.warnings[0]

        hard = document("30.00", None, "30.00", line())
        assert not engine.validate_document(hard).valid

    def test_total_below_largest_line(self, engine: ValidationEngine) -> None:
        result = engine.validate_document(document(None, None, "20.00", line()))
        assert any("less than largest line" in error for error in result.errors)

    def test_missing_total_is_a_warning(self, engine: ValidationEngine) -> None:
        result = engine.validate_document(document(None, None, None, line()))
        assert result.valid
        assert result.warnings == ["Grand total not extracted"]

    def test_unusual_tax_rate(self, engine: ValidationEngine) -> None:
        result = engine.validate_document(document("25.00", "4.00", "29.00", line()))
        assert result.valid
        assert "Unusual IVA rate" in result.warnings[0]

    def test_validation_is_idempotent(
        self, engine: ValidationEngine, document_factory: Callable[..., ParsedDocument]
    ) -> None:
        doc = document_factory(grand_total="31.75")
        assert engine.validate(doc) == engine.validate(doc)


class TestModes:
    def test_extraction_check_only_needs_line_items(self, engine: ValidationEngine) -> None:
        single = document(None, None, None, line(raw_description="x"))
        assert engine.validate_extraction(single).valid
        assert not engine.validate_extraction(document(None, None, None)).valid

    def test_lenient_mode(self) -> None:
        engine = ValidationEngine(Settings(validation_mode="lenient"))
        doc = document("100.00", "23.00", "122.00", line(line_total="1.00"))
        assert engine.validate(doc).valid
