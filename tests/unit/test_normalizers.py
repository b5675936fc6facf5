"""Unit tests for number/date normalization and AI payload decoding."""

from datetime import date
from decimal import Decimal

import pytest

from docengine.extraction.normalizers import digits_only, parse_date, parse_number
from docengine.extraction.payload import document_from_payload, parse_json_response
from docengine.shared.errors import InvalidPayloadError


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("1.234,56", Decimal("1234.56")),
        ("2,50", Decimal("2.50")),
        ("2.50", Decimal("2.50")),
        ("1,234.56", Decimal("1234.56")),
        ("€ 12,00", Decimal("12.00")),
        ("30,75 EUR", Decimal("30.75")),
    ],
)
def test_parse_number(raw: str, expected: Decimal) -> None:
    assert parse_number(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "abc", "€"])
def test_parse_number_rejects_non_numbers(raw: str | None) -> None:
    assert parse_number(raw) is None


def test_parse_date_formats() -> None:
    assert parse_date("15/03/2024") == date(2024, 3, 15)
    assert parse_date("15-03-2024") == date(2024, 3, 15)
    assert parse_date("2024-03-15") == date(2024, 3, 15)
    assert parse_date("2024-03-15T10:00:00") == date(2024, 3, 15)
    assert parse_date("31/02/2024") is None
    assert parse_date("") is None


def test_digits_only() -> None:
    assert digits_only("PT 501 234 567") == "501234567"
    assert digits_only("abc") is None


class TestParseJsonResponse:
    """LLM responses come wrapped in prose and code fences."""

    def test_plain_json(self) -> None:
        assert parse_json_response('{"header": {}}') == {"header": {}}

    def test_markdown_code_block(self) -> None:
        response = 'Here it is:\n```json\n{"line_items": []}\n```'
        assert parse_json_response(response) == {"line_items": []}

    def test_json_embedded_in_text(self) -> None:
        response = 'Result: {"header": {"tax_id": "502345678"}} done'
        assert parse_json_response(response)["header"]["tax_id"] == "502345678"

    def test_no_json_raises(self) -> None:
        with pytest.raises(InvalidPayloadError):
            parse_json_response("I could not read the invoice")


class TestDocumentFromPayload:
    """Payload decoding into ParsedDocument."""

    def test_portuguese_amounts_and_dates(self) -> None:
        document = document_from_payload(
            {
                "header": {
                    "tax_id": 502345678,
                    "doc_date": "15/03/2024",
                    "grand_total": "1.230,00",
                },
                "line_items": [
                    {"raw_description": " Arroz cx 4kg ", "quantity": "2", "unit_price": "5,00"}
                ],
            }
        )

        assert document.header.tax_id == "502345678"
        assert document.header.doc_date == date(2024, 3, 15)
        assert document.header.grand_total == Decimal("1230.00")
        item = document.line_items[0]
        assert item.line_no == 1
        assert item.raw_description == "Arroz cx 4kg"
        assert item.unit_price == Decimal("5.00")
        assert item.package_info is not None

    def test_missing_line_items_is_empty_document(self) -> None:
        document = document_from_payload({"header": {"supplier_name": "ACME"}})
        assert document.line_items == []

    @pytest.mark.parametrize(
        "payload",
        [
            [],
            {"header": "ACME"},
            {"line_items": {"a": 1}},
            {"line_items": ["row"]},
            {"line_items": [{"raw_description": "Arroz", "unit_price": "cinco"}]},
        ],
    )
    def test_malformed_payload_raises(self, payload: object) -> None:
        with pytest.raises(InvalidPayloadError):
            document_from_payload(payload)
