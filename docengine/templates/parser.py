"""Template-driven parser for invoice text.

Header fields are read through a declarative grammar: each HeaderRule names
the document field, the HeaderConfig pattern that finds it and the
post-processor that converts the captured text. The value is the last
non-empty capture group, so a pattern like ``(NIF|NIPC)[:\\s]+(\\d{9})`` can
carry label alternatives in its earlier groups.

Table rows are read with the template's strict row_pattern first and a
positional heuristic second.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from docengine.extraction.normalizers import digits_only, parse_date, parse_number
from docengine.extraction.packaging import enrich_document
from docengine.extraction.schema import DocumentHeader, LineItem, ParsedDocument
from docengine.templates.models import TableConfig, Template

logger = logging.getLogger(__name__)

MAX_PRICE = Decimal("99999.99")
MAX_QUANTITY = Decimal("9999")
BARCODE_DIGITS = 10
MIN_DESCRIPTION = 3

NUMBER_TOKEN = re.compile(r"^\d+(?:[.,]\d+)*$")
FIRST_DIGIT_RUN = re.compile(r"\d")
UNIT_TOKENS = {"KG", "G", "GR", "L", "LT", "ML", "CL", "UN", "UND", "UDS", "CX", "PC", "PCT", "M"}
TOTALS_KEYWORDS = re.compile(
    r"^(?:SUB-?\s?TOTAL|TOTAL|IVA|TAXA|RESUMO|BASE\s+(?:TRIBUT|INCID)"
    r"|DESCONTO|PORTES|ARREDONDAMENTO)",
    re.IGNORECASE,
)
PATTERN_FLAGS = re.IGNORECASE | re.MULTILINE


def _tax_id(value: str) -> str | None:
    digits = digits_only(value)
    return digits if digits and len(digits) == 9 else None


def _text(value: str) -> str | None:
    return value.strip() or None


def _percent(value: str) -> Decimal | None:
    return parse_number(value.replace("%", ""))


@dataclass(frozen=True)
class HeaderRule:
    """One header field of the grammar."""

    field: str
    config_key: str
    post_processor: Callable[[str], Any]


HEADER_GRAMMAR: tuple[HeaderRule, ...] = (
    HeaderRule("tax_id", "tax_id_pattern", _tax_id),
    HeaderRule("supplier_name", "supplier_name_pattern", _text),
    HeaderRule("doc_number", "doc_number_pattern", _text),
    HeaderRule("doc_date", "date_pattern", parse_date),
    HeaderRule("subtotal", "subtotal_pattern", parse_number),
    HeaderRule("tax_amount", "tax_amount_pattern", parse_number),
    HeaderRule("grand_total", "total_pattern", parse_number),
)

# Column name -> (LineItem field, converter)
COLUMN_FIELDS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "descricao": ("raw_description", lambda v: v.strip()),
    "qtd": ("quantity", parse_number),
    "unidade": ("unit", _text),
    "preco_unit": ("unit_price", parse_number),
    "total": ("line_total", parse_number),
    "iva": ("tax_pct", _percent),
}


def _compile(pattern: str | None, what: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern, PATTERN_FLAGS)
    except re.error as e:
        logger.warning(f"Ignoring invalid {what} pattern {pattern!r}: {e}")
        return None


def last_group(match: re.Match[str]) -> str | None:
    """Last non-empty capture group, or the whole match for group-less patterns."""
    if not match.groups():
        return match.group(0)
    for group in reversed(match.groups()):
        if group:
            return group
    return None


def _within_limits(
    quantity: Decimal | None, unit_price: Decimal | None, total: Decimal | None
) -> bool:
    if quantity is not None and quantity > MAX_QUANTITY:
        return False
    return all(v is None or v <= MAX_PRICE for v in (unit_price, total))


def parse_row_heuristic(line: str, line_no: int) -> LineItem | None:
    """Read a table row by position when the strict row pattern fails.

    Numbers are assigned right to left: total, unit price, quantity.

    Args:
        line: One table line
        line_no: Line number to assign

    Returns:
        LineItem, or None when the line does not look like a product row
    """
    tokens = [t for t in line.split() if len(digits_only(t) or "") < BARCODE_DIGITS]
    numeric = [(i, parse_number(t)) for i, t in enumerate(tokens) if NUMBER_TOKEN.match(t)]
    numeric = [(i, n) for i, n in numeric if n is not None]
    if len(numeric) < 2:
        return None

    joined = " ".join(tokens)
    first_digit = FIRST_DIGIT_RUN.search(joined)
    description = joined[: first_digit.start()] if first_digit else joined
    description = description.strip(" -:;,.")
    if len(description) < MIN_DESCRIPTION or TOTALS_KEYWORDS.match(description):
        return None

    total = numeric[-1][1]
    unit_price = numeric[-2][1]
    quantity = numeric[-3][1] if len(numeric) >= 3 else None
    if not _within_limits(quantity, unit_price, total):
        logger.debug(f"Rejecting row outside sanity limits: {line!r}")
        return None

    unit = None
    if len(numeric) >= 3:
        next_index = numeric[-3][0] + 1
        if next_index < len(tokens) and tokens[next_index].upper().rstrip(".") in UNIT_TOKENS:
            unit = tokens[next_index].upper().rstrip(".")

    return LineItem(
        line_no=line_no,
        raw_description=description,
        quantity=quantity,
        unit=unit,
        unit_price=unit_price,
        line_total=total,
    )


class TemplateParser:
    """Applies a template's header and table configuration to raw text."""

    def __init__(self, grammar: tuple[HeaderRule, ...] = HEADER_GRAMMAR) -> None:
        self.grammar = grammar

    def parse(self, text: str, template: Template) -> ParsedDocument:
        """Parse text with a template.

        Args:
            text: Raw OCR text
            template: Template whose configs drive the parse

        Returns:
            ParsedDocument (possibly empty; validation decides whether it is usable)
        """
        header = self.parse_header(text, template)
        items = self.parse_table(text, template.table_config) if template.table_config else []
        logger.debug(f"Template {template.id} parsed {len(items)} line items")
        return enrich_document(ParsedDocument(header=header, line_items=items))

    def parse_header(self, text: str, template: Template) -> DocumentHeader:
        config = template.header_config
        values: dict[str, Any] = {}
        for rule in self.grammar:
            pattern = _compile(getattr(config, rule.config_key), rule.config_key)
            if pattern is None:
                continue
            match = pattern.search(text)
            if match is None:
                continue
            raw = last_group(match)
            if raw is None:
                continue
            value = rule.post_processor(raw)
            if value is not None:
                values[rule.field] = value
        return DocumentHeader(**values)

    def parse_table(self, text: str, table: TableConfig) -> list[LineItem]:
        start = _compile(table.start_marker, "start_marker")
        if start is None:
            return []
        end = _compile(table.end_marker, "end_marker")
        row = _compile(table.row_pattern, "row_pattern")

        items: list[LineItem] = []
        in_table = False
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not in_table:
                # The marker line is the table header itself
                in_table = bool(start.search(line))
                continue
            if end is not None and end.search(line):
                break
            if not line:
                continue

            line_no = len(items) + 1
            item = None
            if row is not None:
                item = self._parse_row_strict(line, row, table, line_no)
            if item is None:
                item = parse_row_heuristic(line, line_no)
            if item is not None:
                items.append(item)
        return items

    def _parse_row_strict(
        self, line: str, row: re.Pattern[str], table: TableConfig, line_no: int
    ) -> LineItem | None:
        match = row.search(line)
        if match is None:
            return None

        groups = match.groups()
        values: dict[str, Any] = {}
        for column in table.columns:
            if column.name not in COLUMN_FIELDS or column.index >= len(groups):
                continue
            raw = groups[column.index]
            if raw is None:
                continue
            field, convert = COLUMN_FIELDS[column.name]
            value = convert(raw)
            if value is not None:
                values[field] = value

        description = values.get("raw_description", "")
        if len(description) < MIN_DESCRIPTION or TOTALS_KEYWORDS.match(description):
            return None
        quantity, unit_price = values.get("quantity"), values.get("unit_price")
        if not _within_limits(quantity, unit_price, values.get("line_total")):
            return None
        return LineItem(line_no=line_no, **values)
