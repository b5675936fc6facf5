"""Decoding of AI provider payloads into ParsedDocument.

A payload that cannot be turned into a document (wrong shape, no JSON,
non-numeric amounts) raises InvalidPayloadError so the caller treats it as
a failed attempt instead of a partial success.
"""

import json
import re
from typing import Any

from pydantic import ValidationError

from docengine.extraction.normalizers import parse_date, parse_number
from docengine.extraction.packaging import enrich_document
from docengine.extraction.schema import ParsedDocument
from docengine.shared.errors import InvalidPayloadError

HEADER_AMOUNT_FIELDS = ("subtotal", "tax_amount", "grand_total", "discount_total", "discount_pct")
LINE_AMOUNT_FIELDS = (
    "quantity",
    "unit_price",
    "unit_price_original",
    "discount_pct",
    "line_total",
    "tax_pct",
    "tax_amount",
)


def parse_json_response(response_text: str) -> dict[str, Any]:
    """Extract and parse JSON from an LLM response.

    Handles common LLM quirks like markdown code blocks.

    Args:
        response_text: Raw LLM response

    Returns:
        Parsed JSON dict

    Raises:
        InvalidPayloadError: If no JSON object can be found
    """
    candidates = []
    block = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if block:
        candidates.append(block.group(1).strip())
    braces = re.search(r"\{[\s\S]*\}", response_text)
    if braces:
        candidates.append(braces.group(0))
    candidates.append(response_text.strip())

    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(result, dict):
            return result
    raise InvalidPayloadError("No JSON object found in model response")


def _normalize_amounts(data: dict[str, Any], fields: tuple[str, ...]) -> None:
    for field in fields:
        value = data.get(field)
        if isinstance(value, str):
            parsed = parse_number(value)
            if parsed is None:
                raise InvalidPayloadError(f"Field '{field}' is not a number: {value!r}")
            data[field] = parsed


def document_from_payload(payload: Any) -> ParsedDocument:
    """Build a ParsedDocument from a decoded AI payload.

    Args:
        payload: Decoded JSON ({"header": {...}, "line_items": [...]})

    Returns:
        Enriched ParsedDocument

    Raises:
        InvalidPayloadError: If the payload does not describe a document
    """
    if not isinstance(payload, dict):
        raise InvalidPayloadError(f"Expected a JSON object, got {type(payload).__name__}")

    header = payload.get("header") or {}
    items = payload.get("line_items")
    if not isinstance(header, dict):
        raise InvalidPayloadError("'header' must be an object")
    if items is None:
        items = []
    if not isinstance(items, list):
        raise InvalidPayloadError("'line_items' must be a list")

    header = dict(header)
    _normalize_amounts(header, HEADER_AMOUNT_FIELDS)
    if isinstance(header.get("doc_date"), str):
        header["doc_date"] = parse_date(header["doc_date"])
    if header.get("tax_id") is not None:
        header["tax_id"] = str(header["tax_id"]).strip()

    lines = []
    for index, raw in enumerate(items, start=1):
        if not isinstance(raw, dict):
            raise InvalidPayloadError(f"Line item {index} is not an object")
        item = dict(raw)
        item.setdefault("line_no", index)
        item["raw_description"] = str(item.get("raw_description") or "").strip()
        _normalize_amounts(item, LINE_AMOUNT_FIELDS)
        lines.append(item)

    try:
        document = ParsedDocument.model_validate({"header": header, "line_items": lines})
    except ValidationError as e:
        raise InvalidPayloadError(f"Payload does not match document schema: {e}") from e

    return enrich_document(document)
