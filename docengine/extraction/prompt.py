"""Prompt and output schema shared by the AI extraction providers."""

from typing import Any

_NUMBER = {"type": ["number", "null"]}
_STRING = {"type": ["string", "null"]}

DOCUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "header": {
            "type": "object",
            "properties": {
                "supplier_name": _STRING,
                "tax_id": _STRING,
                "doc_number": _STRING,
                "doc_date": {"type": ["string", "null"], "format": "date"},
                "subtotal": _NUMBER,
                "tax_amount": _NUMBER,
                "grand_total": _NUMBER,
                "discount_total": _NUMBER,
                "discount_pct": _NUMBER,
            },
        },
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "line_no": {"type": "integer", "minimum": 1},
                    "raw_description": {"type": "string"},
                    "clean_description": _STRING,
                    "quantity": _NUMBER,
                    "unit": _STRING,
                    "unit_price": _NUMBER,
                    "unit_price_original": _NUMBER,
                    "discount_pct": _NUMBER,
                    "line_total": _NUMBER,
                    "tax_pct": _NUMBER,
                    "tax_amount": _NUMBER,
                    "package_info": {
                        "type": ["object", "null"],
                        "properties": {
                            "kind": {"type": "string"},
                            "quantity": {"type": "number"},
                            "unit": {"type": "string"},
                        },
                    },
                },
                "required": ["raw_description"],
            },
        },
    },
    "required": ["header", "line_items"],
}

EXTRACTION_FUNCTION = {
    "name": "extract_invoice_document",
    "description": "Extract header fields and line items from a Portuguese supplier invoice",
    "parameters": DOCUMENT_SCHEMA,
}

SYSTEM_PROMPT = "You are an assistant specialized in parsing Portuguese supplier invoices."

_INSTRUCTIONS = """Extract the invoice header and every product line.

Header:
- supplier_name: the issuing company (not the customer)
- tax_id: supplier NIF/NIPC, 9 digits, no spaces or country prefix
- doc_number: invoice number as printed (e.g. "FT 2024/123")
- doc_date: issue date as YYYY-MM-DD
- subtotal (total without IVA), tax_amount (total IVA), grand_total (total with IVA)

Line items (only rows of the products table):
- line_no: sequential, starting at 1
- raw_description: description exactly as printed
- clean_description: description without package info
  ("BIFE FRANGO PANADO" from "BIFE FRANGO PANADO cx 4kg")
- quantity, unit (from the "Un" column: KG, UN, L), unit_price, line_total
- tax_pct (6, 13, 23) and tax_amount when printed
- unit_price_original and discount_pct when a discount is printed
- package_info when the description carries one:
  "cx 4kg" -> caixa 4 kg, "saco 800g" -> saco 800 g, "emb 20un" -> embalagem 20 un,
  "garrafa 1L" -> garrafa 1 l, "pct 500g" -> pacote 500 g

Rules:
1. Skip header rows, addresses, contact information and footer text
2. Convert amounts to numbers: "1.234,56" -> 1234.56, "2,50" -> 2.50
3. Use null for any field that is not clearly present"""


def build_text_prompt(ocr_text: str) -> str:
    """Prompt for extraction from OCR text."""
    return f"{_INSTRUCTIONS}\n\nInvoice text:\n{ocr_text}"


def build_file_prompt() -> str:
    """Prompt for extraction from an attached image or PDF."""
    return f"{_INSTRUCTIONS}\n\nThe invoice is attached."


def build_json_prompt(ocr_text: str | None = None) -> str:
    """Prompt for providers without tool calling: the answer must be bare JSON."""
    shape = (
        '{"header": {"supplier_name": ..., "tax_id": ..., "doc_number": ..., '
        '"doc_date": ..., "subtotal": ..., "tax_amount": ..., "grand_total": ...}, '
        '"line_items": [{"line_no": 1, "raw_description": ..., "quantity": ..., '
        '"unit": ..., "unit_price": ..., "line_total": ..., "tax_pct": ...}]}'
    )
    body = build_text_prompt(ocr_text) if ocr_text is not None else build_file_prompt()
    return f"{SYSTEM_PROMPT}\n\n{body}\n\nReturn ONLY a JSON object shaped like:\n{shape}"
