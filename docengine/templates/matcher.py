"""Supplier identification and template lookup.

The tax id is only read from labelled fields in the top part of the
document: the buyer's tax id usually appears further down, and no match is
better than a match against the wrong supplier.
"""

import logging
import re
import unicodedata

from docengine.extraction.normalizers import digits_only
from docengine.templates.models import Supplier, Template
from docengine.templates.store import TemplateStore

logger = logging.getLogger(__name__)

_PT = r"(?:PT\s*)?"
_VALUE = r"(\d{3}\s?\d{3}\s?\d{3})\b"
_SEP = r"\s*[:.\-]?\s*"

TAX_ID_PATTERNS = [
    re.compile(rf"\bNIPC{_SEP}{_PT}{_VALUE}", re.IGNORECASE),
    re.compile(rf"\bN\.?\s?I\.?\s?F\.?{_SEP}{_PT}{_VALUE}", re.IGNORECASE),
    re.compile(
        rf"\bCONTRIBUINTE(?:\s*N\.?\s*[ºo°]?\.?)?{_SEP}{_PT}{_VALUE}",
        re.IGNORECASE,
    ),
    re.compile(
        rf"\bN[ÚU]MERO\s+(?:DE\s+IDENTIFICA[ÇC][ÃA]O\s+)?FISCAL{_SEP}{_PT}{_VALUE}",
        re.IGNORECASE,
    ),
    re.compile(rf"\bVAT(?:\s*N[OR]?\.?[º°]?)?{_SEP}PT\s*{_VALUE}", re.IGNORECASE),
]
TAX_ID_SEARCH_FRACTION = 0.4
VALID_TAX_ID = re.compile(r"^[1-9]\d{8}$")

NAME_SEARCH_CHARS = 500
NAME_EXCLUSIONS = re.compile(
    r"^\s*(?:FATURA|FACTURA|INVOICE|NOTA|TAL[ÃA]O|RECIBO|ORIGINAL|DUPLICADO|C[ÓO]PIA)\b",
    re.IGNORECASE,
)
LETTER_RUN = re.compile(r"[^\W\d_]{3,}")


def extract_tax_id(text: str) -> str | None:
    """Extract the supplier tax id (NIF/NIPC) from labelled fields.

    Args:
        text: Raw OCR text

    Returns:
        9-digit tax id, or None when no labelled id is found
    """
    head = text[: int(len(text) * TAX_ID_SEARCH_FRACTION)]
    for pattern in TAX_ID_PATTERNS:
        for match in pattern.finditer(head):
            candidate = digits_only(match.group(1))
            if candidate and VALID_TAX_ID.match(candidate):
                return candidate
    return None


def extract_supplier_name(text: str) -> str | None:
    """First plausible company-name line near the top of the document."""
    for raw in text[:NAME_SEARCH_CHARS].splitlines():
        line = raw.strip()
        if not 3 <= len(line) <= 100:
            continue
        if not LETTER_RUN.search(line) or NAME_EXCLUSIONS.match(line):
            continue
        return line
    return None


def normalize_name(name: str) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace.

    'Armazém Lisboa, Lda.' -> 'armazem lisboa lda'
    """
    decomposed = unicodedata.normalize("NFKD", name.lower())
    ascii_only = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"[^a-z0-9]+", " ", ascii_only).strip()


class SupplierMatcher:
    """Identifies suppliers and retrieves their templates from a store."""

    def __init__(self, store: TemplateStore) -> None:
        self.store = store

    def extract_tax_id(self, text: str) -> str | None:
        return extract_tax_id(text)

    def extract_supplier_name(self, text: str) -> str | None:
        return extract_supplier_name(text)

    def find_supplier(self, tax_id: str | None, name: str | None) -> Supplier | None:
        normalized = normalize_name(name) if name else None
        return self.store.find_supplier(tax_id, normalized or None)

    def find_templates(self, tax_id: str | None, name: str | None) -> list[Template]:
        """Active templates of the supplier, highest confidence first.

        Args:
            tax_id: Supplier tax id, if extracted
            name: Supplier name, if extracted

        Returns:
            Templates ordered by descending confidence_score (empty if unknown)
        """
        supplier = self.find_supplier(tax_id, name)
        if supplier is None:
            return []
        templates = self.store.get_templates_by_supplier(supplier.id, active_only=True)
        return sorted(templates, key=lambda t: t.confidence_score, reverse=True)

    def find_or_create_supplier(self, tax_id: str | None, name: str | None) -> Supplier | None:
        """Find the supplier or create it when a name is available.

        A tax id alone is not enough to create a supplier.
        """
        clean_name = name.strip() if name else None
        normalized = normalize_name(clean_name) if clean_name else None
        return self.store.find_or_create_supplier(tax_id, clean_name or None, normalized or None)
