"""Fingerprint scoring and generation.

A fingerprint is scored against raw OCR text in three additive bands:

- keywords (max 40): 30 for required keywords, 10 bonus for optional ones
- structure (max 35): 20 for the table start marker, 15 for column order
- layout (max 25): footer 10, NIF position 5, date format 5, page count 5

Scores >= score_high_bucket are bucketed 'high', >= score_medium_bucket
'medium', anything else 'low'. Scoring is a pure function of its inputs.
"""

import logging
import re

from docengine.extraction.schema import ParsedDocument
from docengine.shared.config import Settings
from docengine.templates.matcher import extract_tax_id
from docengine.templates.models import (
    ColumnName,
    ConfidenceBucket,
    Fingerprint,
    FingerprintMatchResult,
    LayoutHints,
    ScoreBreakdown,
    StructureMarkers,
)

logger = logging.getLogger(__name__)

COLUMN_ALIASES: dict[ColumnName, list[str]] = {
    "descricao": ["DESCRIÇÃO", "DESIGNAÇÃO", "ARTIGO", "PRODUTO"],
    "qtd": ["QTD", "QUANTIDADE", "QT", "QTDE"],
    "unidade": ["UND", "UNIDADE", "UN"],
    "preco_unit": ["PREÇO", "P.UNIT", "P.UNITÁRIO", "PRECO UNIT"],
    "total": ["VALOR", "TOTAL", "P.TOTAL", "PRECO TOTAL"],
    "iva": ["IVA", "TAXA"],
    "ref": ["REF", "REFERÊNCIA", "COD", "CÓDIGO"],
}
DEFAULT_COLUMN_ORDER: list[ColumnName] = ["descricao", "qtd", "preco_unit"]

TABLE_START_CANDIDATES = [
    "DESCRIÇÃO",
    "QUANTIDADE",
    "PREÇO",
    "ARTIGO",
    "PRODUTO",
    "QTD",
    "VALOR",
]
TABLE_HEADER_WORDS = ["Designação", "Descrição", "Artigo", "Referência", "Código"]

DOC_TYPE_PATTERNS = [
    re.compile(r"FATURA\s+SIMPLIFICADA", re.IGNORECASE),
    re.compile(r"NOTA\s+DE\s+CR[ÉE]DITO", re.IGNORECASE),
    re.compile(r"RECIBO", re.IGNORECASE),
    re.compile(r"FATURA\s+(?:FT|FR|FS|F|VD|NC)\b", re.IGNORECASE),
]
POSTAL_LOCALITY = re.compile(r"\d{4}-\d{3} +([A-ZÇÃÕÁÉÍÓÚÂÊÔÀ ]{3,})")
FOOTER_LINE = re.compile(
    r"^.*\b(?:processado|emitido)\s+por\s+(?:programa|computador|software)\b.*$",
    re.IGNORECASE | re.MULTILINE,
)

DATE_FORMAT_PATTERNS = {
    "DD/MM/YYYY": re.compile(r"(?<!\d)\d{2}/\d{2}/\d{4}(?!\d)"),
    "DD-MM-YYYY": re.compile(r"(?<!\d)\d{2}-\d{2}-\d{4}(?!\d)"),
    "DD.MM.YYYY": re.compile(r"(?<!\d)\d{2}\.\d{2}\.\d{4}(?!\d)"),
    "YYYY-MM-DD": re.compile(r"(?<!\d)\d{4}-\d{2}-\d{2}(?!\d)"),
}
DEFAULT_DATE_FORMAT = "DD/MM/YYYY"

NIF_RUN = re.compile(r"(?<!\d)\d{9}(?!\d)")
NIF_ZONE = 0.2
MULTIPAGE_LENGTH = 5000
FOOTER_MAX_LENGTH = 80


def column_order_score(text: str, expected_order: list[ColumnName]) -> float:
    """Points (max 15) for expected columns found in left-to-right order.

    Each column counts when the first occurrence of one of its aliases lies
    strictly right of the previously matched column.
    """
    if not expected_order:
        return 0.0

    upper = text.upper()
    last_index = -1
    in_order = 0
    for column in expected_order:
        for alias in COLUMN_ALIASES.get(column, [column.upper()]):
            index = upper.find(alias)
            if index > last_index:
                in_order += 1
                last_index = index
                break

    return in_order / len(expected_order) * 15


def detect_column_order(text: str) -> list[ColumnName]:
    """Resolve table columns through the alias table, sorted by position."""
    upper = text.upper()
    detected: list[tuple[int, ColumnName]] = []
    for column, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            position = upper.find(alias)
            if position != -1:
                detected.append((position, column))
                break

    if not detected:
        return list(DEFAULT_COLUMN_ORDER)
    return [column for _, column in sorted(detected)]


def nif_in_position(text: str, position: str) -> bool:
    """Whether the first (header) or last (footer) 9-digit run is in its zone."""
    runs = list(NIF_RUN.finditer(text))
    if not runs:
        return False
    if position == "header":
        return runs[0].start() < len(text) * NIF_ZONE
    return runs[-1].start() > len(text) * (1 - NIF_ZONE)


def detect_nif_position(text: str) -> str:
    match = NIF_RUN.search(text)
    if match is None:
        return "header"
    return "header" if match.start() / len(text) < 0.5 else "footer"


def detect_date_format(text: str) -> str:
    for date_format, pattern in DATE_FORMAT_PATTERNS.items():
        if pattern.search(text):
            return date_format
    return DEFAULT_DATE_FORMAT


def detect_footer_pattern(text: str) -> str | None:
    """Certified-software footer line ('Processado por programa certificado n.º 123/AT')."""
    match = FOOTER_LINE.search(text)
    if match is None:
        return None
    return match.group(0).strip()[:FOOTER_MAX_LENGTH]


def detect_table_start_marker(text: str) -> str:
    upper = text.upper()
    for candidate in TABLE_START_CANDIDATES:
        if candidate in upper:
            return candidate
    return TABLE_START_CANDIDATES[0]


def is_multipage(text: str) -> bool:
    return len(text) > MULTIPAGE_LENGTH


class FingerprintEngine:
    """Scores texts against fingerprints and derives fingerprints from texts."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or Settings()
        self.high_bucket = settings.score_high_bucket
        self.medium_bucket = settings.score_medium_bucket

    def bucket(self, score: float) -> ConfidenceBucket:
        if score >= self.high_bucket:
            return "high"
        if score >= self.medium_bucket:
            return "medium"
        return "low"

    def score(self, text: str, fingerprint: Fingerprint) -> FingerprintMatchResult:
        """Score how well a text matches a fingerprint.

        Args:
            text: Raw OCR text
            fingerprint: Stored template fingerprint

        Returns:
            FingerprintMatchResult with total score, per-band breakdown and bucket
        """
        upper = text.upper()

        keywords = 0.0
        required = fingerprint.required_keywords
        if required:
            matched = sum(1 for kw in required if kw.upper() in upper)
            keywords = matched / len(required) * 30
        optional = fingerprint.optional_keywords
        if optional:
            matched = sum(1 for kw in optional if kw.upper() in upper)
            keywords += min(matched / len(optional) * 10, 10)

        markers = fingerprint.structure_markers
        structure = 0.0
        if markers.table_start_marker and markers.table_start_marker.upper() in upper:
            structure += 20
        structure += column_order_score(text, markers.column_order)

        layout = self._layout_score(text, fingerprint.layout_hints)

        total = round(min(keywords + structure + layout, 100.0), 2)
        return FingerprintMatchResult(
            score=total,
            breakdown=ScoreBreakdown(
                keywords=round(keywords, 1),
                structure=round(structure, 1),
                layout=round(layout, 1),
            ),
            confidence_bucket=self.bucket(total),
        )

    def _layout_score(self, text: str, hints: LayoutHints) -> float:
        score = 0.0
        if hints.footer_pattern and hints.footer_pattern.upper() in text.upper():
            score += 10
        if nif_in_position(text, hints.nif_position):
            score += 5
        pattern = DATE_FORMAT_PATTERNS.get(hints.date_format)
        if pattern is not None and pattern.search(text):
            score += 5
        if hints.multipage == is_multipage(text):
            score += 5
        return score

    def generate(self, text: str, document: ParsedDocument) -> Fingerprint:
        """Derive a fingerprint from a text and its successful extraction.

        Args:
            text: Raw OCR text of the document
            document: Extraction result for that text

        Returns:
            Fingerprint for a new or refined template
        """
        required: list[str] = []
        optional: list[str] = []

        name = (document.header.supplier_name or "").strip()
        if name:
            required.append(name)
            parts = [part for part in re.split(r"[\s,]+", name) if len(part) > 2]
            required.extend(parts[:3])

        tax_id = document.header.tax_id or extract_tax_id(text)
        if tax_id:
            required.append(tax_id)

        for pattern in DOC_TYPE_PATTERNS:
            match = pattern.search(text)
            if match:
                optional.append(re.sub(r"\s+", " ", match.group(0).upper()))
                break

        locality = POSTAL_LOCALITY.search(text)
        if locality and locality.group(1).strip():
            optional.append(locality.group(1).strip())

        upper = text.upper()
        optional.extend(word for word in TABLE_HEADER_WORDS if word.upper() in upper)

        column_order = detect_column_order(text)
        fingerprint = Fingerprint(
            required_keywords=required,
            optional_keywords=optional,
            structure_markers=StructureMarkers(
                table_start_marker=detect_table_start_marker(text),
                table_columns=len(column_order),
                column_order=column_order,
            ),
            layout_hints=LayoutHints(
                multipage=is_multipage(text),
                has_logo=True,
                footer_pattern=detect_footer_pattern(text),
                nif_position=detect_nif_position(text),
                date_format=detect_date_format(text),
            ),
        )
        logger.debug(
            f"Generated fingerprint with {len(fingerprint.required_keywords)} required + "
            f"{len(fingerprint.optional_keywords)} optional keywords"
        )
        return fingerprint
