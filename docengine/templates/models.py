"""Supplier, template and fingerprint models for the template store.

A Template is a learned extraction recipe for one supplier and one physical
invoice layout. Its Fingerprint is used to recognize that layout again
without a full AI extraction.
"""

from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

ColumnName = Literal["descricao", "qtd", "unidade", "preco_unit", "total", "iva", "ref"]
ConfidenceBucket = Literal["high", "medium", "low"]


def _new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class Supplier(BaseModel):
    """Supplier identity, keyed by tax id and/or normalized name."""

    id: str = Field(default_factory=_new_id)
    name: str
    normalized_name: str
    tax_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class HeaderConfig(BaseModel):
    """Named regex patterns for header fields.

    Each pattern's last non-empty capture group is the value; earlier groups
    are label alternatives.
    """

    tax_id_pattern: str | None = None
    supplier_name_pattern: str | None = None
    doc_number_pattern: str | None = None
    date_pattern: str | None = None
    subtotal_pattern: str | None = None
    tax_amount_pattern: str | None = None
    total_pattern: str | None = None

    def is_empty(self) -> bool:
        return not any(self.model_dump().values())


class ColumnSpec(BaseModel):
    """Maps a row_pattern capture group (0-based) to a column."""

    name: ColumnName
    index: int = Field(..., ge=0)


class TableConfig(BaseModel):
    """Where the line-item table starts and ends, and how a row is read."""

    start_marker: str
    end_marker: str | None = None
    row_pattern: str
    columns: list[ColumnSpec] = Field(default_factory=list)


class StructureMarkers(BaseModel):
    table_start_marker: str
    table_columns: int = Field(0, ge=0)
    column_order: list[ColumnName] = Field(default_factory=list)


class LayoutHints(BaseModel):
    multipage: bool = False
    has_logo: bool = True
    footer_pattern: str | None = None
    nif_position: Literal["header", "footer"] = "header"
    date_format: str = "DD/MM/YYYY"


class Fingerprint(BaseModel):
    """Compact signature of an invoice layout."""

    required_keywords: list[str] = Field(default_factory=list)
    optional_keywords: list[str] = Field(default_factory=list)
    structure_markers: StructureMarkers
    layout_hints: LayoutHints = Field(default_factory=LayoutHints)

    @field_validator("required_keywords", "optional_keywords")
    @classmethod
    def _dedupe(cls, keywords: list[str]) -> list[str]:
        return list(dict.fromkeys(k for k in keywords if k))


class Template(BaseModel):
    """Learned extraction recipe for one supplier layout variant."""

    id: str = Field(default_factory=_new_id)
    supplier_id: str
    name: str
    version: int = Field(1, ge=1, description="Format id within the supplier")
    header_config: HeaderConfig = Field(default_factory=HeaderConfig)
    table_config: TableConfig | None = None
    fingerprint: Fingerprint | None = None
    confidence_score: float = Field(50.0, ge=0, le=100)
    times_used: int = Field(0, ge=0)
    times_successful: int = Field(0, ge=0)
    is_active: bool = True
    created_from_ai: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_parse_capable(self) -> bool:
        """Both header and table configuration are populated."""
        return not self.header_config.is_empty() and self.table_config is not None


class ScoreBreakdown(BaseModel):
    keywords: float = 0.0
    structure: float = 0.0
    layout: float = 0.0


class FingerprintMatchResult(BaseModel):
    """Score of a text against a fingerprint (0-100)."""

    score: float = Field(..., ge=0, le=100)
    breakdown: ScoreBreakdown
    confidence_bucket: ConfidenceBucket
