"""Supplier invoice data models for structured extraction.

A ParsedDocument is produced by either the template parser or an AI
provider. No field is required at the type level: absence means "not
extracted", and the validation engine decides which absences are fatal.
"""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field


class PackageInfo(BaseModel):
    """Packaging described inside a line (e.g. 'cx 4kg')."""

    kind: str = Field(..., description="Package type: caixa, saco, embalagem, garrafa, pacote")
    quantity: Decimal = Field(..., description="Amount per package (4, 800, 20)")
    unit: str = Field(..., description="Unit of the package content: kg, g, l, ml, un")


class DerivedUnitPrices(BaseModel):
    """Base prices computed from the unit price and the package content."""

    per_kg: Decimal | None = None
    per_litre: Decimal | None = None
    per_unit: Decimal | None = None

    def is_empty(self) -> bool:
        return self.per_kg is None and self.per_litre is None and self.per_unit is None


class LineItem(BaseModel):
    """One product/service row of the itemized table."""

    line_no: int = Field(..., ge=1, description="Sequential line number, starting at 1")
    raw_description: str = Field("", description="Description exactly as printed")
    clean_description: str | None = Field(None, description="Description without package info")

    quantity: Decimal | None = Field(None, description="Quantity purchased")
    unit: str | None = Field(None, description="Unit of purchase (KG, UN, L)")
    unit_price: Decimal | None = Field(None, description="Final price per unit")
    unit_price_original: Decimal | None = Field(None, description="Price per unit before discount")
    discount_pct: Decimal | None = Field(None, description="Declared discount percentage")
    line_total: Decimal | None = Field(None, description="Line total")

    tax_pct: Decimal | None = Field(None, description="VAT percentage (6, 13, 23)")
    tax_amount: Decimal | None = Field(None, description="VAT amount")

    package_info: PackageInfo | None = None
    derived_unit_prices: DerivedUnitPrices | None = None


class DocumentHeader(BaseModel):
    """Header fields of a supplier invoice."""

    supplier_name: str | None = Field(None, description="Supplier/vendor company name")
    tax_id: str | None = Field(None, description="Supplier tax id (NIF/NIPC), 9 digits")
    doc_number: str | None = Field(None, description="Invoice number")
    doc_date: date | None = Field(None, description="Date invoice was issued")

    subtotal: Decimal | None = Field(None, description="Total before tax")
    tax_amount: Decimal | None = Field(None, description="Total tax amount")
    grand_total: Decimal | None = Field(None, description="Total including tax")
    discount_total: Decimal | None = Field(None, description="Document-level discount amount")
    discount_pct: Decimal | None = Field(None, description="Document-level discount percentage")


class ParsedDocument(BaseModel):
    """Structured result of one extraction strategy."""

    header: DocumentHeader = Field(default_factory=DocumentHeader)
    line_items: list[LineItem] = Field(default_factory=list)
