"""Package detection and base-price derivation for line items.

Supplier descriptions often carry the package content ("BIFE FRANGO cx 4kg",
"Farinha saco 800g", "Guardanapos emb 20un"). Knowing it lets downstream
costing compare prices per kg, per litre or per unit regardless of how the
product was sold.
"""

import re
from decimal import Decimal, InvalidOperation

from docengine.extraction.schema import DerivedUnitPrices, LineItem, PackageInfo, ParsedDocument

PACKAGE_KINDS = {
    "cx": "caixa",
    "caixa": "caixa",
    "saco": "saco",
    "sc": "saco",
    "emb": "embalagem",
    "embalagem": "embalagem",
    "garrafa": "garrafa",
    "gf": "garrafa",
    "grf": "garrafa",
    "pct": "pacote",
    "pacote": "pacote",
}

UNIT_ALIASES = {
    "kg": "kg",
    "g": "g",
    "gr": "g",
    "l": "l",
    "lt": "l",
    "ml": "ml",
    "cl": "cl",
    "un": "un",
    "und": "un",
    "uds": "un",
}

_AMOUNT = r"(\d+(?:[.,]\d+)?)"
_UNITS = r"(kg|gr|g|lt|l|ml|cl|und|uds|un)"

PACKAGE_PATTERN = re.compile(
    rf"\b(cx|caixa|saco|sc|emb|embalagem|garrafa|gf|grf|pct|pacote)\.?\s*{_AMOUNT}\s*{_UNITS}\b",
    re.IGNORECASE,
)
BARE_CONTENT_PATTERN = re.compile(rf"\b{_AMOUNT}\s*(kg|gr|g|lt|l|ml|cl)\b", re.IGNORECASE)

# Factor converting a package unit to its base unit (kg, l, un)
BASE_FACTORS = {
    "kg": ("kg", Decimal("1")),
    "g": ("kg", Decimal("0.001")),
    "l": ("l", Decimal("1")),
    "ml": ("l", Decimal("0.001")),
    "cl": ("l", Decimal("0.01")),
    "un": ("un", Decimal("1")),
}

PRICE_QUANTUM = Decimal("0.0001")


def _to_decimal(value: str) -> Decimal | None:
    try:
        return Decimal(value.replace(",", "."))
    except InvalidOperation:
        return None


def detect_package(description: str) -> tuple[PackageInfo | None, str]:
    """Detect package information in a description.

    Args:
        description: Raw line description

    Returns:
        Tuple of (package info or None, description without the package text)
    """
    match = PACKAGE_PATTERN.search(description)
    kind: str | None = None
    if match:
        kind = PACKAGE_KINDS[match.group(1).lower()]
        amount, unit = match.group(2), match.group(3)
    else:
        match = BARE_CONTENT_PATTERN.search(description)
        if not match:
            return None, description.strip()
        kind = "embalagem"
        amount, unit = match.group(1), match.group(2)

    quantity = _to_decimal(amount)
    if quantity is None or quantity <= 0:
        return None, description.strip()

    clean = (description[: match.start()] + description[match.end() :]).strip()
    clean = re.sub(r"\s{2,}", " ", clean)
    package = PackageInfo(kind=kind, quantity=quantity, unit=UNIT_ALIASES[unit.lower()])
    return package, clean or description.strip()


def derive_unit_prices(item: LineItem) -> DerivedUnitPrices | None:
    """Compute base prices for a line from its unit and package.

    Args:
        item: Line item with unit price and optional package info

    Returns:
        DerivedUnitPrices, or None when nothing can be derived
    """
    if item.unit_price is None or item.unit_price <= 0:
        return None

    sold_by = (item.unit or "").strip().lower()
    sold_by = UNIT_ALIASES.get(sold_by, sold_by)
    prices = DerivedUnitPrices()

    if sold_by == "kg":
        prices.per_kg = item.unit_price
    elif sold_by == "l":
        prices.per_litre = item.unit_price
    elif item.package_info is not None:
        base_unit, factor = BASE_FACTORS[item.package_info.unit]
        content = item.package_info.quantity * factor
        if content > 0:
            per_base = (item.unit_price / content).quantize(PRICE_QUANTUM)
            if base_unit == "kg":
                prices.per_kg = per_base
            elif base_unit == "l":
                prices.per_litre = per_base
            else:
                prices.per_unit = per_base

    return None if prices.is_empty() else prices


def enrich_line(item: LineItem) -> LineItem:
    """Fill package info, clean description and derived prices when missing."""
    updates: dict[str, object] = {}
    package, clean = detect_package(item.raw_description)

    if item.package_info is None and package is not None:
        updates["package_info"] = package
    if item.clean_description is None and item.raw_description:
        updates["clean_description"] = clean

    enriched = item.model_copy(update=updates)
    if enriched.derived_unit_prices is None:
        derived = derive_unit_prices(enriched)
        if derived is not None:
            enriched = enriched.model_copy(update={"derived_unit_prices": derived})
    return enriched


def enrich_document(document: ParsedDocument) -> ParsedDocument:
    """Apply enrich_line to every line of a document."""
    return document.model_copy(
        update={"line_items": [enrich_line(item) for item in document.line_items]}
    )
