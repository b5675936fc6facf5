"""Unit tests for package detection and derived unit prices."""

from decimal import Decimal

import pytest

from docengine.extraction.packaging import derive_unit_prices, detect_package, enrich_line
from docengine.extraction.schema import LineItem, PackageInfo


@pytest.mark.parametrize(
    ("description", "kind", "quantity", "unit", "clean"),
    [
        ("BIFE FRANGO cx 4kg", "caixa", Decimal("4"), "kg", "BIFE FRANGO"),
        ("Farinha saco 800g", "saco", Decimal("800"), "g", "Farinha"),
        ("Guardanapos emb 20un", "embalagem", Decimal("20"), "un", "Guardanapos"),
        ("Agua garrafa 1L", "garrafa", Decimal("1"), "l", "Agua"),
        ("Massa pct 500g", "pacote", Decimal("500"), "g", "Massa"),
    ],
)
def test_detect_package(
    description: str, kind: str, quantity: Decimal, unit: str, clean: str
) -> None:
    package, cleaned = detect_package(description)

    assert package == PackageInfo(kind=kind, quantity=quantity, unit=unit)
    assert cleaned == clean


def test_detect_package_without_packaging() -> None:
    package, cleaned = detect_package("Arroz Agulha ")
    assert package is None
    assert cleaned == "Arroz Agulha"


def test_derive_price_per_kg_from_package() -> None:
    item = LineItem(
        line_no=1,
        raw_description="BIFE FRANGO cx 4kg",
        quantity=Decimal("2"),
        unit="CX",
        unit_price=Decimal("20.00"),
        package_info=PackageInfo(kind="caixa", quantity=Decimal("4"), unit="kg"),
    )

    prices = derive_unit_prices(item)

    assert prices is not None
    assert prices.per_kg == Decimal("5.0000")


def test_derive_price_for_items_sold_by_kg() -> None:
    item = LineItem(line_no=1, raw_description="Queijo", unit="KG", unit_price=Decimal("8.90"))

    prices = derive_unit_prices(item)

    assert prices is not None
    assert prices.per_kg == Decimal("8.90")


def test_derive_price_needs_unit_price() -> None:
    assert derive_unit_prices(LineItem(line_no=1, raw_description="Arroz")) is None


def test_enrich_line_fills_missing_fields_only() -> None:
    item = LineItem(
        line_no=1,
        raw_description="Guardanapos emb 20un",
        clean_description="Guardanapos papel",
        unit="UN",
        unit_price=Decimal("3.00"),
    )

    enriched = enrich_line(item)

    assert enriched.clean_description == "Guardanapos papel"
    assert enriched.package_info is not None
    assert enriched.derived_unit_prices is not None
    assert enriched.derived_unit_prices.per_unit == Decimal("0.1500")
