"""Number and date normalization for Portuguese invoice text."""

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

DATE_FORMATS = [
    "%d/%m/%Y",  # 15/03/2024
    "%d-%m-%Y",  # 15-03-2024
    "%d.%m.%Y",  # 15.03.2024
    "%Y-%m-%d",  # 2024-03-15
    "%Y/%m/%d",  # 2024/03/15
]

_CURRENCY = re.compile(r"(?:€|EUR)", re.IGNORECASE)


def parse_number(value: str | None) -> Decimal | None:
    """Parse an amount written in Portuguese or international notation.

    '1.234,56' -> 1234.56, '2,50' -> 2.50, '2.50' -> 2.50, '1,234.56' -> 1234.56

    Args:
        value: Raw amount text, optionally with currency markers

    Returns:
        Decimal value or None if the text is not a number
    """
    if value is None:
        return None

    cleaned = _CURRENCY.sub("", value)
    cleaned = re.sub(r"\s", "", cleaned)
    if not cleaned:
        return None

    if "." in cleaned and "," in cleaned:
        # The right-most separator is the decimal one
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        number = Decimal(cleaned)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def parse_date(value: str | None) -> date | None:
    """Parse a date in one of the formats printed on Portuguese invoices."""
    if not value:
        return None
    candidate = value.strip()[:10]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def digits_only(value: str | None) -> str | None:
    """Strip everything but digits ('PT 501 234 567' -> '501234567')."""
    if value is None:
        return None
    digits = re.sub(r"\D", "", value)
    return digits or None
