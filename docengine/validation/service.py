"""Validation of extracted invoice documents.

Layers:
1. Line format: descriptions, prices, quantities, line arithmetic
2. Document arithmetic: line sum vs subtotal, subtotal + tax vs grand total
3. Business rules: IVA rates, positive totals

Errors reject an extraction (the router moves on to its next strategy);
warnings accept it with a caveat. Validation is pure: the same document
always yields the same result.
"""

import logging
import re
from decimal import Decimal

from pydantic import BaseModel, Field

from docengine.extraction.schema import LineItem, ParsedDocument
from docengine.shared.config import Settings

logger = logging.getLogger(__name__)

# Portugal IVA rates
VALID_TAX_RATES = (Decimal("0"), Decimal("0.06"), Decimal("0.13"), Decimal("0.23"))

MIN_DESCRIPTION_LENGTH = 3
MAX_QUANTITY = Decimal("10000")
MAX_UNIT_PRICE = Decimal("100000")
MATH_TOLERANCE = Decimal("0.02")
LINE_SUM_MIN_TOLERANCE = Decimal("2.00")
LINE_SUM_RELATIVE_TOLERANCE = Decimal("0.01")
LINE_SUM_SOFT_TOLERANCE = Decimal("0.05")
RATE_TOLERANCE = Decimal("0.02")
UNDECLARED_DISCOUNT_RANGE = (Decimal("0.70"), Decimal("0.95"))

PHONE_NUMBER = re.compile(r"^\d{9,15}$")
GARBAGE_PATTERNS = [
    re.compile(r"praias", re.IGNORECASE),
    re.compile(r"devolusão", re.IGNORECASE),
    re.compile(r"teletônicos", re.IGNORECASE),
    re.compile(r"accesses", re.IGNORECASE),
    re.compile(r"^\s*inf\s*$", re.IGNORECASE),
    re.compile(r"^\s*tel\s*$", re.IGNORECASE),
]


class ValidationResult(BaseModel):
    """Outcome of a validation call. Never persisted."""

    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_messages(cls, errors: list[str], warnings: list[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=errors, warnings=warnings)


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


class ValidationEngine:
    """Checks structured documents for internal consistency."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or Settings()
        self.mode = settings.validation_mode

    def validate_line(self, item: LineItem, index: int) -> ValidationResult:
        """Validate one line item.

        Args:
            item: Line to check
            index: 1-based position used in messages

        Returns:
            ValidationResult for this line only
        """
        errors: list[str] = []
        warnings: list[str] = []
        description = (item.raw_description or "").strip()

        if len(description) < MIN_DESCRIPTION_LENGTH:
            errors.append(f"Line {index}: Description too short ({description!r})")
        if PHONE_NUMBER.match(description):
            errors.append(f"Line {index}: Description appears to be a phone number")
        if description and any(p.search(description) for p in GARBAGE_PATTERNS):
            errors.append(f"Line {index}: Description contains suspicious text ({description!r})")

        if item.unit_price is None:
            errors.append(f"Line {index}: Missing unit price")
        elif item.unit_price <= 0:
            errors.append(f"Line {index}: Invalid unit price ({item.unit_price})")
        elif item.unit_price > MAX_UNIT_PRICE:
            warnings.append(
                f"Line {index}: Very high unit price ({item.unit_price}) - please verify"
            )

        if item.quantity is None:
            errors.append(f"Line {index}: Missing quantity")
        elif item.quantity <= 0:
            errors.append(f"Line {index}: Invalid quantity ({item.quantity})")
        elif item.quantity > MAX_QUANTITY:
            warnings.append(f"Line {index}: Very high quantity ({item.quantity}) - please verify")

        if item.line_total is not None and item.unit_price and item.quantity:
            self._check_line_total(
                item, index, item.quantity, item.unit_price, item.line_total, errors, warnings
            )

        return ValidationResult.from_messages(errors, warnings)

    def _check_line_total(
        self,
        item: LineItem,
        index: int,
        quantity: Decimal,
        unit_price: Decimal,
        line_total: Decimal,
        errors: list[str],
        warnings: list[str],
    ) -> None:
        expected = quantity * unit_price
        if abs(expected - line_total) <= MATH_TOLERANCE:
            return

        if item.unit_price_original and item.discount_pct:
            expected_final = item.unit_price_original * (1 - item.discount_pct / 100)
            if abs(unit_price - expected_final) > MATH_TOLERANCE:
                warnings.append(
                    f"Line {index}: Discount calculation mismatch - "
                    f"{item.unit_price_original} - {item.discount_pct}% should be "
                    f"{_money(expected_final)} but got {unit_price}"
                )
            return

        ratio = line_total / expected
        low, high = UNDECLARED_DISCOUNT_RANGE
        if low <= ratio <= high:
            implied = (1 - ratio) * 100
            warnings.append(
                f"Line {index}: Possible undeclared discount (~{implied:.1f}%) - "
                f"{quantity} x {unit_price} = {_money(expected)} but got {_money(line_total)}"
            )
        else:
            errors.append(
                f"Line {index}: Total mismatch - {quantity} x {unit_price} = "
                f"{_money(expected)} but got {_money(line_total)}"
            )

    def validate_document(self, document: ParsedDocument) -> ValidationResult:
        """Validate whole-document arithmetic and business rules."""
        errors: list[str] = []
        warnings: list[str] = []
        header = document.header
        items = document.line_items

        if not items:
            return ValidationResult.from_messages(["Document has no line items"], [])

        if header.subtotal is not None:
            tolerance = max(LINE_SUM_MIN_TOLERANCE, header.subtotal * LINE_SUM_RELATIVE_TOLERANCE)
            line_sum = sum((item.line_total or Decimal("0") for item in items), Decimal("0"))
            diff = abs(line_sum - header.subtotal)
            if diff > tolerance:
                errors.append(
                    f"Line items sum ({_money(line_sum)}) differs from subtotal "
                    f"({_money(header.subtotal)}) by {_money(diff)} "
                    f"(tolerance: {_money(tolerance)})"
                )
            elif diff > LINE_SUM_SOFT_TOLERANCE:
                warnings.append(
                    f"Small discrepancy in line totals: {_money(diff)} "
                    f"(within tolerance of {_money(tolerance)})"
                )

        subtotal, tax, grand_total = header.subtotal, header.tax_amount, header.grand_total
        if subtotal is not None and tax is not None and grand_total is not None:
            computed = subtotal + tax
            diff = abs(computed - grand_total)
            if diff > MATH_TOLERANCE:
                errors.append(
                    f"Subtotal ({_money(subtotal)}) + tax ({_money(tax)}) = "
                    f"{_money(computed)} but grand total is {_money(grand_total)} "
                    f"(difference: {_money(diff)})"
                )

        if grand_total is not None:
            largest = max(
                (item.quantity or Decimal("0")) * (item.unit_price or Decimal("0"))
                for item in items
            )
            if grand_total < largest - Decimal("0.01"):
                errors.append(
                    f"Grand total ({_money(grand_total)}) is less than largest line "
                    f"({_money(largest)})"
                )
            if grand_total <= 0:
                errors.append(f"Grand total must be positive (got {grand_total})")
        else:
            warnings.append("Grand total not extracted")

        if header.tax_amount and header.tax_amount > 0 and header.subtotal and header.subtotal > 0:
            rate = header.tax_amount / header.subtotal
            if not any(abs(rate - valid) < RATE_TOLERANCE for valid in VALID_TAX_RATES):
                expected = ", ".join(f"{r * 100:.0f}%" for r in VALID_TAX_RATES)
                warnings.append(f"Unusual IVA rate: {rate * 100:.1f}% (expected: {expected})")

        return ValidationResult.from_messages(errors, warnings)

    def validate_extraction(self, document: ParsedDocument) -> ValidationResult:
        """Lenient acceptance check: at least one line item was extracted."""
        if not document.line_items:
            return ValidationResult.from_messages(["No line items extracted"], [])
        return ValidationResult()

    def validate(self, document: ParsedDocument) -> ValidationResult:
        """Validate every line plus the document as a whole.

        In lenient mode only validate_extraction applies.

        Args:
            document: Structured document to check

        Returns:
            ValidationResult; valid when no errors were found
        """
        if self.mode == "lenient":
            return self.validate_extraction(document)

        errors: list[str] = []
        warnings: list[str] = []
        for index, item in enumerate(document.line_items, start=1):
            line = self.validate_line(item, index)
            errors.extend(line.errors)
            warnings.extend(line.warnings)

        doc = self.validate_document(document)
        errors.extend(doc.errors)
        warnings.extend(doc.warnings)

        if errors:
            logger.debug(f"Validation failed with {len(errors)} errors: {errors[:3]}")
        return ValidationResult.from_messages(errors, warnings)
