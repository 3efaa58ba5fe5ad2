"""
Amount arithmetic for debit note lines.

Pure functions over Decimal.  Amounts copied from task records are never
re-rounded; only amounts computed here (edited lines, manual charge lines,
service-charge lines) are quantized.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from agency_kernel.exceptions import InvalidAmountError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def quantize(amount: Decimal, decimals: int = 2) -> Decimal:
    """Round half-up to the given number of decimal places."""
    return amount.quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class LineAmounts:
    total_amount: Decimal
    tax_amount: Decimal
    total_after_tax: Decimal


def compute_line_amounts(
    quantity: Decimal,
    unit_price: Decimal,
    tax_percentage: Decimal,
    decimals: int = 2,
) -> LineAmounts:
    """
    total = quantity x unit_price; tax = total x pct / 100.

    Raises:
        InvalidAmountError: On negative quantity, price or percentage.
    """
    if quantity < ZERO:
        raise InvalidAmountError("quantity", "must not be negative")
    if unit_price < ZERO:
        raise InvalidAmountError("unit_price", "must not be negative")
    if tax_percentage < ZERO or tax_percentage > HUNDRED:
        raise InvalidAmountError("tax_percentage", "must be between 0 and 100")

    total = quantize(quantity * unit_price, decimals)
    tax = quantize(total * tax_percentage / HUNDRED, decimals)
    return LineAmounts(total_amount=total, tax_amount=tax, total_after_tax=total + tax)


def service_charge_amount(
    total_after_tax: Decimal,
    percentage: Decimal,
    decimals: int = 2,
) -> Decimal:
    """Service charge on a line: its total after tax x pct / 100."""
    if percentage < ZERO or percentage > HUNDRED:
        raise InvalidAmountError("service_charge_percentage", "must be between 0 and 100")
    return quantize(total_after_tax * percentage / HUNDRED, decimals)


def check_record_amounts(
    total_amount: Decimal,
    tax_amount: Decimal,
    total_after_tax: Decimal | None,
) -> Decimal:
    """
    Validate task record money fields and return total_after_tax.

    Tax is computed before aggregation; the record only has to add up.
    """
    if total_amount < ZERO:
        raise InvalidAmountError("total_amount", "must not be negative")
    if tax_amount < ZERO:
        raise InvalidAmountError("tax_amount", "must not be negative")
    expected = total_amount + tax_amount
    if total_after_tax is None:
        return expected
    if total_after_tax != expected:
        raise InvalidAmountError(
            "total_after_tax",
            f"{total_after_tax} != total_amount + tax_amount ({expected})",
        )
    return total_after_tax


def format_percentage(percentage: Decimal) -> str:
    """Render 10.00 as '10' and 7.50 as '7.5' for remarks."""
    return format(percentage.normalize(), "f")
