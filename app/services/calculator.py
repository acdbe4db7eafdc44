# app/services/calculator.py
"""
Invoice totals from line items, tax and discount.

Line totals are rounded per line before summing. The discount reduces the
taxable base, and tax is rounded once on the discounted base:

    subtotal        = sum(round(quantity * unit_price))
    discount_amount = fixed value | round(subtotal * pct / 100)
    tax_amount      = round((subtotal - discount_amount) * tax_rate / 100)
    total_amount    = max(subtotal - discount_amount + tax_amount, 0)

A line carrying its own tax rate is taxed at that rate on its proportional
share of the discounted base.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from app.services.errors import InvalidDiscount, InvalidItem, ValidationError
from app.services.money import MAX_AMOUNT, Money, Number, to_decimal

HUNDRED = Decimal("100")

DISCOUNT_FIXED = "fixed"
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_KINDS = (DISCOUNT_FIXED, DISCOUNT_PERCENTAGE)


@dataclass(frozen=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Optional[Decimal] = None


@dataclass(frozen=True)
class Discount:
    kind: str
    value: Decimal


@dataclass(frozen=True)
class PricedLine:
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Optional[Decimal]
    line_total: Money


@dataclass(frozen=True)
class InvoiceTotals:
    lines: List[PricedLine]
    subtotal: Money
    discount_amount: Money
    tax_amount: Money
    total_amount: Money


def _check_rate(rate: Number, what: str) -> Decimal:
    value = to_decimal(rate)
    if not value.is_finite() or value < 0 or value > HUNDRED:
        raise ValidationError(f"{what} must be between 0 and 100, got {value}")
    return value


def price_line(position: int, item: LineItem) -> PricedLine:
    if not item.description or not item.description.strip():
        raise InvalidItem(f"Item {position}: description is required", position)

    quantity = to_decimal(item.quantity)
    unit_price = to_decimal(item.unit_price)
    for value in (quantity, unit_price):
        if not value.is_finite() or abs(value) >= MAX_AMOUNT:
            raise InvalidItem(f"Item {position}: {value} is out of range", position)
    if quantity <= 0:
        raise InvalidItem(f"Item {position}: quantity must be greater than zero", position)
    if unit_price < 0:
        raise InvalidItem(f"Item {position}: unit price cannot be negative", position)

    tax_rate = None
    if item.tax_rate is not None:
        tax_rate = to_decimal(item.tax_rate)
        if tax_rate < 0 or tax_rate > HUNDRED:
            raise InvalidItem(f"Item {position}: tax rate must be between 0 and 100", position)

    try:
        line_total = Money(quantity * unit_price)
    except ValidationError:
        raise InvalidItem(f"Item {position}: line total is out of range", position)

    return PricedLine(
        position=position,
        description=item.description.strip(),
        quantity=quantity,
        unit_price=unit_price,
        tax_rate=tax_rate,
        line_total=line_total,
    )


def discount_amount_for(subtotal: Money, discount: Optional[Discount]) -> Money:
    if discount is None:
        return Money.zero()
    if discount.kind not in DISCOUNT_KINDS:
        raise InvalidDiscount(f"Unknown discount kind {discount.kind!r}")

    value = to_decimal(discount.value)
    if value < 0:
        raise InvalidDiscount("Discount cannot be negative")

    if discount.kind == DISCOUNT_PERCENTAGE:
        if value > HUNDRED:
            raise InvalidDiscount("Percentage discount cannot exceed 100")
        return subtotal.percent(value)

    amount = Money(value)
    if amount > subtotal:
        raise InvalidDiscount(
            f"Fixed discount {amount} exceeds subtotal {subtotal}"
        )
    return amount


def calculate_totals(
    items: Sequence[LineItem],
    tax_rate: Number = 0,
    discount: Optional[Discount] = None,
) -> InvoiceTotals:
    """Price items and derive subtotal, discount, tax and total. Pure."""
    rate = _check_rate(tax_rate, "Tax rate")
    lines = [price_line(position, item) for position, item in enumerate(items, start=1)]

    subtotal = Money.zero()
    for line in lines:
        subtotal = subtotal + line.line_total

    discount_amount = discount_amount_for(subtotal, discount)
    taxable = subtotal - discount_amount

    if subtotal.is_zero():
        tax_amount = Money.zero()
    elif all(line.tax_rate is None for line in lines):
        tax_amount = taxable.percent(rate)
    else:
        weighted = sum(
            (line.line_total.amount * (rate if line.tax_rate is None else line.tax_rate)
             for line in lines),
            Decimal("0"),
        )
        # weighted / subtotal is the blended rate; apply it to the taxable base
        tax_amount = taxable.scale(weighted, subtotal.amount * HUNDRED)

    total_amount = taxable + tax_amount
    if total_amount.is_negative():
        total_amount = Money.zero()

    return InvoiceTotals(
        lines=lines,
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total_amount=total_amount,
    )
