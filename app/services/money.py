# app/services/money.py
"""
Fixed-point money.

Amounts are Decimals quantized to cents with ROUND_HALF_UP. Floats are
rejected at construction so binary rounding never reaches a total.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from app.services.errors import ValidationError

CENT = Decimal("0.01")
# Numeric(18, 2) leaves 16 integer digits
MAX_AMOUNT = Decimal("1e16")

Number = Union[Decimal, int, str]


def to_decimal(value: Number) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError(f"money values must be Decimal, int or str, got {type(value).__name__}")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc


@dataclass(frozen=True, order=True)
class Money:
    amount: Decimal

    def __post_init__(self):
        if isinstance(self.amount, Money):
            object.__setattr__(self, "amount", self.amount.amount)
        value = to_decimal(self.amount)
        if not value.is_finite():
            raise ValidationError(f"Invalid amount: {self.amount!r}")
        if abs(value) >= MAX_AMOUNT:
            raise ValidationError(f"Amount {value} is out of range")
        object.__setattr__(self, "amount", value.quantize(CENT, rounding=ROUND_HALF_UP))

    @classmethod
    def of(cls, value: Union["Money", Number, None]) -> "Money":
        if value is None:
            return cls.zero()
        if isinstance(value, Money):
            return value
        return cls(value)

    @classmethod
    def exact(cls, value: Union["Money", Number]) -> "Money":
        """Like of(), but refuses fractions of a cent instead of rounding them."""
        money = cls.of(value)
        if not isinstance(value, Money) and to_decimal(value) != money.amount:
            raise ValidationError(f"Amount {value} has more than two decimal places")
        return money

    @classmethod
    def zero(cls) -> "Money":
        return cls(Decimal("0"))

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount + other.amount)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        return Money(self.amount - other.amount)

    def __neg__(self) -> "Money":
        return Money(-self.amount)

    def scale(self, numerator: Number, denominator: Number = 1) -> "Money":
        """Multiply by numerator/denominator, rounding once at the end."""
        denominator = to_decimal(denominator)
        if denominator == 0:
            raise ZeroDivisionError("money scale denominator is zero")
        return Money(self.amount * to_decimal(numerator) / denominator)

    def percent(self, rate: Number) -> "Money":
        return self.scale(rate, 100)

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def __str__(self) -> str:
        return str(self.amount)


def money_sum(values) -> Money:
    total = Money.zero()
    for value in values:
        total = total + Money.of(value)
    return total
