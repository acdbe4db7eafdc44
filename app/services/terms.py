# app/services/terms.py

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Sequence

from app.services.errors import InvalidSchedule
from app.services.money import Money, to_decimal

PERCENT_TOLERANCE = Decimal("0.01")

TERM_PENDING = "pending"
TERM_PAID = "paid"
TERM_OVERDUE = "overdue"  # derived at read time, never stored


@dataclass(frozen=True)
class TermRequest:
    term_number: int
    percentage: Decimal
    due_date: date
    description: Optional[str] = None


@dataclass(frozen=True)
class ScheduledTerm:
    term_number: int
    percentage: Decimal
    amount: Money
    due_date: date
    description: Optional[str] = None
    status: str = TERM_PENDING


def schedule_terms(total_amount: Money, requests: Sequence[TermRequest]) -> List[ScheduledTerm]:
    """
    Split total_amount across requests by percentage.

    Every term but the last is rounded to cents; the last term takes whatever
    is left so the amounts always add up to total_amount exactly.
    """
    if not requests:
        raise InvalidSchedule("At least one payment term is required")

    numbers = [r.term_number for r in requests]
    if numbers != list(range(1, len(requests) + 1)):
        raise InvalidSchedule(
            f"Term numbers must run 1..{len(requests)} in order, got {numbers}"
        )

    percentages = []
    for r in requests:
        pct = to_decimal(r.percentage)
        if pct <= 0 or pct > 100:
            raise InvalidSchedule(
                f"Term {r.term_number}: percentage must be greater than 0 and at most 100"
            )
        percentages.append(pct)

    total_pct = sum(percentages, Decimal("0"))
    if abs(total_pct - 100) > PERCENT_TOLERANCE:
        raise InvalidSchedule(f"Term percentages must sum to 100, got {total_pct}")

    scheduled: List[ScheduledTerm] = []
    allocated = Money.zero()
    last = len(requests) - 1

    for i, (r, pct) in enumerate(zip(requests, percentages)):
        if i == last:
            amount = total_amount - allocated
        else:
            amount = total_amount.percent(pct)
            allocated = allocated + amount

        if amount.is_negative():
            raise InvalidSchedule("Term amounts exceed the invoice total")

        scheduled.append(
            ScheduledTerm(
                term_number=r.term_number,
                percentage=pct,
                amount=amount,
                due_date=r.due_date,
                description=r.description,
            )
        )

    return scheduled


def term_status_as_of(stored_status: str, due_date: date, as_of: date) -> str:
    if stored_status == TERM_PENDING and due_date < as_of:
        return TERM_OVERDUE
    return stored_status
