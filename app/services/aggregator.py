# app/services/aggregator.py
"""
Read-only financial rollups for the dashboard.

Everything here is recomputed from committed rows on every call; nothing is
cached or written.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Engine

from app.db.schema import finance_transactions, invoices, payments
from app.services.errors import ValidationError
from app.services.ledger import STATUS_PAID, STATUS_SENT, today
from app.services.money import Money

HUNDRED = Decimal("100")


def month_start(d: date) -> date:
    return date(d.year, d.month, 1)


def next_month(d: date) -> date:
    return date(d.year + (d.month == 12), (d.month % 12) + 1, 1)


def _transaction_total(conn, kind: str, start: Optional[date] = None, end: Optional[date] = None) -> Money:
    conditions = [finance_transactions.c.type == kind]
    if start is not None:
        conditions.append(finance_transactions.c.transaction_date >= start)
    if end is not None:
        conditions.append(finance_transactions.c.transaction_date <= end)

    total = conn.execute(
        select(func.coalesce(func.sum(finance_transactions.c.amount), 0))
        .where(and_(*conditions))
    ).scalar_one()
    return Money.of(total)


def _ratio_percent(part: Money, whole: Money) -> Decimal:
    if whole.is_zero():
        return Decimal("0.00")
    return part.scale(HUNDRED, whole.amount).amount


def growth_rate(series: List[Dict[str, Any]], field: str) -> Decimal:
    """Percent change from the first bucket to the last."""
    if len(series) < 2:
        return Decimal("0.00")

    first = Money.of(series[0][field])
    last = Money.of(series[-1][field])
    if first.is_zero():
        return Decimal("100.00") if last.amount > 0 else Decimal("0.00")
    return (last - first).scale(HUNDRED, first.amount).amount


def monthly_trends(conn, start: date, end: date) -> List[Dict[str, Any]]:
    trends = []
    current = month_start(start)

    while current <= end:
        bucket_start = max(current, start)
        bucket_end = min(next_month(current) - timedelta(days=1), end)

        income = _transaction_total(conn, "income", bucket_start, bucket_end)
        expenses = _transaction_total(conn, "expense", bucket_start, bucket_end)
        trends.append(
            {
                "month": current.strftime("%Y-%m"),
                "income": income.amount,
                "expenses": expenses.amount,
                "profit": (income - expenses).amount,
            }
        )
        current = next_month(current)

    return trends


def invoice_metrics(conn, as_of: date) -> Dict[str, Any]:
    by_status = {
        row.status: row.count
        for row in conn.execute(
            select(invoices.c.status, func.count().label("count"))
            .group_by(invoices.c.status)
        )
    }

    overdue_count = conn.execute(
        select(func.count())
        .select_from(invoices)
        .where(
            invoices.c.status == STATUS_SENT,
            invoices.c.due_date < as_of,
            invoices.c.total_amount > 0,
        )
    ).scalar_one()

    total_value = Money.of(
        conn.execute(select(func.coalesce(func.sum(invoices.c.total_amount), 0))).scalar_one()
    )
    paid_value = Money.of(
        conn.execute(
            select(func.coalesce(func.sum(invoices.c.total_amount), 0))
            .where(invoices.c.status == STATUS_PAID)
        ).scalar_one()
    )
    outstanding = Money.of(
        conn.execute(
            select(func.coalesce(func.sum(invoices.c.total_amount), 0))
            .where(invoices.c.status == STATUS_SENT)
        ).scalar_one()
    )

    return {
        "by_status": by_status,
        "overdue_count": overdue_count,
        "total_value": total_value.amount,
        "paid_value": paid_value.amount,
        "outstanding_balance": outstanding.amount,
        "collection_rate": _ratio_percent(paid_value, total_value),
    }


def get_financial_summary(
    engine: Engine,
    start: date,
    end: date,
    as_of: Optional[date] = None,
) -> Dict[str, Any]:
    """Income, expense, receivables and trend figures for [start, end]."""
    if end < start:
        raise ValidationError("Summary end date cannot be before its start date")
    as_of = as_of or today()

    with engine.connect() as conn:
        income = _transaction_total(conn, "income", start, end)
        expenses = _transaction_total(conn, "expense", start, end)
        total_income = _transaction_total(conn, "income")
        total_expenses = _transaction_total(conn, "expense")

        payments_received = Money.of(
            conn.execute(
                select(func.coalesce(func.sum(payments.c.amount), 0))
                .where(payments.c.payment_date >= start, payments.c.payment_date <= end)
            ).scalar_one()
        )

        trends = monthly_trends(conn, start, end)
        invoice_figures = invoice_metrics(conn, as_of)

    profit = income - expenses
    return {
        "start_date": start,
        "end_date": end,
        "income": income.amount,
        "expenses": expenses.amount,
        "profit": profit.amount,
        "profit_margin": _ratio_percent(profit, income),
        "total_income": total_income.amount,
        "total_expenses": total_expenses.amount,
        "total_profit": (total_income - total_expenses).amount,
        "payments_received": payments_received.amount,
        "invoices": invoice_figures,
        "trends": {
            "monthly": trends,
            "income_growth": growth_rate(trends, "income"),
            "expense_growth": growth_rate(trends, "expenses"),
        },
    }
