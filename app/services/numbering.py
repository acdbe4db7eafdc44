# app/services/numbering.py

from datetime import date

from sqlalchemy import func, select

INVOICE_PREFIX = "INV"
CREDIT_NOTE_PREFIX = "CN"


def next_document_number(conn, column, prefix: str, on_date: date) -> str:
    """
    Next number in the PREFIX + YYYY + MM + 6-digit sequence for on_date's month.

    Two writers can compute the same number; the column's unique constraint
    rejects the second insert and the caller retries.
    """
    period_prefix = f"{prefix}{on_date.year:04d}{on_date.month:02d}"
    last = conn.execute(
        select(func.max(column)).where(
            column.like(f"{period_prefix}%"),
            func.length(column) == len(period_prefix) + 6,
        )
    ).scalar_one()

    sequence = 1
    if last and last[-6:].isdigit():
        sequence = int(last[-6:]) + 1

    return f"{period_prefix}{sequence:06d}"
