# app/services/ledger.py
"""
Payment ledger.

Every write against an invoice's balance runs as one read-check-write unit:

1. read the invoice row, remembering its ``version``
2. recompute paid amounts from the payment rows (never from a cached field)
3. validate the request against the fresh balance
4. ``UPDATE invoices SET version = version + 1 ... WHERE id = :id AND version = :read``
5. insert the payment/refund rows and commit

If step 4 matches no row another writer committed first, so the unit is
rolled back and replayed from step 1. Database lock timeouts and
serialization failures are replayed the same way. After ``max_attempts``
the caller gets LedgerContention.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError

from app.config import get_settings
from app.db.schema import accounts, finance_transactions, invoice_terms, invoices, payments
from app.services.errors import (
    InvalidTransition,
    LedgerContention,
    NotFound,
    OverpaymentRejected,
    ValidationError,
)
from app.services.money import Money, Number
from app.services.terms import TERM_PAID, TERM_PENDING

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_DRAFT = "draft"
STATUS_SENT = "sent"
STATUS_PAID = "paid"
STATUS_CANCELLED = "cancelled"
STATUS_OVERDUE = "overdue"  # derived at read time, never stored

PAYMENT_METHODS = ("cash", "bank_transfer", "card", "check", "other")

_RETRYABLE_MESSAGES = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "unique constraint failed",
    "duplicate key",
)


class StaleInvoice(Exception):
    """The invoice version changed between read and write."""


def today() -> date:
    return datetime.now(ZoneInfo(get_settings().TIMEZONE)).date()


def invoice_status_as_of(
    status: str, due_date: date, total: Money, paid: Money, as_of: date
) -> str:
    """A sent, not fully paid invoice past its due date reads as overdue."""
    if status == STATUS_SENT and due_date < as_of and paid < total:
        return STATUS_OVERDUE
    return status


# ---- Reads inside a unit of work ----

def load_invoice(conn, invoice_id: int):
    row = conn.execute(
        select(invoices).where(invoices.c.id == invoice_id)
    ).mappings().first()
    if row is None:
        raise NotFound(f"Invoice {invoice_id} not found")
    return row


def load_term(conn, invoice_id: int, term_id: int):
    row = conn.execute(
        select(invoice_terms).where(invoice_terms.c.id == term_id)
    ).mappings().first()
    if row is None or row["invoice_id"] != invoice_id:
        raise NotFound(f"Term {term_id} not found on invoice {invoice_id}")
    return row


def invoice_paid_amount(conn, invoice_id: int) -> Money:
    """Payments minus refunds, summed from the payment rows."""
    total = conn.execute(
        select(func.coalesce(func.sum(payments.c.amount), 0))
        .where(payments.c.invoice_id == invoice_id)
    ).scalar_one()
    return Money.of(total)


def term_paid_amount(conn, term_id: int) -> Money:
    total = conn.execute(
        select(func.coalesce(func.sum(payments.c.amount), 0))
        .where(payments.c.term_id == term_id)
    ).scalar_one()
    return Money.of(total)


def bump_version(conn, invoice_row, **values) -> int:
    """Compare-and-swap the invoice version, applying values in the same UPDATE."""
    read_version = invoice_row["version"]
    result = conn.execute(
        invoices.update()
        .where(invoices.c.id == invoice_row["id"])
        .where(invoices.c.version == read_version)
        .values(version=read_version + 1, **values)
    )
    if result.rowcount != 1:
        raise StaleInvoice(invoice_row["id"])
    return read_version + 1


def account_id_for(conn, account_type: str) -> int:
    account_id = conn.execute(
        select(accounts.c.id)
        .where(accounts.c.type == account_type)
        .order_by(accounts.c.id)
        .limit(1)
    ).scalar()
    if account_id is None:
        raise NotFound(f"No {account_type} account configured")
    return account_id


def post_finance_transaction(
    conn,
    account_type: str,
    amount: Money,
    transaction_date: date,
    description: str,
    invoice_id: Optional[int] = None,
    payment_id: Optional[int] = None,
) -> int:
    result = conn.execute(
        finance_transactions.insert().values(
            account_id=account_id_for(conn, account_type),
            invoice_id=invoice_id,
            payment_id=payment_id,
            type=account_type,
            amount=amount.amount,
            transaction_date=transaction_date,
            description=description,
        )
    )
    return result.inserted_primary_key[0]


def _is_retryable(exc: Exception) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


@dataclass
class LedgerResult:
    payment: Dict[str, Any]
    invoice_status: str
    paid_amount: Money
    remaining: Money
    term_status: Optional[str] = None


class AtomicInvoiceWriter:
    """Runs a unit of work against one invoice with bounded optimistic retry."""

    def __init__(
        self,
        engine: Engine,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
    ):
        settings = get_settings()
        self.engine = engine
        self.max_attempts = max_attempts or settings.LEDGER_MAX_ATTEMPTS
        self.backoff = settings.LEDGER_RETRY_BACKOFF if backoff is None else backoff

    def run(self, invoice_id: int, action: str, work: Callable[[Any], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.engine.begin() as conn:
                    return work(conn)
            except StaleInvoice:
                logger.warning(
                    "%s: invoice %s changed concurrently (attempt %s/%s)",
                    action, invoice_id, attempt, self.max_attempts,
                )
            except (OperationalError, IntegrityError) as exc:
                if not _is_retryable(exc):
                    raise
                logger.warning(
                    "%s: transient conflict on invoice %s (attempt %s/%s): %s",
                    action, invoice_id, attempt, self.max_attempts, exc.orig,
                )

            if attempt < self.max_attempts and self.backoff:
                time.sleep(random.uniform(0, self.backoff * attempt))

        logger.error(
            "%s: gave up on invoice %s after %s attempts",
            action, invoice_id, self.max_attempts,
        )
        raise LedgerContention(
            f"Invoice {invoice_id} is being modified concurrently; try again",
            attempts=self.max_attempts,
        )


class PaymentLedger(AtomicInvoiceWriter):

    def apply_payment(
        self,
        invoice_id: int,
        amount: Number,
        method: str,
        payment_date: Optional[date] = None,
        term_id: Optional[int] = None,
        reference_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerResult:
        """
        Record a payment against an invoice, and optionally one of its terms.

        Raises ValidationError, NotFound, InvalidTransition or
        OverpaymentRejected without retrying; LedgerContention when concurrent
        writers keep winning.
        """
        amount = Money.exact(amount)
        if amount.is_zero() or amount.is_negative():
            raise ValidationError("Payment amount must be greater than zero")
        if method not in PAYMENT_METHODS:
            raise ValidationError(
                f"Unknown payment method {method!r}; expected one of {', '.join(PAYMENT_METHODS)}"
            )
        payment_date = payment_date or today()

        def work(conn) -> LedgerResult:
            invoice = load_invoice(conn, invoice_id)
            if invoice["status"] in (STATUS_DRAFT, STATUS_CANCELLED):
                raise InvalidTransition(
                    f"Cannot record a payment on a {invoice['status']} invoice",
                    current_status=invoice["status"],
                )

            total = Money.of(invoice["total_amount"])
            paid = invoice_paid_amount(conn, invoice_id)
            remaining = total - paid
            if amount > remaining:
                raise OverpaymentRejected(
                    f"Payment of {amount} exceeds remaining balance {remaining}",
                    remaining=remaining.amount,
                )

            term = None
            term_status = None
            if term_id is not None:
                term = load_term(conn, invoice_id, term_id)
                term_remaining = Money.of(term["amount"]) - term_paid_amount(conn, term_id)
                if amount > term_remaining:
                    raise OverpaymentRejected(
                        f"Payment of {amount} exceeds term {term['term_number']} "
                        f"remaining balance {term_remaining}",
                        remaining=term_remaining.amount,
                        scope="term",
                    )
                term_status = TERM_PAID if amount == term_remaining else term["status"]

            new_paid = paid + amount
            new_status = STATUS_PAID if new_paid == total else invoice["status"]
            bump_version(conn, invoice, status=new_status)

            payment_id = conn.execute(
                payments.insert().values(
                    invoice_id=invoice_id,
                    term_id=term_id,
                    amount=amount.amount,
                    payment_date=payment_date,
                    method=method,
                    reference_number=reference_number,
                    notes=notes,
                )
            ).inserted_primary_key[0]

            if term is not None and term_status != term["status"]:
                conn.execute(
                    invoice_terms.update()
                    .where(invoice_terms.c.id == term_id)
                    .values(status=term_status)
                )

            post_finance_transaction(
                conn,
                "income",
                amount,
                payment_date,
                f"Payment received for invoice {invoice['invoice_number']}",
                invoice_id=invoice_id,
                payment_id=payment_id,
            )

            payment = conn.execute(
                select(payments).where(payments.c.id == payment_id)
            ).mappings().one()

            return LedgerResult(
                payment=dict(payment),
                invoice_status=new_status,
                paid_amount=new_paid,
                remaining=total - new_paid,
                term_status=term_status,
            )

        result = self.run(invoice_id, "apply_payment", work)
        logger.info(
            "Payment %s of %s recorded on invoice %s (remaining %s, status %s)",
            result.payment["id"], amount, invoice_id, result.remaining, result.invoice_status,
        )
        return result

    def cancel_invoice(self, invoice_id: int) -> str:
        """Cancel a draft or sent invoice that has no outstanding payments."""

        def work(conn) -> str:
            invoice = load_invoice(conn, invoice_id)
            if invoice["status"] not in (STATUS_DRAFT, STATUS_SENT):
                raise InvalidTransition(
                    f"Cannot cancel a {invoice['status']} invoice",
                    current_status=invoice["status"],
                )
            if not invoice_paid_amount(conn, invoice_id).is_zero():
                raise InvalidTransition(
                    "Cannot cancel an invoice with payments applied",
                    current_status=invoice["status"],
                )
            bump_version(conn, invoice, status=STATUS_CANCELLED)
            return STATUS_CANCELLED

        status = self.run(invoice_id, "cancel_invoice", work)
        logger.info("Invoice %s cancelled", invoice_id)
        return status


def reopen_term_status(conn, term_row) -> None:
    """Return a paid term to pending once refunds leave it short."""
    if term_row["status"] != TERM_PAID:
        return
    if term_paid_amount(conn, term_row["id"]) < Money.of(term_row["amount"]):
        conn.execute(
            invoice_terms.update()
            .where(invoice_terms.c.id == term_row["id"])
            .values(status=TERM_PENDING)
        )
