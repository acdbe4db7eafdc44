# app/services/refunds.py

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from app.db.schema import credit_notes, invoice_terms, payments
from app.services.errors import NotFound, RefundNotEligible, ValidationError
from app.services.ledger import (
    STATUS_CANCELLED,
    STATUS_PAID,
    STATUS_SENT,
    AtomicInvoiceWriter,
    bump_version,
    invoice_paid_amount,
    load_invoice,
    post_finance_transaction,
    reopen_term_status,
    today,
)
from app.services.money import Money, Number
from app.services.numbering import CREDIT_NOTE_PREFIX, next_document_number

logger = logging.getLogger(__name__)

CREDIT_NOTE_APPLIED = "applied"


@dataclass
class RefundResult:
    refund: Dict[str, Any]
    credit_note: Dict[str, Any]
    original_payment_id: int
    refunded_total: Money
    refundable: Money
    invoice_status: str
    paid_amount: Money
    remaining: Money


def refunded_amount(conn, payment_id: int) -> Money:
    """How much of a payment has already been reversed."""
    total = conn.execute(
        select(func.coalesce(func.sum(payments.c.amount), 0))
        .where(payments.c.refund_of_id == payment_id)
    ).scalar_one()
    return Money.zero() - Money.of(total)


class RefundProcessor(AtomicInvoiceWriter):

    def _load_payment(self, payment_id: int):
        with self.engine.connect() as conn:
            row = conn.execute(
                select(payments).where(payments.c.id == payment_id)
            ).mappings().first()
        if row is None:
            raise NotFound(f"Payment {payment_id} not found")
        return row

    def refund(
        self,
        payment_id: int,
        refund_amount: Number,
        reason: str,
        refund_date: Optional[date] = None,
    ) -> RefundResult:
        """
        Reverse part or all of a payment.

        The refund is appended as a negative counter-entry linked to the
        original payment, so the payment history is never rewritten. A credit
        note and an expense transaction are issued in the same unit of work.
        """
        amount = Money.exact(refund_amount)
        if amount.is_zero() or amount.is_negative():
            raise ValidationError("Refund amount must be greater than zero")
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required")
        refund_date = refund_date or today()

        # invoice_id never changes, so it is safe to resolve before the unit of work
        invoice_id = self._load_payment(payment_id)["invoice_id"]

        def work(conn) -> RefundResult:
            original = conn.execute(
                select(payments).where(payments.c.id == payment_id)
            ).mappings().one()
            if original["refund_of_id"] is not None:
                raise RefundNotEligible(
                    f"Payment {payment_id} is itself a refund", refundable=Money.zero().amount
                )

            invoice = load_invoice(conn, invoice_id)
            already = refunded_amount(conn, payment_id)
            refundable = Money.of(original["amount"]) - already

            if invoice["status"] == STATUS_CANCELLED:
                raise RefundNotEligible(
                    f"Invoice {invoice['invoice_number']} is cancelled",
                    refundable=refundable.amount,
                )
            if refundable.is_zero():
                raise RefundNotEligible(
                    f"Payment {payment_id} has already been fully refunded",
                    refundable=refundable.amount,
                )
            if amount > refundable:
                raise RefundNotEligible(
                    f"Refund of {amount} exceeds refundable amount {refundable}",
                    refundable=refundable.amount,
                )

            total = Money.of(invoice["total_amount"])
            new_paid = invoice_paid_amount(conn, invoice_id) - amount
            new_status = invoice["status"]
            if new_status == STATUS_PAID and new_paid < total:
                new_status = STATUS_SENT
            bump_version(conn, invoice, status=new_status)

            refund_id = conn.execute(
                payments.insert().values(
                    invoice_id=invoice_id,
                    term_id=original["term_id"],
                    amount=(-amount).amount,
                    payment_date=refund_date,
                    method=original["method"],
                    reference_number=f"REFUND-{payment_id}",
                    notes=f"Refund for payment {payment_id}: {reason}",
                    refund_of_id=payment_id,
                    refund_reason=reason,
                )
            ).inserted_primary_key[0]

            if original["term_id"] is not None:
                term = conn.execute(
                    select(invoice_terms).where(invoice_terms.c.id == original["term_id"])
                ).mappings().first()
                if term is not None:
                    reopen_term_status(conn, term)

            credit_note_id = conn.execute(
                credit_notes.insert().values(
                    credit_note_number=next_document_number(
                        conn, credit_notes.c.credit_note_number, CREDIT_NOTE_PREFIX, refund_date
                    ),
                    invoice_id=invoice_id,
                    payment_id=refund_id,
                    amount=amount.amount,
                    reason=reason,
                    status=CREDIT_NOTE_APPLIED,
                    issued_date=refund_date,
                )
            ).inserted_primary_key[0]

            post_finance_transaction(
                conn,
                "expense",
                amount,
                refund_date,
                f"Refund processed for invoice {invoice['invoice_number']}",
                invoice_id=invoice_id,
                payment_id=refund_id,
            )

            refund_row = conn.execute(
                select(payments).where(payments.c.id == refund_id)
            ).mappings().one()
            credit_note = conn.execute(
                select(credit_notes).where(credit_notes.c.id == credit_note_id)
            ).mappings().one()

            return RefundResult(
                refund=dict(refund_row),
                credit_note=dict(credit_note),
                original_payment_id=payment_id,
                refunded_total=already + amount,
                refundable=refundable - amount,
                invoice_status=new_status,
                paid_amount=new_paid,
                remaining=total - new_paid,
            )

        result = self.run(invoice_id, "refund", work)
        logger.info(
            "Refund %s of %s recorded against payment %s (credit note %s)",
            result.refund["id"], amount, payment_id, result.credit_note["credit_note_number"],
        )
        return result


def get_payment(engine, payment_id: int) -> Dict[str, Any]:
    """A payment row with how much of it has been refunded so far."""
    with engine.connect() as conn:
        row = conn.execute(
            select(payments).where(payments.c.id == payment_id)
        ).mappings().first()
        if row is None:
            raise NotFound(f"Payment {payment_id} not found")

        payment = dict(row)
        if row["refund_of_id"] is None:
            refunded = refunded_amount(conn, payment_id)
            payment["refunded_amount"] = refunded.amount
            payment["refundable_amount"] = (Money.of(row["amount"]) - refunded).amount
        else:
            payment["refunded_amount"] = Money.zero().amount
            payment["refundable_amount"] = Money.zero().amount
    return payment
