# app/api/payments.py

from fastapi import APIRouter, Depends
from sqlalchemy.engine import Engine

from app.db.engine import get_engine
from app.models.payments import (
    PaymentCreate,
    PaymentDetailOut,
    PaymentResultOut,
    RefundCreate,
    RefundResultOut,
)
from app.services.ledger import PaymentLedger
from app.services.refunds import RefundProcessor, get_payment as load_payment

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/", response_model=PaymentResultOut, status_code=201)
def create_payment(
    body: PaymentCreate,
    engine: Engine = Depends(get_engine),
) -> PaymentResultOut:
    """
    Record a payment against an invoice (and optionally one of its terms).
    Rejected with 422 when it would overpay the remaining balance.
    """
    result = PaymentLedger(engine).apply_payment(
        invoice_id=body.invoice_id,
        amount=body.amount,
        method=body.method,
        payment_date=body.payment_date,
        term_id=body.term_id,
        reference_number=body.reference_number,
        notes=body.notes,
    )
    return PaymentResultOut(
        payment=result.payment,
        invoice_status=result.invoice_status,
        paid_amount=result.paid_amount.amount,
        remaining_balance=result.remaining.amount,
        term_status=result.term_status,
    )


@router.get("/{payment_id}", response_model=PaymentDetailOut)
def get_payment(payment_id: int, engine: Engine = Depends(get_engine)) -> PaymentDetailOut:
    return PaymentDetailOut.model_validate(load_payment(engine, payment_id))


@router.post("/{payment_id}/refunds", response_model=RefundResultOut, status_code=201)
def refund_payment(
    payment_id: int,
    body: RefundCreate,
    engine: Engine = Depends(get_engine),
) -> RefundResultOut:
    """
    Refund part or all of a payment. Issues a credit note.
    """
    result = RefundProcessor(engine).refund(
        payment_id=payment_id,
        refund_amount=body.amount,
        reason=body.reason,
        refund_date=body.refund_date,
    )
    return RefundResultOut(
        refund=result.refund,
        credit_note=result.credit_note,
        original_payment_id=result.original_payment_id,
        refunded_total=result.refunded_total.amount,
        refundable_amount=result.refundable.amount,
        invoice_status=result.invoice_status,
        paid_amount=result.paid_amount.amount,
        remaining_balance=result.remaining.amount,
    )
