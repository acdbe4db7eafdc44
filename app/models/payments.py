# app/models/payments.py

from datetime import date, datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel

PaymentMethod = Literal["cash", "bank_transfer", "card", "check", "other"]


class PaymentCreate(BaseModel):
    invoice_id: int
    amount: Decimal
    method: PaymentMethod
    payment_date: Optional[date] = None
    term_id: Optional[int] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    invoice_id: int
    term_id: Optional[int] = None
    amount: Decimal
    payment_date: date
    method: str
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    refund_of_id: Optional[int] = None
    refund_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentDetailOut(PaymentOut):
    refunded_amount: Decimal
    refundable_amount: Decimal


class PaymentResultOut(BaseModel):
    payment: PaymentOut
    invoice_status: str
    paid_amount: Decimal
    remaining_balance: Decimal
    term_status: Optional[str] = None


class RefundCreate(BaseModel):
    amount: Decimal
    reason: str
    refund_date: Optional[date] = None


class CreditNoteOut(BaseModel):
    id: int
    credit_note_number: str
    invoice_id: int
    payment_id: int
    amount: Decimal
    reason: str
    status: str
    issued_date: date

    class Config:
        from_attributes = True


class RefundResultOut(BaseModel):
    refund: PaymentOut
    credit_note: CreditNoteOut
    original_payment_id: int
    refunded_total: Decimal
    refundable_amount: Decimal
    invoice_status: str
    paid_amount: Decimal
    remaining_balance: Decimal
