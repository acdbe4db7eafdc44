# app/models/invoices.py

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

from app.models.payments import PaymentOut


class LineItemIn(BaseModel):
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Optional[Decimal] = None


class DiscountIn(BaseModel):
    kind: Literal["fixed", "percentage"]
    value: Decimal


class TermIn(BaseModel):
    term_number: int
    percentage: Decimal
    due_date: date
    description: Optional[str] = None


class InvoiceCreate(BaseModel):
    client_id: int
    project_id: Optional[int] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: Optional[str] = None
    items: List[LineItemIn]
    tax_rate: Decimal = Decimal("0")
    discount: Optional[DiscountIn] = None
    notes: Optional[str] = None
    terms: Optional[List[TermIn]] = None


class InvoiceUpdate(BaseModel):
    project_id: Optional[int] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    items: Optional[List[LineItemIn]] = None
    tax_rate: Optional[Decimal] = None
    discount: Optional[DiscountIn] = None
    notes: Optional[str] = None


class InvoiceTermsIn(BaseModel):
    terms: List[TermIn]


class InvoiceItemOut(BaseModel):
    id: int
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Optional[Decimal] = None
    line_total: Decimal

    class Config:
        from_attributes = True


class InvoiceTermOut(BaseModel):
    id: int
    term_number: int
    percentage: Decimal
    amount: Decimal
    due_date: date
    description: Optional[str] = None
    status: str
    paid_amount: Decimal
    remaining_balance: Decimal


class PaymentSummaryOut(BaseModel):
    paid_amount: Decimal
    remaining_balance: Decimal
    payment_percentage: Decimal
    is_fully_paid: bool
    is_partially_paid: bool


class TermsSummaryOut(BaseModel):
    total_terms: int
    total_percentage: Decimal
    paid_terms: int
    pending_terms: int
    overdue_terms: int


class InvoiceOut(BaseModel):
    id: int
    invoice_number: str
    client_id: int
    project_id: Optional[int] = None
    invoice_date: date
    due_date: date
    currency: str
    tax_rate: Decimal
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    remaining_balance: Decimal
    status: str
    notes: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    items: List[InvoiceItemOut]
    terms: List[InvoiceTermOut]
    payments: List[PaymentOut]
    payment_summary: PaymentSummaryOut
    terms_summary: TermsSummaryOut

    class Config:
        from_attributes = True


class MonthlySummaryOut(BaseModel):
    month: str
    currency: str
    sum_total_amount: Decimal
    count_invoices: int
    by_status: Dict[str, int]


class OverdueInvoiceItem(BaseModel):
    id: int
    invoice_number: str
    client_id: int
    invoice_date: date
    due_date: date
    total_amount: Decimal
    paid_amount: Decimal
    outstanding: Decimal
    currency: str
    status: str
    days_past_due: int


class OverdueResponse(BaseModel):
    items: List[OverdueInvoiceItem]
    total: int
    limit: int
    offset: int
