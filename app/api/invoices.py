# app/api/invoices.py

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import and_, func, select
from sqlalchemy.engine import Engine

from app.config import get_settings
from app.db.engine import get_engine
from app.db.schema import invoices, payments
from app.models.invoices import (
    InvoiceCreate,
    InvoiceOut,
    InvoiceTermsIn,
    InvoiceUpdate,
    MonthlySummaryOut,
    OverdueInvoiceItem,
    OverdueResponse,
    TermIn,
)
from app.services.calculator import Discount, LineItem
from app.services.invoices import InvoiceService, get_invoice as load_invoice_detail
from app.services.ledger import STATUS_OVERDUE, STATUS_SENT, PaymentLedger, today
from app.services.terms import TermRequest

router = APIRouter(prefix="/invoices", tags=["invoices"])


def _term_requests(terms: List[TermIn]) -> List[TermRequest]:
    return [
        TermRequest(
            term_number=t.term_number,
            percentage=t.percentage,
            due_date=t.due_date,
            description=t.description,
        )
        for t in terms
    ]


def _line_items(items) -> List[LineItem]:
    return [
        LineItem(
            description=i.description,
            quantity=i.quantity,
            unit_price=i.unit_price,
            tax_rate=i.tax_rate,
        )
        for i in items
    ]


@router.post("/", response_model=InvoiceOut, status_code=201)
def create_invoice(
    body: InvoiceCreate,
    engine: Engine = Depends(get_engine),
) -> InvoiceOut:
    """
    Create a draft invoice. Totals are computed from the items; terms, if
    given, split the computed total.
    """
    detail = InvoiceService(engine).create_invoice(
        client_id=body.client_id,
        project_id=body.project_id,
        items=_line_items(body.items),
        invoice_date=body.invoice_date,
        due_date=body.due_date,
        tax_rate=body.tax_rate,
        discount=Discount(kind=body.discount.kind, value=body.discount.value) if body.discount else None,
        notes=body.notes,
        invoice_number=body.invoice_number,
        currency=body.currency,
        terms=_term_requests(body.terms) if body.terms else None,
    )
    return InvoiceOut.model_validate(detail)


@router.get("/overdue", response_model=OverdueResponse)
def list_overdue_invoices(
    as_of: Optional[date] = Query(
        default=None,
        description="ISO date (YYYY-MM-DD); defaults to today in the configured timezone",
    ),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    sort: Optional[str] = Query(
        default="due_date.asc",
        description="due_date.asc | due_date.desc",
    ),
    engine: Engine = Depends(get_engine),
) -> OverdueResponse:
    """
    Returns sent invoices with a positive outstanding balance whose due date is before as_of.
    """
    if as_of is None:
        as_of = today()

    if sort == "due_date.desc":
        order_clause = invoices.c.due_date.desc()
    else:
        order_clause = invoices.c.due_date.asc()

    paid_sq = (
        select(
            payments.c.invoice_id,
            func.sum(payments.c.amount).label("paid"),
        )
        .group_by(payments.c.invoice_id)
        .subquery()
    )
    paid_expr = func.coalesce(paid_sq.c.paid, 0)
    outstanding_expr = invoices.c.total_amount - paid_expr
    joined = invoices.outerjoin(paid_sq, paid_sq.c.invoice_id == invoices.c.id)

    base_where = and_(
        invoices.c.status == STATUS_SENT,
        outstanding_expr > 0,
        invoices.c.due_date < as_of,
    )

    with engine.connect() as conn:
        total = conn.execute(
            select(func.count()).select_from(joined).where(base_where)
        ).scalar_one()

        stmt = (
            select(
                invoices.c.id,
                invoices.c.invoice_number,
                invoices.c.client_id,
                invoices.c.invoice_date,
                invoices.c.due_date,
                invoices.c.total_amount,
                paid_expr.label("paid_amount"),
                invoices.c.currency,
            )
            .select_from(joined)
            .where(base_where)
            .order_by(order_clause, invoices.c.id)
            .limit(limit)
            .offset(offset)
        )

        rows = conn.execute(stmt).mappings().all()

    items: List[OverdueInvoiceItem] = []
    zero = Decimal("0")

    for row in rows:
        total_amount = row["total_amount"] or zero
        paid = row["paid_amount"] or zero

        items.append(
            OverdueInvoiceItem(
                id=row["id"],
                invoice_number=row["invoice_number"],
                client_id=row["client_id"],
                invoice_date=row["invoice_date"],
                due_date=row["due_date"],
                total_amount=total_amount,
                paid_amount=paid,
                outstanding=total_amount - paid,
                currency=row["currency"],
                status=STATUS_OVERDUE,
                days_past_due=(as_of - row["due_date"]).days,
            )
        )

    return OverdueResponse(
        items=items,
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/summary/month", response_model=MonthlySummaryOut)
def monthly_summary(
    month: str = Query(..., description="Target month in YYYY-MM format"),
    client_id: Optional[int] = Query(default=None, description="Optional client filter"),
    engine: Engine = Depends(get_engine),
) -> MonthlySummaryOut:
    """
    Returns the sum of total_amount for non-cancelled invoices whose invoice_date
    falls in the target month, optionally filtered by client.
    """
    try:
        dt = datetime.strptime(month, "%Y-%m")
    except ValueError:
        raise HTTPException(status_code=400, detail="month must be in YYYY-MM format")

    year, m = dt.year, dt.month
    first_day = date(year, m, 1)
    next_month = date(year + (m == 12), (m % 12) + 1, 1)

    conditions = [
        invoices.c.invoice_date >= first_day,
        invoices.c.invoice_date < next_month,
    ]
    if client_id is not None:
        conditions.append(invoices.c.client_id == client_id)

    with engine.connect() as conn:
        by_status = {
            r.status: r.count
            for r in conn.execute(
                select(invoices.c.status, func.count().label("count"))
                .where(and_(*conditions))
                .group_by(invoices.c.status)
            )
        }

        row = conn.execute(
            select(
                func.coalesce(func.sum(invoices.c.total_amount), 0).label("sum_total_amount"),
                func.count().label("count_invoices"),
                func.min(invoices.c.currency).label("currency"),
            )
            .where(and_(*conditions, invoices.c.status != "cancelled"))
        ).first()

    return MonthlySummaryOut(
        month=month,
        currency=row.currency or get_settings().DEFAULT_CURRENCY,
        sum_total_amount=row.sum_total_amount or Decimal("0"),
        count_invoices=row.count_invoices or 0,
        by_status=by_status,
    )


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: int,
    as_of: Optional[date] = Query(default=None, description="Date used to derive overdue status"),
    engine: Engine = Depends(get_engine),
) -> InvoiceOut:
    """
    Look up a single invoice with items, terms, payments and derived balances.
    """
    return InvoiceOut.model_validate(load_invoice_detail(engine, invoice_id, as_of))


@router.patch("/{invoice_id}", response_model=InvoiceOut)
def update_invoice(
    invoice_id: int,
    body: InvoiceUpdate,
    engine: Engine = Depends(get_engine),
) -> InvoiceOut:
    patch = body.model_dump(exclude_unset=True)
    if "items" in patch:
        patch["items"] = _line_items(body.items or [])
    if "discount" in patch:
        patch["discount"] = (
            Discount(kind=body.discount.kind, value=body.discount.value) if body.discount else None
        )
    return InvoiceOut.model_validate(InvoiceService(engine).update_invoice(invoice_id, patch))


@router.delete("/{invoice_id}", status_code=204)
def delete_invoice(invoice_id: int, engine: Engine = Depends(get_engine)) -> Response:
    InvoiceService(engine).delete_invoice(invoice_id)
    return Response(status_code=204)


@router.put("/{invoice_id}/terms", response_model=InvoiceOut)
def set_invoice_terms(
    invoice_id: int,
    body: InvoiceTermsIn,
    engine: Engine = Depends(get_engine),
) -> InvoiceOut:
    detail = InvoiceService(engine).set_invoice_terms(invoice_id, _term_requests(body.terms))
    return InvoiceOut.model_validate(detail)


@router.post("/{invoice_id}/send", response_model=InvoiceOut)
def send_invoice(invoice_id: int, engine: Engine = Depends(get_engine)) -> InvoiceOut:
    return InvoiceOut.model_validate(InvoiceService(engine).send_invoice(invoice_id))


@router.post("/{invoice_id}/cancel", response_model=InvoiceOut)
def cancel_invoice(invoice_id: int, engine: Engine = Depends(get_engine)) -> InvoiceOut:
    PaymentLedger(engine).cancel_invoice(invoice_id)
    return InvoiceOut.model_validate(load_invoice_detail(engine, invoice_id))
