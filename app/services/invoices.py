# app/services/invoices.py

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from app.config import get_settings
from app.db.schema import invoice_items, invoice_terms, invoices, payments
from app.services.calculator import (
    Discount,
    InvoiceTotals,
    LineItem,
    calculate_totals,
)
from app.services.errors import InvalidTransition, NotFound, ValidationError
from app.services.ledger import (
    STATUS_DRAFT,
    STATUS_SENT,
    AtomicInvoiceWriter,
    bump_version,
    invoice_paid_amount,
    invoice_status_as_of,
    load_invoice,
    term_paid_amount,
    today,
)
from app.services.money import Money
from app.services.numbering import INVOICE_PREFIX, next_document_number
from app.services.terms import (
    TERM_OVERDUE,
    TERM_PAID,
    TERM_PENDING,
    TermRequest,
    schedule_terms,
    term_status_as_of,
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "invoice_date", "due_date", "project_id", "tax_rate", "discount", "items", "notes",
}


class ClientDirectory(Protocol):
    def client_exists(self, client_id: int) -> bool: ...

    def project_exists(self, project_id: int, client_id: int) -> bool: ...


class AnyPositiveId:
    """Client directory used when the surrounding app does not provide one."""

    def client_exists(self, client_id: int) -> bool:
        return client_id > 0

    def project_exists(self, project_id: int, client_id: int) -> bool:
        return project_id > 0


# ---- Row helpers ----

def _insert_items(conn, invoice_id: int, totals: InvoiceTotals) -> None:
    if not totals.lines:
        return
    conn.execute(
        invoice_items.insert(),
        [
            {
                "invoice_id": invoice_id,
                "position": line.position,
                "description": line.description,
                "quantity": line.quantity,
                "unit_price": line.unit_price,
                "tax_rate": line.tax_rate,
                "line_total": line.line_total.amount,
            }
            for line in totals.lines
        ],
    )


def _insert_terms(conn, invoice_id: int, total: Money, requests: Sequence[TermRequest]) -> None:
    scheduled = schedule_terms(total, requests)
    conn.execute(
        invoice_terms.insert(),
        [
            {
                "invoice_id": invoice_id,
                "term_number": t.term_number,
                "percentage": t.percentage,
                "amount": t.amount.amount,
                "due_date": t.due_date,
                "description": t.description,
                "status": t.status,
            }
            for t in scheduled
        ],
    )


def _stored_items(conn, invoice_id: int) -> List[LineItem]:
    rows = conn.execute(
        select(invoice_items)
        .where(invoice_items.c.invoice_id == invoice_id)
        .order_by(invoice_items.c.position)
    ).mappings().all()
    return [
        LineItem(
            description=row["description"],
            quantity=row["quantity"],
            unit_price=row["unit_price"],
            tax_rate=row["tax_rate"],
        )
        for row in rows
    ]


def _stored_term_requests(conn, invoice_id: int) -> List[TermRequest]:
    rows = conn.execute(
        select(invoice_terms)
        .where(invoice_terms.c.invoice_id == invoice_id)
        .order_by(invoice_terms.c.term_number)
    ).mappings().all()
    return [
        TermRequest(
            term_number=row["term_number"],
            percentage=row["percentage"],
            due_date=row["due_date"],
            description=row["description"],
        )
        for row in rows
    ]


def _stored_discount(invoice_row) -> Optional[Discount]:
    if invoice_row["discount_type"] is None:
        return None
    return Discount(kind=invoice_row["discount_type"], value=invoice_row["discount_value"])


def _totals_columns(totals: InvoiceTotals) -> Dict[str, Any]:
    return {
        "subtotal": totals.subtotal.amount,
        "discount_amount": totals.discount_amount.amount,
        "tax_amount": totals.tax_amount.amount,
        "total_amount": totals.total_amount.amount,
    }


def _require_draft(invoice_row, action: str) -> None:
    if invoice_row["status"] != STATUS_DRAFT:
        raise InvalidTransition(
            f"Cannot {action} a {invoice_row['status']} invoice; only drafts can change",
            current_status=invoice_row["status"],
        )


# ---- Read side ----

def invoice_detail(conn, invoice_id: int, as_of: Optional[date] = None) -> Dict[str, Any]:
    """Invoice with items, terms, payments and derived balances/statuses."""
    as_of = as_of or today()
    invoice = load_invoice(conn, invoice_id)

    total = Money.of(invoice["total_amount"])
    paid = invoice_paid_amount(conn, invoice_id)
    remaining = total - paid

    items = conn.execute(
        select(invoice_items)
        .where(invoice_items.c.invoice_id == invoice_id)
        .order_by(invoice_items.c.position)
    ).mappings().all()

    term_rows = conn.execute(
        select(invoice_terms)
        .where(invoice_terms.c.invoice_id == invoice_id)
        .order_by(invoice_terms.c.term_number)
    ).mappings().all()

    terms = []
    for row in term_rows:
        term_paid = term_paid_amount(conn, row["id"])
        term = dict(row)
        term["status"] = term_status_as_of(row["status"], row["due_date"], as_of)
        term["paid_amount"] = term_paid.amount
        term["remaining_balance"] = (Money.of(row["amount"]) - term_paid).amount
        terms.append(term)

    payment_rows = conn.execute(
        select(payments)
        .where(payments.c.invoice_id == invoice_id)
        .order_by(payments.c.payment_date, payments.c.id)
    ).mappings().all()

    if total.is_zero():
        payment_percentage = Money.zero()
    else:
        payment_percentage = paid.scale(100, total.amount)

    detail = dict(invoice)
    detail["status"] = invoice_status_as_of(
        invoice["status"], invoice["due_date"], total, paid, as_of
    )
    detail["paid_amount"] = paid.amount
    detail["remaining_balance"] = remaining.amount
    detail["items"] = [dict(row) for row in items]
    detail["terms"] = terms
    detail["payments"] = [dict(row) for row in payment_rows]
    detail["payment_summary"] = {
        "paid_amount": paid.amount,
        "remaining_balance": remaining.amount,
        "payment_percentage": payment_percentage.amount,
        "is_fully_paid": not total.is_zero() and paid >= total,
        "is_partially_paid": not paid.is_zero() and paid < total,
    }
    detail["terms_summary"] = {
        "total_terms": len(terms),
        "total_percentage": sum((t["percentage"] for t in terms), Decimal("0")),
        "paid_terms": sum(1 for t in terms if t["status"] == TERM_PAID),
        "pending_terms": sum(1 for t in terms if t["status"] == TERM_PENDING),
        "overdue_terms": sum(1 for t in terms if t["status"] == TERM_OVERDUE),
    }
    return detail


def get_invoice(engine: Engine, invoice_id: int, as_of: Optional[date] = None) -> Dict[str, Any]:
    with engine.connect() as conn:
        return invoice_detail(conn, invoice_id, as_of)


# ---- Write side ----

class InvoiceService(AtomicInvoiceWriter):

    def __init__(self, engine: Engine, clients: Optional[ClientDirectory] = None, **kwargs):
        super().__init__(engine, **kwargs)
        self.clients = clients or AnyPositiveId()

    def _check_references(self, client_id: int, project_id: Optional[int]) -> None:
        if not self.clients.client_exists(client_id):
            raise NotFound(f"Client {client_id} not found")
        if project_id is not None and not self.clients.project_exists(project_id, client_id):
            raise NotFound(f"Project {project_id} not found for client {client_id}")

    def create_invoice(
        self,
        client_id: int,
        items: Sequence[LineItem],
        invoice_date: Optional[date] = None,
        due_date: Optional[date] = None,
        project_id: Optional[int] = None,
        tax_rate=0,
        discount: Optional[Discount] = None,
        notes: Optional[str] = None,
        invoice_number: Optional[str] = None,
        currency: Optional[str] = None,
        terms: Optional[Sequence[TermRequest]] = None,
    ) -> Dict[str, Any]:
        """Create a draft invoice with computed totals and, optionally, its terms."""
        if not items:
            raise ValidationError("An invoice needs at least one line item")
        settings = get_settings()
        self._check_references(client_id, project_id)

        invoice_date = invoice_date or today()
        due_date = due_date or invoice_date + timedelta(days=settings.DEFAULT_PAYMENT_TERMS_DAYS)
        if due_date < invoice_date:
            raise ValidationError("Due date cannot be before the invoice date")

        totals = calculate_totals(items, tax_rate, discount)

        for attempt in range(1, self.max_attempts + 1):
            try:
                with self.engine.begin() as conn:
                    number = invoice_number or next_document_number(
                        conn, invoices.c.invoice_number, INVOICE_PREFIX, invoice_date
                    )
                    invoice_id = conn.execute(
                        invoices.insert().values(
                            invoice_number=number,
                            client_id=client_id,
                            project_id=project_id,
                            invoice_date=invoice_date,
                            due_date=due_date,
                            currency=currency or settings.DEFAULT_CURRENCY,
                            tax_rate=tax_rate,
                            discount_type=discount.kind if discount else None,
                            discount_value=discount.value if discount else None,
                            status=STATUS_DRAFT,
                            notes=notes,
                            version=1,
                            **_totals_columns(totals),
                        )
                    ).inserted_primary_key[0]
                    _insert_items(conn, invoice_id, totals)
                    if terms:
                        _insert_terms(conn, invoice_id, totals.total_amount, terms)
                    detail = invoice_detail(conn, invoice_id)
                break
            except IntegrityError:
                # a caller-supplied duplicate number will never succeed
                if invoice_number or attempt == self.max_attempts:
                    raise ValidationError(
                        f"Invoice number {invoice_number or number} already exists"
                    )
                logger.warning("Invoice number %s taken, retrying", number)

        logger.info(
            "Invoice %s created for client %s (total %s)",
            detail["invoice_number"], client_id, totals.total_amount,
        )
        return detail

    def update_invoice(self, invoice_id: int, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Apply patch to a draft invoice, recomputing totals and term amounts."""
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "items" in patch and not patch["items"]:
            raise ValidationError("An invoice needs at least one line item")

        def work(conn) -> Dict[str, Any]:
            invoice = load_invoice(conn, invoice_id)
            _require_draft(invoice, "update")

            invoice_date = patch.get("invoice_date") or invoice["invoice_date"]
            due_date = patch.get("due_date") or invoice["due_date"]
            if due_date < invoice_date:
                raise ValidationError("Due date cannot be before the invoice date")

            if "project_id" in patch and patch["project_id"] is not None:
                self._check_references(invoice["client_id"], patch["project_id"])

            items = patch["items"] if "items" in patch else _stored_items(conn, invoice_id)
            tax_rate = patch["tax_rate"] if patch.get("tax_rate") is not None else invoice["tax_rate"]
            discount = patch["discount"] if "discount" in patch else _stored_discount(invoice)
            totals = calculate_totals(items, tax_rate, discount)

            values = dict(
                invoice_date=invoice_date,
                due_date=due_date,
                tax_rate=tax_rate,
                discount_type=discount.kind if discount else None,
                discount_value=discount.value if discount else None,
                **_totals_columns(totals),
            )
            if "project_id" in patch:
                values["project_id"] = patch["project_id"]
            if "notes" in patch:
                values["notes"] = patch["notes"]
            bump_version(conn, invoice, **values)

            if "items" in patch:
                conn.execute(invoice_items.delete().where(invoice_items.c.invoice_id == invoice_id))
                _insert_items(conn, invoice_id, totals)

            requests = _stored_term_requests(conn, invoice_id)
            if requests:
                conn.execute(invoice_terms.delete().where(invoice_terms.c.invoice_id == invoice_id))
                _insert_terms(conn, invoice_id, totals.total_amount, requests)

            return invoice_detail(conn, invoice_id)

        detail = self.run(invoice_id, "update_invoice", work)
        logger.info("Invoice %s updated", detail["invoice_number"])
        return detail

    def set_invoice_terms(self, invoice_id: int, requests: Sequence[TermRequest]) -> Dict[str, Any]:
        """Replace a draft invoice's payment schedule."""

        def work(conn) -> Dict[str, Any]:
            invoice = load_invoice(conn, invoice_id)
            _require_draft(invoice, "reschedule")
            bump_version(conn, invoice)
            conn.execute(invoice_terms.delete().where(invoice_terms.c.invoice_id == invoice_id))
            _insert_terms(conn, invoice_id, Money.of(invoice["total_amount"]), requests)
            return invoice_detail(conn, invoice_id)

        detail = self.run(invoice_id, "set_invoice_terms", work)
        logger.info("Invoice %s scheduled into %s term(s)", invoice_id, len(requests))
        return detail

    def delete_invoice(self, invoice_id: int) -> None:
        def work(conn) -> None:
            invoice = load_invoice(conn, invoice_id)
            _require_draft(invoice, "delete")
            bump_version(conn, invoice)
            conn.execute(invoice_items.delete().where(invoice_items.c.invoice_id == invoice_id))
            conn.execute(invoice_terms.delete().where(invoice_terms.c.invoice_id == invoice_id))
            conn.execute(invoices.delete().where(invoices.c.id == invoice_id))

        self.run(invoice_id, "delete_invoice", work)
        logger.info("Invoice %s deleted", invoice_id)

    def send_invoice(self, invoice_id: int, as_of: Optional[date] = None) -> Dict[str, Any]:
        """Finalize a draft: its items and terms become immutable."""

        def work(conn) -> Dict[str, Any]:
            invoice = load_invoice(conn, invoice_id)
            _require_draft(invoice, "send")
            bump_version(conn, invoice, status=STATUS_SENT)
            return invoice_detail(conn, invoice_id, as_of)

        detail = self.run(invoice_id, "send_invoice", work)
        logger.info("Invoice %s sent", detail["invoice_number"])
        return detail
