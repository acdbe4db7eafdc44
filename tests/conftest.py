"""
Shared fixtures.

Every test gets its own file-backed SQLite database so concurrent tests can
open several connections against the same data.
"""

from datetime import date
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from app.db.engine import build_engine, get_engine
from app.db.schema import metadata, seed_default_accounts
from app.main import app
from app.services.calculator import LineItem
from app.services.invoices import InvoiceService
from app.services.ledger import PaymentLedger
from app.services.refunds import RefundProcessor
from app.services.terms import TermRequest

INVOICE_DATE = date(2026, 1, 1)
DUE_DATE = date(2026, 1, 31)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.sqlite'}")
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_default_accounts(conn)
    yield engine
    engine.dispose()


@pytest.fixture
def invoice_service(engine):
    return InvoiceService(engine, backoff=0)


@pytest.fixture
def ledger(engine):
    return PaymentLedger(engine, backoff=0)


@pytest.fixture
def refunds(engine):
    return RefundProcessor(engine, backoff=0)


@pytest.fixture
def make_invoice(invoice_service):
    """
    Factory for a single-line invoice worth ``total``.

    ``terms`` is a list of percentages; each term falls due a month after the
    previous one. The invoice is sent unless ``send=False``.
    """

    def _make(total="1000", terms=None, send=True, client_id=1, invoice_date=INVOICE_DATE,
              due_date=DUE_DATE):
        requests = None
        if terms:
            requests = [
                TermRequest(
                    term_number=i,
                    percentage=Decimal(str(pct)),
                    due_date=date(2026, i, 28),
                    description=f"Installment {i}",
                )
                for i, pct in enumerate(terms, start=1)
            ]
        invoice = invoice_service.create_invoice(
            client_id=client_id,
            items=[LineItem("Consulting", Decimal("1"), Decimal(total))],
            invoice_date=invoice_date,
            due_date=due_date,
            terms=requests,
        )
        if send:
            invoice = invoice_service.send_invoice(invoice["id"])
        return invoice

    return _make


@pytest.fixture
def client(engine):
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
