from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.db.schema import finance_transactions
from app.services.errors import (
    InvalidTransition,
    LedgerContention,
    NotFound,
    OverpaymentRejected,
    ValidationError,
)
from app.services.invoices import get_invoice
from app.services.ledger import (
    STATUS_CANCELLED,
    STATUS_OVERDUE,
    STATUS_PAID,
    STATUS_SENT,
    AtomicInvoiceWriter,
    StaleInvoice,
    bump_version,
    invoice_status_as_of,
    load_invoice,
)
from app.services.money import Money
from app.services.terms import TERM_OVERDUE, TERM_PAID, TERM_PENDING

PAID_ON = date(2026, 1, 10)


class TestApplyPayment:

    def test_term_payment_then_invoice_overpayment(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000", terms=[60, 40])
        term1, term2 = invoice["terms"]
        assert Decimal(term1["amount"]) == Decimal("600")
        assert Decimal(term2["amount"]) == Decimal("400")

        result = ledger.apply_payment(
            invoice["id"], Decimal("600"), "bank_transfer", payment_date=PAID_ON, term_id=term1["id"]
        )
        assert result.term_status == TERM_PAID
        assert result.invoice_status == STATUS_SENT
        assert result.remaining == Money("400")

        with pytest.raises(OverpaymentRejected) as exc:
            ledger.apply_payment(invoice["id"], Decimal("450"), "cash", payment_date=PAID_ON)
        assert exc.value.remaining == Decimal("400.00")
        assert exc.value.scope == "invoice"

        detail = get_invoice(engine, invoice["id"], as_of=date(2026, 1, 15))
        assert [t["status"] for t in detail["terms"]] == [TERM_PAID, TERM_PENDING]
        assert detail["paid_amount"] == Decimal("600")

    def test_paying_remaining_balance_marks_invoice_paid(self, make_invoice, ledger):
        invoice = make_invoice("1000")
        ledger.apply_payment(invoice["id"], "400", "cash", payment_date=PAID_ON)
        result = ledger.apply_payment(invoice["id"], "600", "card", payment_date=PAID_ON)

        assert result.invoice_status == STATUS_PAID
        assert result.remaining.is_zero()

    def test_paid_invoice_rejects_any_further_payment(self, make_invoice, ledger):
        invoice = make_invoice("100")
        ledger.apply_payment(invoice["id"], "100", "cash", payment_date=PAID_ON)

        with pytest.raises(OverpaymentRejected) as exc:
            ledger.apply_payment(invoice["id"], "0.01", "cash", payment_date=PAID_ON)
        assert exc.value.remaining == Decimal("0")

    def test_term_scoped_overpayment(self, make_invoice, ledger):
        invoice = make_invoice("1000", terms=[60, 40])
        term2 = invoice["terms"][1]

        with pytest.raises(OverpaymentRejected) as exc:
            ledger.apply_payment(
                invoice["id"], "400.01", "cash", payment_date=PAID_ON, term_id=term2["id"]
            )
        assert exc.value.scope == "term"
        assert exc.value.remaining == Decimal("400.00")

    def test_partial_term_payment_leaves_term_pending(self, make_invoice, ledger):
        invoice = make_invoice("1000", terms=[60, 40])
        term1 = invoice["terms"][0]

        result = ledger.apply_payment(
            invoice["id"], "100", "check", payment_date=PAID_ON, term_id=term1["id"]
        )
        assert result.term_status == TERM_PENDING

    def test_term_from_another_invoice(self, make_invoice, ledger):
        first = make_invoice("1000", terms=[50, 50])
        second = make_invoice("1000")

        with pytest.raises(NotFound):
            ledger.apply_payment(
                second["id"], "10", "cash", payment_date=PAID_ON, term_id=first["terms"][0]["id"]
            )

    def test_unknown_invoice(self, ledger):
        with pytest.raises(NotFound):
            ledger.apply_payment(999, "10", "cash", payment_date=PAID_ON)

    @pytest.mark.parametrize("amount", ["0", "-5", "0.001"])
    def test_amount_must_be_positive(self, make_invoice, ledger, amount):
        invoice = make_invoice("1000")
        with pytest.raises(ValidationError):
            ledger.apply_payment(invoice["id"], amount, "cash", payment_date=PAID_ON)

    def test_fractions_of_a_cent_are_refused_not_rounded(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000")
        with pytest.raises(ValidationError):
            ledger.apply_payment(invoice["id"], "10.005", "cash", payment_date=PAID_ON)
        assert get_invoice(engine, invoice["id"])["payments"] == []

    def test_unknown_method(self, make_invoice, ledger):
        invoice = make_invoice("1000")
        with pytest.raises(ValidationError):
            ledger.apply_payment(invoice["id"], "10", "bitcoin", payment_date=PAID_ON)

    def test_draft_invoice_cannot_be_paid(self, make_invoice, ledger):
        invoice = make_invoice("1000", send=False)
        with pytest.raises(InvalidTransition) as exc:
            ledger.apply_payment(invoice["id"], "10", "cash", payment_date=PAID_ON)
        assert exc.value.current_status == "draft"

    def test_cancelled_invoice_cannot_be_paid(self, make_invoice, ledger):
        invoice = make_invoice("1000")
        ledger.cancel_invoice(invoice["id"])
        with pytest.raises(InvalidTransition):
            ledger.apply_payment(invoice["id"], "10", "cash", payment_date=PAID_ON)

    def test_posts_income_transaction(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000")
        result = ledger.apply_payment(invoice["id"], "250", "cash", payment_date=PAID_ON)

        with engine.connect() as conn:
            row = conn.execute(
                select(finance_transactions)
                .where(finance_transactions.c.payment_id == result.payment["id"])
            ).mappings().one()
        assert row["type"] == "income"
        assert row["amount"] == Decimal("250")
        assert row["transaction_date"] == PAID_ON

    def test_each_write_bumps_version(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000")
        assert invoice["version"] == 2  # created, then sent

        ledger.apply_payment(invoice["id"], "10", "cash", payment_date=PAID_ON)
        assert get_invoice(engine, invoice["id"])["version"] == 3


class TestCancelInvoice:

    def test_cancel_draft_and_sent(self, make_invoice, ledger):
        assert ledger.cancel_invoice(make_invoice("10", send=False)["id"]) == STATUS_CANCELLED
        assert ledger.cancel_invoice(make_invoice("10")["id"]) == STATUS_CANCELLED

    def test_cannot_cancel_with_payments(self, make_invoice, ledger):
        invoice = make_invoice("1000")
        ledger.apply_payment(invoice["id"], "10", "cash", payment_date=PAID_ON)
        with pytest.raises(InvalidTransition):
            ledger.cancel_invoice(invoice["id"])

    def test_cannot_cancel_paid_or_cancelled(self, make_invoice, ledger):
        paid = make_invoice("10")
        ledger.apply_payment(paid["id"], "10", "cash", payment_date=PAID_ON)
        with pytest.raises(InvalidTransition) as exc:
            ledger.cancel_invoice(paid["id"])
        assert exc.value.current_status == STATUS_PAID

        cancelled = make_invoice("10")
        ledger.cancel_invoice(cancelled["id"])
        with pytest.raises(InvalidTransition):
            ledger.cancel_invoice(cancelled["id"])


class TestOverdueDerivation:

    def test_status_as_of(self):
        due = date(2026, 1, 31)
        total = Money("100")
        assert invoice_status_as_of(STATUS_SENT, due, total, Money("0"), date(2026, 2, 1)) == STATUS_OVERDUE
        assert invoice_status_as_of(STATUS_SENT, due, total, Money("0"), due) == STATUS_SENT
        assert invoice_status_as_of(STATUS_SENT, due, total, total, date(2026, 2, 1)) == STATUS_SENT
        assert invoice_status_as_of("draft", due, total, Money("0"), date(2026, 2, 1)) == "draft"

    def test_invoice_and_terms_read_overdue(self, make_invoice, engine):
        invoice = make_invoice("1000", terms=[60, 40])

        on_time = get_invoice(engine, invoice["id"], as_of=date(2026, 1, 20))
        assert on_time["status"] == STATUS_SENT
        assert on_time["terms_summary"]["overdue_terms"] == 0

        late = get_invoice(engine, invoice["id"], as_of=date(2026, 2, 1))
        assert late["status"] == STATUS_OVERDUE
        assert [t["status"] for t in late["terms"]] == [TERM_OVERDUE, TERM_PENDING]
        assert late["terms_summary"]["overdue_terms"] == 1

    def test_paid_invoice_never_reads_overdue(self, make_invoice, ledger, engine):
        invoice = make_invoice("100")
        ledger.apply_payment(invoice["id"], "100", "cash", payment_date=PAID_ON)

        assert get_invoice(engine, invoice["id"], as_of=date(2027, 1, 1))["status"] == STATUS_PAID


class TestAtomicWriter:

    def test_stale_version_is_replayed(self, engine):
        writer = AtomicInvoiceWriter(engine, max_attempts=3, backoff=0)
        calls = []

        def work(conn):
            calls.append(1)
            if len(calls) < 3:
                raise StaleInvoice(1)
            return "done"

        assert writer.run(1, "test", work) == "done"
        assert len(calls) == 3

    def test_exhausted_retries_raise_contention(self, engine):
        writer = AtomicInvoiceWriter(engine, max_attempts=2, backoff=0)

        def work(conn):
            raise OperationalError("UPDATE invoices", {}, Exception("database is locked"))

        with pytest.raises(LedgerContention) as exc:
            writer.run(1, "test", work)
        assert exc.value.attempts == 2

    def test_other_database_errors_propagate(self, engine):
        writer = AtomicInvoiceWriter(engine, max_attempts=5, backoff=0)
        calls = []

        def work(conn):
            calls.append(1)
            raise OperationalError("SELECT", {}, Exception("no such table: invoices"))

        with pytest.raises(OperationalError):
            writer.run(1, "test", work)
        assert len(calls) == 1

    def test_compare_and_swap_rejects_stale_row(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000")
        with engine.connect() as conn:
            stale = load_invoice(conn, invoice["id"])

        ledger.apply_payment(invoice["id"], "10", "cash", payment_date=PAID_ON)

        with engine.begin() as conn:
            with pytest.raises(StaleInvoice):
                bump_version(conn, stale)
