from datetime import date
from decimal import Decimal

import pytest

from app.services.calculator import DISCOUNT_PERCENTAGE, Discount, LineItem
from app.services.errors import InvalidSchedule, InvalidTransition, NotFound, ValidationError
from app.services.invoices import InvoiceService, get_invoice
from app.services.ledger import STATUS_DRAFT, STATUS_SENT
from app.services.terms import TermRequest

D = Decimal


def consulting(amount):
    return [LineItem("Consulting", D("1"), D(amount))]


class TestCreateInvoice:

    def test_computes_totals_and_starts_as_draft(self, invoice_service):
        invoice = invoice_service.create_invoice(
            client_id=1,
            items=[LineItem("Design", D("2"), D("100")), LineItem("Hosting", D("1"), D("50"))],
            invoice_date=date(2026, 1, 5),
            due_date=date(2026, 2, 5),
            tax_rate=D("10"),
        )

        assert invoice["status"] == STATUS_DRAFT
        assert invoice["subtotal"] == D("250")
        assert invoice["tax_amount"] == D("25")
        assert invoice["total_amount"] == D("275")
        assert invoice["remaining_balance"] == D("275")
        assert invoice["currency"] == "USD"
        assert [i["line_total"] for i in invoice["items"]] == [D("200"), D("50")]

    def test_numbers_run_per_month(self, invoice_service):
        numbers = [
            invoice_service.create_invoice(client_id=1, items=consulting("1"), invoice_date=d)["invoice_number"]
            for d in (date(2026, 1, 5), date(2026, 1, 20), date(2026, 2, 1))
        ]
        assert numbers == ["INV202601000001", "INV202601000002", "INV202602000001"]

    def test_duplicate_explicit_number(self, invoice_service):
        invoice_service.create_invoice(client_id=1, items=consulting("1"), invoice_number="A-1")
        with pytest.raises(ValidationError):
            invoice_service.create_invoice(client_id=1, items=consulting("1"), invoice_number="A-1")

    def test_requires_line_items(self, invoice_service):
        with pytest.raises(ValidationError):
            invoice_service.create_invoice(client_id=1, items=[])

    def test_due_date_defaults_to_payment_terms(self, invoice_service):
        invoice = invoice_service.create_invoice(
            client_id=1, items=consulting("1"), invoice_date=date(2026, 1, 5)
        )
        assert invoice["due_date"] == date(2026, 2, 4)

    def test_due_date_before_invoice_date(self, invoice_service):
        with pytest.raises(ValidationError):
            invoice_service.create_invoice(
                client_id=1,
                items=consulting("1"),
                invoice_date=date(2026, 1, 5),
                due_date=date(2026, 1, 4),
            )

    def test_client_must_exist(self, invoice_service):
        with pytest.raises(NotFound):
            invoice_service.create_invoice(client_id=0, items=consulting("1"))

    def test_project_must_belong_to_client(self, engine):
        class Directory:
            def client_exists(self, client_id):
                return True

            def project_exists(self, project_id, client_id):
                return (project_id, client_id) == (7, 1)

        service = InvoiceService(engine, clients=Directory())
        assert service.create_invoice(client_id=1, project_id=7, items=consulting("1"))["project_id"] == 7
        with pytest.raises(NotFound):
            service.create_invoice(client_id=2, project_id=7, items=consulting("1"))

    def test_with_terms(self, invoice_service):
        invoice = invoice_service.create_invoice(
            client_id=1,
            items=consulting("1000"),
            terms=[
                TermRequest(1, D("60"), date(2026, 2, 1), "Deposit"),
                TermRequest(2, D("40"), date(2026, 3, 1), "Balance"),
            ],
        )
        assert [t["amount"] for t in invoice["terms"]] == [D("600"), D("400")]
        assert invoice["terms_summary"]["total_terms"] == 2
        assert invoice["terms_summary"]["total_percentage"] == D("100")

    def test_bad_schedule_creates_nothing(self, invoice_service, engine):
        with pytest.raises(InvalidSchedule):
            invoice_service.create_invoice(
                client_id=1,
                items=consulting("1000"),
                invoice_number="X-1",
                terms=[TermRequest(1, D("60"), date(2026, 2, 1))],
            )
        # the number is free again because the whole insert rolled back
        invoice_service.create_invoice(client_id=1, items=consulting("1"), invoice_number="X-1")


class TestDraftOnlyChanges:

    def test_update_recomputes_totals_and_terms(self, make_invoice, invoice_service):
        invoice = make_invoice("1000", terms=[60, 40], send=False)

        updated = invoice_service.update_invoice(
            invoice["id"],
            {
                "items": consulting("500"),
                "discount": Discount(DISCOUNT_PERCENTAGE, D("10")),
                "notes": "Revised scope",
            },
        )

        assert updated["total_amount"] == D("450")
        assert updated["discount_amount"] == D("50")
        assert [t["amount"] for t in updated["terms"]] == [D("270"), D("180")]
        assert updated["notes"] == "Revised scope"
        assert updated["version"] == invoice["version"] + 1

    def test_update_keeps_stored_items(self, make_invoice, invoice_service):
        invoice = make_invoice("200", send=False)
        updated = invoice_service.update_invoice(invoice["id"], {"tax_rate": D("5")})
        assert updated["total_amount"] == D("210")
        assert len(updated["items"]) == 1

    def test_update_cannot_remove_every_item(self, make_invoice, invoice_service, engine):
        invoice = make_invoice("200", send=False)
        with pytest.raises(ValidationError):
            invoice_service.update_invoice(invoice["id"], {"items": []})
        assert len(get_invoice(engine, invoice["id"])["items"]) == 1

    def test_update_rejects_unknown_fields(self, make_invoice, invoice_service):
        invoice = make_invoice("200", send=False)
        with pytest.raises(ValidationError):
            invoice_service.update_invoice(invoice["id"], {"status": "paid"})

    def test_sent_invoice_is_immutable(self, make_invoice, invoice_service):
        invoice = make_invoice("200")
        with pytest.raises(InvalidTransition):
            invoice_service.update_invoice(invoice["id"], {"notes": "late edit"})
        with pytest.raises(InvalidTransition):
            invoice_service.delete_invoice(invoice["id"])
        with pytest.raises(InvalidTransition):
            invoice_service.set_invoice_terms(invoice["id"], [TermRequest(1, D("100"), date(2026, 2, 1))])

    def test_delete_draft(self, make_invoice, invoice_service, engine):
        invoice = make_invoice("200", terms=[100], send=False)
        invoice_service.delete_invoice(invoice["id"])
        with pytest.raises(NotFound):
            get_invoice(engine, invoice["id"])

    def test_set_terms_replaces_schedule(self, make_invoice, invoice_service):
        invoice = make_invoice("900", terms=[100], send=False)
        updated = invoice_service.set_invoice_terms(
            invoice["id"],
            [
                TermRequest(1, D("33.33"), date(2026, 2, 1)),
                TermRequest(2, D("33.33"), date(2026, 3, 1)),
                TermRequest(3, D("33.34"), date(2026, 4, 1)),
            ],
        )
        assert [t["amount"] for t in updated["terms"]] == [D("299.97"), D("299.97"), D("300.06")]

    def test_invalid_terms_keep_old_schedule(self, make_invoice, invoice_service, engine):
        invoice = make_invoice("900", terms=[50, 50], send=False)
        with pytest.raises(InvalidSchedule):
            invoice_service.set_invoice_terms(invoice["id"], [TermRequest(1, D("90"), date(2026, 2, 1))])
        assert len(get_invoice(engine, invoice["id"])["terms"]) == 2


class TestSendAndDetail:

    def test_send_once(self, make_invoice, invoice_service):
        invoice = make_invoice("100", send=False)
        sent = invoice_service.send_invoice(invoice["id"], as_of=date(2026, 1, 5))
        assert sent["status"] == STATUS_SENT
        with pytest.raises(InvalidTransition):
            invoice_service.send_invoice(invoice["id"])

    def test_payment_summary(self, make_invoice, ledger, engine):
        invoice = make_invoice("1000")
        ledger.apply_payment(invoice["id"], "250", "cash", payment_date=date(2026, 1, 10))

        summary = get_invoice(engine, invoice["id"], as_of=date(2026, 1, 10))["payment_summary"]
        assert summary["paid_amount"] == D("250")
        assert summary["remaining_balance"] == D("750")
        assert summary["payment_percentage"] == D("25")
        assert summary["is_partially_paid"] is True
        assert summary["is_fully_paid"] is False
