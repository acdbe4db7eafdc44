# app/db/schema.py

from sqlalchemy import (
    MetaData, Table, Column, Integer, String,
    Numeric, Date, DateTime, ForeignKey, CheckConstraint, Text,
    UniqueConstraint, func, select,
)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String, nullable=False, unique=True),
    Column("name", String, nullable=False),
    Column("type", String, nullable=False),
    CheckConstraint("type IN ('income', 'expense')", name="ck_accounts_type"),
)

invoices = Table(
    "invoices",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_number", Text, unique=True, nullable=False),
    Column("client_id", Integer, nullable=False, index=True),
    Column("project_id", Integer, nullable=True),
    Column("invoice_date", Date, nullable=False),
    Column("due_date", Date, nullable=False, index=True),
    Column("currency", Text, nullable=False),
    Column("tax_rate", Numeric(7, 4), nullable=False),
    Column("discount_type", Text),
    Column("discount_value", Numeric(18, 2)),
    Column("subtotal", Numeric(18, 2), nullable=False),
    Column("discount_amount", Numeric(18, 2), nullable=False),
    Column("tax_amount", Numeric(18, 2), nullable=False),
    Column("total_amount", Numeric(18, 2), nullable=False),
    Column("status", Text, nullable=False, index=True),
    Column("notes", Text),
    # bumped by every write that changes the invoice's balance or status
    Column("version", Integer, nullable=False, default=1),
    Column("created_at", DateTime, server_default=func.now()),
    CheckConstraint("total_amount >= 0", name="ck_invoices_total_nonneg"),
    CheckConstraint(
        "status IN ('draft', 'sent', 'paid', 'cancelled')",
        name="ck_invoices_status",
    ),
)

invoice_items = Table(
    "invoice_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "invoice_id",
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("description", Text, nullable=False),
    Column("quantity", Numeric(18, 2), nullable=False),
    Column("unit_price", Numeric(18, 2), nullable=False),
    Column("tax_rate", Numeric(7, 4)),
    Column("line_total", Numeric(18, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_invoice_items_quantity_pos"),
    CheckConstraint("unit_price >= 0", name="ck_invoice_items_price_nonneg"),
)

invoice_terms = Table(
    "invoice_terms",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "invoice_id",
        Integer,
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("term_number", Integer, nullable=False),
    Column("percentage", Numeric(7, 4), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("due_date", Date, nullable=False),
    Column("description", Text),
    Column("status", Text, nullable=False),
    UniqueConstraint("invoice_id", "term_number", name="uq_invoice_terms_number"),
    CheckConstraint("status IN ('pending', 'paid')", name="ck_invoice_terms_status"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False, index=True),
    Column(
        "term_id",
        Integer,
        ForeignKey("invoice_terms.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    ),
    # positive for payments, negative for refund counter-entries
    Column("amount", Numeric(18, 2), nullable=False),
    Column("payment_date", Date, nullable=False, index=True),
    Column("method", Text, nullable=False),
    Column("reference_number", Text),
    Column("notes", Text),
    Column("refund_of_id", Integer, ForeignKey("payments.id"), nullable=True, index=True),
    Column("refund_reason", Text),
    Column("created_at", DateTime, server_default=func.now()),
    CheckConstraint(
        "(refund_of_id IS NULL AND amount > 0) OR (refund_of_id IS NOT NULL AND amount < 0)",
        name="ck_payments_amount_sign",
    ),
)

credit_notes = Table(
    "credit_notes",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("credit_note_number", Text, unique=True, nullable=False),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=False, index=True),
    Column("payment_id", Integer, ForeignKey("payments.id"), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("reason", Text, nullable=False),
    Column("status", Text, nullable=False),
    Column("issued_date", Date, nullable=False),
    CheckConstraint("amount > 0", name="ck_credit_notes_amount_pos"),
)

finance_transactions = Table(
    "finance_transactions",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("invoice_id", Integer, ForeignKey("invoices.id"), nullable=True),
    Column("payment_id", Integer, ForeignKey("payments.id"), nullable=True),
    Column("type", Text, nullable=False, index=True),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("transaction_date", Date, nullable=False, index=True),
    Column("description", Text, nullable=False),
    CheckConstraint("type IN ('income', 'expense')", name="ck_finance_transactions_type"),
    CheckConstraint("amount > 0", name="ck_finance_transactions_amount_pos"),
)


DEFAULT_ACCOUNTS = [
    {"code": "4000", "name": "Sales Income", "type": "income"},
    {"code": "5000", "name": "Refunds", "type": "expense"},
]


def seed_default_accounts(conn) -> None:
    """Insert the income/expense accounts the ledger posts to, if missing."""
    existing = set(conn.execute(select(accounts.c.code)).scalars().all())
    rows = [a for a in DEFAULT_ACCOUNTS if a["code"] not in existing]
    if rows:
        conn.execute(accounts.insert(), rows)
