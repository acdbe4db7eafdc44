# scripts/import_payments.py

import csv
import logging
import sys
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select

from app.db.engine import get_engine
from app.db.schema import invoice_terms, invoices
from app.services.errors import BillingError
from app.services.ledger import PaymentLedger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

FILE_PATH = "data/payments.csv"

METHOD_ALIASES = {
    "transfer": "bank_transfer",
    "bank transfer": "bank_transfer",
    "credit card": "card",
    "debit card": "card",
    "credit_card": "card",
    "debit_card": "card",
}


# ---- Helpers ----

def parse_money(value: str) -> Decimal:
    value = value.strip().replace(",", "")
    if value == "":
        return Decimal("0")
    return Decimal(value)


def parse_payment_date(value: str):
    value = value.strip()
    if not value:
        return None
    value = value.split()[0]
    for fmt in ("%Y-%m-%d", "%m/%d/%y", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised payment date {value!r}")


def parse_method(value: str) -> str:
    method = (value or "").strip().lower()
    return METHOD_ALIASES.get(method, method.replace(" ", "_") or "other")


def parse_payments_csv(file_path: str = FILE_PATH):
    """
    Read payment rows into dicts ready for the ledger.

    Rows that repeat an earlier Reference are dropped so a re-exported file
    cannot record the same payment twice.
    """
    rows = []
    n_rows = 0
    n_errors = 0
    error_examples = []

    seen_references: set[str] = set()
    duplicate_examples: list[str] = []
    duplicate_count = 0

    with open(file_path, newline="") as f:
        reader = csv.DictReader(f)

        for row in reader:
            n_rows += 1

            try:
                reference = (row.get("Reference") or "").strip() or None
                if reference is not None:
                    if reference in seen_references:
                        duplicate_count += 1
                        if len(duplicate_examples) < 5:
                            duplicate_examples.append(
                                f"Duplicate Reference {reference!r} at CSV row {n_rows}"
                            )
                        continue
                    seen_references.add(reference)

                term_number = (row.get("TermNumber") or "").strip()
                rows.append(
                    {
                        "row_number": n_rows,
                        "invoice_number": row["InvoiceNumber"].strip(),
                        "amount": parse_money(row["Amount"]),
                        "payment_date": parse_payment_date(row.get("PaymentDate") or ""),
                        "method": parse_method(row.get("Method") or ""),
                        "reference_number": reference,
                        "term_number": int(term_number) if term_number else None,
                    }
                )
            except (KeyError, ValueError, ArithmeticError) as e:
                n_errors += 1
                if len(error_examples) < 5:
                    error_examples.append(
                        {
                            "row_number": n_rows,
                            "row": dict(row),
                            "error": repr(e),
                        }
                    )

    stats = {
        "n_rows": n_rows,
        "n_parsed": len(rows),
        "n_errors": n_errors,
        "error_examples": error_examples,
        "n_duplicate_references": duplicate_count,
        "duplicate_reference_examples": duplicate_examples,
    }
    return rows, stats


def _resolve_ids(conn, payment_row: dict):
    invoice_id = conn.execute(
        select(invoices.c.id).where(invoices.c.invoice_number == payment_row["invoice_number"])
    ).scalar()
    if invoice_id is None or payment_row["term_number"] is None:
        return invoice_id, None

    term_id = conn.execute(
        select(invoice_terms.c.id).where(
            invoice_terms.c.invoice_id == invoice_id,
            invoice_terms.c.term_number == payment_row["term_number"],
        )
    ).scalar()
    return invoice_id, term_id


def apply_payments(payment_rows, engine=None):
    """Apply each parsed row through the ledger; one row failing never stops the rest."""
    engine = engine or get_engine()
    ledger = PaymentLedger(engine)

    applied = 0
    rejected = []

    for p in payment_rows:
        with engine.connect() as conn:
            invoice_id, term_id = _resolve_ids(conn, p)

        if invoice_id is None:
            rejected.append((p["row_number"], f"Unknown invoice {p['invoice_number']!r}"))
            continue
        if p["term_number"] is not None and term_id is None:
            rejected.append(
                (p["row_number"], f"Unknown term {p['term_number']} on {p['invoice_number']}")
            )
            continue

        try:
            ledger.apply_payment(
                invoice_id=invoice_id,
                amount=p["amount"],
                method=p["method"],
                payment_date=p["payment_date"],
                term_id=term_id,
                reference_number=p["reference_number"],
                notes="Imported from CSV",
            )
            applied += 1
        except BillingError as e:
            rejected.append((p["row_number"], e.message))

    return applied, rejected


def main(file_path: str = FILE_PATH):
    payment_rows, stats = parse_payments_csv(file_path)
    applied, rejected = apply_payments(payment_rows)

    logger.info("Total CSV rows read:   %s", stats["n_rows"])
    logger.info("Payments parsed:       %s", stats["n_parsed"])
    logger.info("Payments applied:      %s", applied)
    logger.info("Payments rejected:     %s", len(rejected))
    logger.info("Rows with errors:      %s", stats["n_errors"])
    logger.info(
        "Duplicate payments (by Reference): %s",
        stats["n_duplicate_references"],
    )
    for example in stats["duplicate_reference_examples"]:
        logger.warning("Duplicate payment example: %s", example)

    for row_number, reason in rejected[:5]:
        logger.warning("Row %s rejected: %s", row_number, reason)

    if stats["error_examples"]:
        logger.warning("Example errors:")
        for ex in stats["error_examples"]:
            logger.warning("Row %s: %s", ex["row_number"], ex["error"])


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else FILE_PATH)
