# app/services/errors.py
"""
Typed errors raised by the billing core.

Every error carries a machine-readable ``code`` and a structured ``detail()``
so the HTTP layer can translate it without parsing messages:

    BillingError
    +-- ValidationError          malformed input (422)
    |   +-- InvalidItem
    |   +-- InvalidDiscount
    |   +-- InvalidSchedule
    +-- NotFound                 missing invoice/term/payment (404)
    +-- InvalidTransition        status-guarded operation from the wrong state (422)
    +-- OverpaymentRejected      amount exceeds the remaining balance (422)
    +-- RefundNotEligible        payment cannot be refunded by that amount (422)
    +-- LedgerContention         retries exhausted under concurrent writers (409)
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class BillingError(Exception):
    code = "billing_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(BillingError):
    code = "validation_error"


class InvalidItem(ValidationError):
    code = "invalid_item"

    def __init__(self, message: str, position: Optional[int] = None):
        super().__init__(message)
        self.position = position

    def detail(self) -> Dict[str, Any]:
        data = super().detail()
        if self.position is not None:
            data["position"] = self.position
        return data


class InvalidDiscount(ValidationError):
    code = "invalid_discount"


class InvalidSchedule(ValidationError):
    code = "invalid_schedule"


class NotFound(BillingError):
    code = "not_found"


class InvalidTransition(BillingError):
    code = "invalid_transition"

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status

    def detail(self) -> Dict[str, Any]:
        data = super().detail()
        data["current_status"] = self.current_status
        return data


class OverpaymentRejected(BillingError):
    code = "overpayment_rejected"

    def __init__(self, message: str, remaining: Decimal, scope: str = "invoice"):
        super().__init__(message)
        self.remaining = remaining
        self.scope = scope

    def detail(self) -> Dict[str, Any]:
        data = super().detail()
        data["remaining_balance"] = str(self.remaining)
        data["scope"] = self.scope
        return data


class RefundNotEligible(BillingError):
    code = "refund_not_eligible"

    def __init__(self, message: str, refundable: Decimal):
        super().__init__(message)
        self.refundable = refundable

    def detail(self) -> Dict[str, Any]:
        data = super().detail()
        data["refundable_amount"] = str(self.refundable)
        return data


class LedgerContention(BillingError):
    code = "ledger_contention"

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts

    def detail(self) -> Dict[str, Any]:
        data = super().detail()
        data["attempts"] = self.attempts
        return data
