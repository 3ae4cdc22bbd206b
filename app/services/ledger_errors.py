from __future__ import annotations

from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    """Base for every failure the ledger reports to its callers.

    ``code`` is stable and machine readable, ``message`` is meant for humans and
    ``details`` carries computed figures (balances, ids) where relevant.
    """

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def as_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(LedgerError):
    code = "validation_error"
    status_code = 400


class NotFoundError(LedgerError):
    code = "not_found"
    status_code = 404


class InvalidStateError(LedgerError):
    code = "invalid_state"
    status_code = 409


class AlreadySettledError(LedgerError):
    code = "already_settled"
    status_code = 409


class PaymentError(LedgerError):
    code = "payment_failed"
    status_code = 502


class PersistenceError(LedgerError):
    code = "persistence_unavailable"
    status_code = 503


def overpayment_error(total_repayment: Decimal, repaid_amount: Decimal, attempted: Decimal) -> ValidationError:
    remaining = total_repayment - repaid_amount
    return ValidationError(
        f"You are attempting to overpay. The remaining balance is {remaining:.2f}.",
        code="overpayment",
        details={
            "remaining_balance": str(remaining),
            "attempted_amount": str(attempted),
            "total_repayment": str(total_repayment),
            "repaid_amount": str(repaid_amount),
        },
    )
