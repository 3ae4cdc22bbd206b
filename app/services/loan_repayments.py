from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, system_clock
from app.db.retry import commit_or_raise
from app.models.loan import Loan
from app.models.repayment import Repayment
from app.schemas.loan import ACTIVE_LOAN_STATUSES, LoanStatus, RepaymentStatus
from app.services import interest, journal, loan_store
from app.services.audit import model_snapshot, record_audit_log
from app.services.ledger_errors import (
    AlreadySettledError,
    NotFoundError,
    ValidationError,
    overpayment_error,
)
from app.services.loan_locks import LoanLockRegistry, loan_locks


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanDetails:
    loan_id: UUID
    amount: Decimal
    interest_rate: Decimal
    total_repayment: Decimal
    repaid_amount: Decimal
    remaining_balance: Decimal
    due_date: date
    status: str
    total_penalty: Decimal
    penalty_applied: bool
    repayments: list[Repayment]


def installment_outstanding(repayment: Repayment) -> Decimal:
    """Amount due plus accrued penalty, less what has been paid."""
    return (
        interest.as_decimal(repayment.amount_due)
        + interest.as_decimal(repayment.penalty)
        - interest.as_decimal(repayment.amount_paid)
    )


def allocate_payment(repayments: list[Repayment], amount: Decimal, *, paid_at: datetime) -> Decimal:
    """Spread ``amount`` over open installments, oldest due date first.

    An installment is settled once its amount due plus accrued penalty is
    covered. Returns whatever could not be allocated.
    """
    remaining = amount
    for repayment in sorted(repayments, key=lambda item: item.due_date):
        if remaining <= 0:
            break
        owed = installment_outstanding(repayment)
        if owed <= 0:
            continue
        applied = min(owed, remaining)
        repayment.amount_paid = interest.as_decimal(repayment.amount_paid) + applied
        remaining -= applied
        if applied == owed:
            repayment.status = RepaymentStatus.PAID.value
            repayment.paid_at = paid_at
    return remaining


async def apply_repayment(
    db: AsyncSession,
    loan_id: UUID,
    amount,
    *,
    actor_id: str | None = None,
    clock: Clock = system_clock,
    locks: LoanLockRegistry = loan_locks,
) -> Loan:
    amount = interest.as_decimal(amount)
    async with locks.hold(loan_id):
        loan = await loan_store.get_loan(db, loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("Loan not found", details={"loan_id": str(loan_id)})

        total_due = interest.as_decimal(loan.total_repayment)
        repaid = interest.as_decimal(loan.repaid_amount)
        if repaid == total_due:
            raise AlreadySettledError(
                "This loan has already been fully repaid.",
                details={
                    "loan_id": str(loan.id),
                    "total_repayment": str(total_due),
                    "repaid_amount": str(repaid),
                    "remaining_balance": str(total_due - repaid),
                },
            )
        if loan.status not in ACTIVE_LOAN_STATUSES:
            raise NotFoundError(
                "No active loan found",
                code="active_loan_not_found",
                details={"loan_id": str(loan.id), "status": loan.status},
            )
        if amount <= 0:
            raise ValidationError(
                "Repayment amount must be greater than zero",
                code="invalid_amount",
                details={"amount": str(amount)},
            )
        if amount != interest.quantize_money(amount):
            raise ValidationError(
                "Repayment amount must have at most two decimal places",
                code="invalid_amount",
                details={"amount": str(amount)},
            )
        if repaid + amount > total_due:
            raise overpayment_error(total_due, repaid, amount)

        now = clock.now()
        old_snapshot = model_snapshot(loan)
        open_repayments = await loan_store.list_open_repayments(db, loan.id, for_update=True)
        unallocated = allocate_payment(open_repayments, amount, paid_at=now)
        if unallocated > 0:
            logger.info("Repayment of %s exceeds scheduled installments by %s", amount, unallocated, extra={"loan_id": loan.id})

        loan.repaid_amount = repaid + amount
        if loan.repaid_amount >= total_due:
            loan.status = LoanStatus.REPAID.value
            loan.repaid_at = now
        journal.post_entry(
            db,
            loan,
            "repayment",
            amount,
            entry_date=now.date(),
            description="Manual repayment",
        )
        record_audit_log(
            db,
            actor_id=actor_id or loan.borrower_id,
            action="loan.repayment_applied",
            resource_type="loan",
            resource_id=str(loan.id),
            old_value=old_snapshot,
            new_value={**model_snapshot(loan), "amount": str(amount)},
        )
        await commit_or_raise(db)

    logger.info(
        "Repayment applied amount=%s repaid=%s total=%s status=%s",
        amount,
        loan.repaid_amount,
        loan.total_repayment,
        loan.status,
        extra={"loan_id": loan.id},
    )
    return loan


async def apply_repayment_for_borrower(
    db: AsyncSession,
    borrower_id: str,
    amount,
    *,
    clock: Clock = system_clock,
    locks: LoanLockRegistry = loan_locks,
) -> Loan:
    loan = await loan_store.get_active_loan_for_borrower(db, borrower_id)
    if loan is None:
        raise NotFoundError(
            "No active loan found for this user",
            code="active_loan_not_found",
            details={"borrower_id": borrower_id},
        )
    return await apply_repayment(db, loan.id, amount, actor_id=borrower_id, clock=clock, locks=locks)


async def get_repayment_history(db: AsyncSession, loan_id: UUID) -> list[Repayment]:
    return await loan_store.list_repayments(db, loan_id)


async def get_loan_details(db: AsyncSession, loan_id: UUID) -> LoanDetails:
    loan = await loan_store.get_loan(db, loan_id)
    if loan is None:
        raise NotFoundError("Loan not found", details={"loan_id": str(loan_id)})
    repayments = await loan_store.list_repayments(db, loan_id)
    total_penalty = sum((interest.as_decimal(item.penalty) for item in repayments), Decimal("0.00"))
    total_repayment = interest.as_decimal(loan.total_repayment)
    repaid = interest.as_decimal(loan.repaid_amount)
    return LoanDetails(
        loan_id=loan.id,
        amount=interest.as_decimal(loan.principal),
        interest_rate=interest.as_decimal(loan.interest_rate_per_day),
        total_repayment=total_repayment,
        repaid_amount=repaid,
        remaining_balance=total_repayment - repaid,
        due_date=loan.due_date,
        status=loan.status,
        total_penalty=total_penalty,
        penalty_applied=total_penalty > 0,
        repayments=repayments,
    )
