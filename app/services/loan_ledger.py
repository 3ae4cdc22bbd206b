from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from functools import partial
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, system_clock
from app.core.settings import settings
from app.db.retry import commit_or_raise, run_with_retry
from app.models.loan import Loan
from app.models.repayment import Repayment
from app.schemas.loan import DecisionOutcome, LoanDecision, LoanStatus, RepaymentMethod, RepaymentStatus
from app.services import interest, journal, loan_store, payments
from app.services.audit import model_snapshot, record_audit_log
from app.services.ledger_errors import InvalidStateError, NotFoundError, PaymentError, ValidationError
from app.services.loan_locks import LoanLockRegistry, loan_locks
from app.services.loan_repayments import allocate_payment
from app.services.notifications import NotificationCapability, notify_safely


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanDecisionResult:
    loan: Loan
    outcome: DecisionOutcome
    disbursement_reference: str | None = None
    error: str | None = None

    @property
    def degraded(self) -> bool:
        return self.outcome == DecisionOutcome.DISBURSEMENT_FAILED


def _borrower_lock_key(borrower_id: str) -> str:
    return f"borrower:{borrower_id}"


async def apply_for_loan(
    db: AsyncSession,
    *,
    borrower_id: str,
    principal,
    tenure_days: int,
    repayment_method: RepaymentMethod | str = RepaymentMethod.MANUAL,
    payment_method_ref: str | None = None,
    disbursement_account_ref: str | None = None,
    daily_rate: Decimal | None = None,
    clock: Clock = system_clock,
    locks: LoanLockRegistry = loan_locks,
) -> Loan:
    principal = interest.as_decimal(principal)
    if principal <= 0:
        raise ValidationError(
            "Loan amount must be greater than zero",
            code="invalid_principal",
            details={"principal": str(principal)},
        )
    if principal != interest.quantize_money(principal):
        raise ValidationError(
            "Loan amount must have at most two decimal places",
            code="invalid_principal",
            details={"principal": str(principal)},
        )
    if tenure_days is None or tenure_days <= 0:
        raise ValidationError(
            "Tenure must be at least one day",
            code="invalid_tenure",
            details={"tenure_days": tenure_days},
        )
    method = RepaymentMethod(repayment_method)
    if method == RepaymentMethod.AUTO_DEBIT and not payment_method_ref:
        raise ValidationError(
            "Auto-debit loans need a payment method",
            code="payment_method_required",
        )

    rate = interest.as_decimal(daily_rate if daily_rate is not None else settings.daily_interest_rate)
    today = clock.today()

    async with locks.hold(_borrower_lock_key(borrower_id)):
        active = await loan_store.get_active_loan_for_borrower(db, borrower_id)
        if active is not None:
            raise InvalidStateError(
                "Borrower already has an active loan",
                code="active_loan_exists",
                details={"active_loan_id": str(active.id), "status": active.status},
            )

        loan = Loan(
            borrower_id=borrower_id,
            principal=principal,
            interest_rate_per_day=rate,
            tenure_days=tenure_days,
            due_date=interest.compute_due_date(today, tenure_days),
            total_repayment=interest.compute_total_repayment(principal, rate, tenure_days),
            repaid_amount=Decimal("0.00"),
            status=LoanStatus.PENDING.value,
            repayment_method=method.value,
            payment_method_ref=payment_method_ref,
            disbursement_account_ref=disbursement_account_ref,
            version=1,
        )
        db.add(loan)
        await db.flush()
        record_audit_log(
            db,
            actor_id=borrower_id,
            action="loan.applied",
            resource_type="loan",
            resource_id=str(loan.id),
            new_value=model_snapshot(loan),
        )
        await commit_or_raise(db)
    logger.info(
        "Loan application created borrower=%s principal=%s total=%s",
        borrower_id,
        loan.principal,
        loan.total_repayment,
        extra={"loan_id": loan.id},
    )
    return loan


async def decide_loan(
    db: AsyncSession,
    loan_id: UUID,
    decision: LoanDecision | str,
    *,
    disburser: payments.DisburseCapability,
    notifier: NotificationCapability | None = None,
    decided_by: str | None = None,
    clock: Clock = system_clock,
    locks: LoanLockRegistry = loan_locks,
) -> LoanDecisionResult:
    try:
        action = LoanDecision(decision)
    except ValueError as exc:
        raise ValidationError(
            "Invalid action. Use 'approve' or 'reject'.",
            code="invalid_decision",
            details={"action": str(decision)},
        ) from exc

    async with locks.hold(loan_id):
        loan = await loan_store.get_loan(db, loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("Loan not found", details={"loan_id": str(loan_id)})
        if loan.status != LoanStatus.PENDING.value:
            raise InvalidStateError(
                f"Loan is {loan.status}; only pending loans can be decided",
                details={"loan_id": str(loan.id), "status": loan.status},
            )

        if action == LoanDecision.REJECT:
            old_snapshot = model_snapshot(loan)
            loan.status = LoanStatus.REJECTED.value
            loan.decided_by = decided_by
            record_audit_log(
                db,
                actor_id=decided_by,
                action="loan.rejected",
                resource_type="loan",
                resource_id=str(loan.id),
                old_value=old_snapshot,
                new_value=model_snapshot(loan),
            )
            await commit_or_raise(db)
            await notify_safely(
                notifier,
                loan.borrower_id,
                f"Your loan application for {loan.principal} has been rejected.",
            )
            return LoanDecisionResult(loan=loan, outcome=DecisionOutcome.REJECTED)

        async with locks.hold(_borrower_lock_key(loan.borrower_id)):
            other = await loan_store.get_active_loan_for_borrower(
                db, loan.borrower_id, exclude_loan_id=loan.id
            )
            if other is not None:
                raise InvalidStateError(
                    "Borrower already has an active loan",
                    code="active_loan_exists",
                    details={"active_loan_id": str(other.id), "status": other.status},
                )
            old_snapshot = model_snapshot(loan)
            loan.status = LoanStatus.APPROVED.value
            loan.decided_by = decided_by
            loan.approved_at = clock.now()
            record_audit_log(
                db,
                actor_id=decided_by,
                action="loan.approved",
                resource_type="loan",
                resource_id=str(loan.id),
                old_value=old_snapshot,
                new_value=model_snapshot(loan),
            )
            await commit_or_raise(db)

        return await _disburse(db, loan, disburser=disburser, notifier=notifier, actor_id=decided_by, clock=clock)


async def retry_disbursement(
    db: AsyncSession,
    loan_id: UUID,
    *,
    disburser: payments.DisburseCapability,
    notifier: NotificationCapability | None = None,
    actor_id: str | None = None,
    clock: Clock = system_clock,
    locks: LoanLockRegistry = loan_locks,
) -> LoanDecisionResult:
    async with locks.hold(loan_id):
        loan = await loan_store.get_loan(db, loan_id, for_update=True)
        if loan is None:
            raise NotFoundError("Loan not found", details={"loan_id": str(loan_id)})
        if loan.status != LoanStatus.APPROVED.value:
            raise InvalidStateError(
                f"Loan is {loan.status}; only approved loans awaiting funds can be disbursed",
                details={"loan_id": str(loan.id), "status": loan.status},
            )
        return await _disburse(db, loan, disburser=disburser, notifier=notifier, actor_id=actor_id, clock=clock)


async def _disburse(
    db: AsyncSession,
    loan: Loan,
    *,
    disburser: payments.DisburseCapability,
    notifier: NotificationCapability | None,
    actor_id: str | None,
    clock: Clock,
) -> LoanDecisionResult:
    loan_id = loan.id
    principal = interest.as_decimal(loan.principal)
    destination = loan.disbursement_account_ref
    try:
        result = await payments.call_capability(
            disburser.disburse(principal, destination),
            operation="disbursement",
            target_ref=destination,
        )
    except PaymentError as exc:
        logger.warning("Disbursement failed: %s", exc.message, extra={"loan_id": loan_id})
        record_audit_log(
            db,
            actor_id=actor_id,
            action="loan.disbursement_failed",
            resource_type="loan",
            resource_id=str(loan_id),
            new_value={"status": loan.status, "error": exc.message, "code": exc.code},
        )
        await commit_or_raise(db)
        return LoanDecisionResult(
            loan=loan,
            outcome=DecisionOutcome.DISBURSEMENT_FAILED,
            error=exc.message,
        )

    disbursed = await run_with_retry(
        db,
        partial(
            _record_disbursement,
            loan_id=loan_id,
            reference=result.reference,
            actor_id=actor_id,
            clock=clock,
        ),
        description=f"disbursement {result.reference} for loan {loan_id}",
    )
    logger.info("Loan disbursed reference=%s", result.reference, extra={"loan_id": loan_id})
    await notify_safely(
        notifier,
        disbursed.borrower_id,
        f"Your loan of {disbursed.principal} has been approved and disbursed.",
    )
    return LoanDecisionResult(
        loan=disbursed,
        outcome=DecisionOutcome.DISBURSED,
        disbursement_reference=result.reference,
    )


async def _record_disbursement(
    db: AsyncSession,
    *,
    loan_id: UUID,
    reference: str | None,
    actor_id: str | None,
    clock: Clock,
) -> Loan:
    loan = await loan_store.get_loan(db, loan_id, for_update=True)
    if loan is None:
        raise NotFoundError("Loan not found", details={"loan_id": str(loan_id)})
    if loan.status == LoanStatus.APPROVED.value:
        old_snapshot = model_snapshot(loan)
        now = clock.now()
        loan.status = LoanStatus.DISBURSED.value
        loan.disbursement_reference = reference
        loan.disbursed_at = now
        schedule = create_installment_schedule(db, loan)
        already_repaid = interest.as_decimal(loan.repaid_amount)
        if already_repaid > 0:
            # Repayments taken while the payout was pending count against the schedule.
            allocate_payment(schedule, already_repaid, paid_at=now)
        journal.post_entry(
            db,
            loan,
            "disbursement",
            interest.as_decimal(loan.principal),
            entry_date=now.date(),
            external_reference=reference,
            description="Principal disbursed to borrower",
        )
        journal.post_entry(
            db,
            loan,
            "interest",
            interest.as_decimal(loan.total_repayment) - interest.as_decimal(loan.principal),
            entry_date=now.date(),
            description=f"Compound interest over {loan.tenure_days} days",
        )
        record_audit_log(
            db,
            actor_id=actor_id,
            action="loan.disbursed",
            resource_type="loan",
            resource_id=str(loan.id),
            old_value=old_snapshot,
            new_value={**model_snapshot(loan), "installments": len(schedule)},
        )
    await db.commit()
    return loan


def create_installment_schedule(db: AsyncSession, loan: Loan, *, count: int | None = None) -> list[Repayment]:
    """Create the repayment obligations for a freshly disbursed loan.

    The schedule spans the loan tenure and ends on the loan due date; amounts
    add up to ``total_repayment`` exactly.
    """
    installments = count if count is not None else settings.installment_count
    installments = max(1, min(installments, int(loan.tenure_days)))
    start: date = loan.due_date - timedelta(days=int(loan.tenure_days))
    amounts = interest.split_installments(loan.total_repayment, installments)
    due_dates = interest.installment_due_dates(start, int(loan.tenure_days), installments)
    repayments = []
    for amount_due, due_date in zip(amounts, due_dates):
        repayment = Repayment(
            loan_id=loan.id,
            amount_due=amount_due,
            amount_paid=Decimal("0.00"),
            due_date=due_date,
            status=RepaymentStatus.PENDING.value,
            penalty=Decimal("0.00"),
            late_fee=Decimal("0.00"),
        )
        db.add(repayment)
        repayments.append(repayment)
    return repayments
