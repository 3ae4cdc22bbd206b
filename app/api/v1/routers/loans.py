from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.clock import Clock
from app.db.session import get_db
from app.schemas.loan import (
    LoanApplyRequest,
    LoanDecisionRequest,
    LoanDecisionResponse,
    LoanDetailsResponse,
    LoanDTO,
    RepaymentDTO,
    RepaymentHistoryResponse,
    RepaymentRequest,
)
from app.services import loan_ledger, loan_repayments
from app.services.ledger_errors import LedgerError
from app.services.loan_locks import LoanLockRegistry


router = APIRouter(tags=["loans"])


def _http_error(exc: LedgerError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.as_detail())


def _decision_response(result: loan_ledger.LoanDecisionResult) -> LoanDecisionResponse:
    return LoanDecisionResponse(
        outcome=result.outcome,
        loan=LoanDTO.model_validate(result.loan),
        disbursement_reference=result.disbursement_reference,
        error=result.error,
    )


@router.post(
    "/loans",
    response_model=LoanDTO,
    status_code=status.HTTP_201_CREATED,
    summary="Apply for a loan",
)
async def apply_for_loan(
    payload: LoanApplyRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    locks: LoanLockRegistry = Depends(deps.get_loan_locks),
) -> LoanDTO:
    try:
        loan = await loan_ledger.apply_for_loan(
            db,
            borrower_id=payload.borrower_id,
            principal=payload.amount,
            tenure_days=payload.tenure_days,
            repayment_method=payload.repayment_method,
            payment_method_ref=payload.payment_method_ref,
            disbursement_account_ref=payload.disbursement_account_ref,
            clock=clock,
            locks=locks,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return LoanDTO.model_validate(loan)


@router.post(
    "/loans/{loan_id}/decision",
    response_model=LoanDecisionResponse,
    summary="Approve or reject a pending loan",
)
async def decide_loan(
    loan_id: UUID,
    payload: LoanDecisionRequest,
    db: AsyncSession = Depends(get_db),
    gateway=Depends(deps.get_payment_gateway),
    notifier=Depends(deps.get_notifier),
    clock: Clock = Depends(deps.get_clock),
    locks: LoanLockRegistry = Depends(deps.get_loan_locks),
) -> LoanDecisionResponse:
    try:
        result = await loan_ledger.decide_loan(
            db,
            loan_id,
            payload.action,
            disburser=gateway,
            notifier=notifier,
            decided_by=payload.decided_by,
            clock=clock,
            locks=locks,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _decision_response(result)


@router.post(
    "/loans/{loan_id}/disbursement",
    response_model=LoanDecisionResponse,
    summary="Retry disbursement of an approved loan",
)
async def retry_disbursement(
    loan_id: UUID,
    db: AsyncSession = Depends(get_db),
    gateway=Depends(deps.get_payment_gateway),
    notifier=Depends(deps.get_notifier),
    clock: Clock = Depends(deps.get_clock),
    locks: LoanLockRegistry = Depends(deps.get_loan_locks),
) -> LoanDecisionResponse:
    try:
        result = await loan_ledger.retry_disbursement(
            db,
            loan_id,
            disburser=gateway,
            notifier=notifier,
            clock=clock,
            locks=locks,
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return _decision_response(result)


@router.post(
    "/loans/{loan_id}/repayments",
    response_model=LoanDTO,
    summary="Apply a manual repayment to a loan",
)
async def repay_loan(
    loan_id: UUID,
    payload: RepaymentRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    locks: LoanLockRegistry = Depends(deps.get_loan_locks),
) -> LoanDTO:
    try:
        loan = await loan_repayments.apply_repayment(db, loan_id, payload.amount, clock=clock, locks=locks)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return LoanDTO.model_validate(loan)


@router.post(
    "/borrowers/{borrower_id}/repayments",
    response_model=LoanDTO,
    summary="Apply a manual repayment to the borrower's active loan",
)
async def repay_active_loan(
    borrower_id: str,
    payload: RepaymentRequest,
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(deps.get_clock),
    locks: LoanLockRegistry = Depends(deps.get_loan_locks),
) -> LoanDTO:
    try:
        loan = await loan_repayments.apply_repayment_for_borrower(
            db, borrower_id, payload.amount, clock=clock, locks=locks
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return LoanDTO.model_validate(loan)


@router.get(
    "/loans/{loan_id}/repayments",
    response_model=RepaymentHistoryResponse,
    summary="Repayment history ordered by due date",
)
async def get_repayment_history(
    loan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> RepaymentHistoryResponse:
    repayments = await loan_repayments.get_repayment_history(db, loan_id)
    return RepaymentHistoryResponse(
        loan_id=loan_id,
        total=len(repayments),
        message=None if repayments else "No repayments have been made.",
        repayments=[RepaymentDTO.model_validate(item) for item in repayments],
    )


@router.get(
    "/loans/{loan_id}",
    response_model=LoanDetailsResponse,
    summary="Loan details including penalties",
)
async def get_loan_details(
    loan_id: UUID,
    db: AsyncSession = Depends(get_db),
) -> LoanDetailsResponse:
    try:
        details = await loan_repayments.get_loan_details(db, loan_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return LoanDetailsResponse(
        loan_id=details.loan_id,
        amount=details.amount,
        interest_rate=details.interest_rate,
        total_repayment=details.total_repayment,
        repaid_amount=details.repaid_amount,
        remaining_balance=details.remaining_balance,
        due_date=details.due_date,
        status=details.status,
        total_penalty=details.total_penalty,
        penalty_applied=details.penalty_applied,
        repayments=[RepaymentDTO.model_validate(item) for item in details.repayments],
    )
