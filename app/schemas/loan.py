from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

# Decimal that serializes to a string in JSON output.
Money = Annotated[Decimal, PlainSerializer(str, return_type=str, when_used="json")]


class LoanStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    REPAID = "repaid"
    DEFAULTED = "defaulted"


ACTIVE_LOAN_STATUSES = frozenset({LoanStatus.APPROVED.value, LoanStatus.DISBURSED.value})


class RepaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    LATE = "late"
    DEFAULTED = "defaulted"


OPEN_REPAYMENT_STATUSES = frozenset({RepaymentStatus.PENDING.value, RepaymentStatus.LATE.value})


class RepaymentMethod(str, Enum):
    AUTO_DEBIT = "auto-debit"
    MANUAL = "manual"


class LoanDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DecisionOutcome(str, Enum):
    DISBURSED = "disbursed"
    DISBURSEMENT_FAILED = "disbursement_failed"
    REJECTED = "rejected"


class LoanApplyRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    borrower_id: str = Field(min_length=1, max_length=64)
    amount: Decimal
    tenure_days: int
    repayment_method: RepaymentMethod = RepaymentMethod.MANUAL
    payment_method_ref: str | None = Field(default=None, max_length=255)
    disbursement_account_ref: str | None = Field(default=None, max_length=255)


class LoanDecisionRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    action: LoanDecision
    decided_by: str | None = Field(default=None, max_length=64)


class RepaymentRequest(BaseModel):
    amount: Decimal


class RepaymentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    loan_id: UUID
    amount_due: Money
    amount_paid: Money
    due_date: date
    status: RepaymentStatus
    penalty: Money
    late_fee: Money
    paid_at: datetime | None = None


class RepaymentHistoryResponse(BaseModel):
    loan_id: UUID
    total: int
    message: str | None = None
    repayments: list[RepaymentDTO]


class LoanDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    borrower_id: str
    principal: Money
    interest_rate_per_day: Money
    tenure_days: int
    due_date: date
    total_repayment: Money
    repaid_amount: Money
    status: LoanStatus
    repayment_method: RepaymentMethod
    disbursement_reference: str | None = None
    approved_at: datetime | None = None
    disbursed_at: datetime | None = None
    repaid_at: datetime | None = None


class LoanDecisionResponse(BaseModel):
    outcome: DecisionOutcome
    loan: LoanDTO
    disbursement_reference: str | None = None
    error: str | None = None


class LoanDetailsResponse(BaseModel):
    loan_id: UUID
    amount: Money
    interest_rate: Money
    total_repayment: Money
    repaid_amount: Money
    remaining_balance: Money
    due_date: date
    status: LoanStatus
    total_penalty: Money
    penalty_applied: bool
    repayments: list[RepaymentDTO]


class ReconciliationReportResponse(BaseModel):
    cycle_id: str
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    loans_scanned: int = 0
    charges_succeeded: int = 0
    charges_failed: int = 0
    repayments_marked_late: int = 0
    penalties_applied: Money = Decimal("0.00")
    loans_defaulted: int = 0
    errors: list[str] = Field(default_factory=list)
