import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base
from app.models.types import EncryptedString


class Loan(Base):
    __tablename__ = "loans"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint("principal > 0", name="ck_loan_principal_positive"),
        CheckConstraint("tenure_days > 0", name="ck_loan_tenure_positive"),
        CheckConstraint("interest_rate_per_day >= 0", name="ck_loan_rate_nonneg"),
        CheckConstraint("repaid_amount >= 0", name="ck_loan_repaid_nonneg"),
        CheckConstraint("repaid_amount <= total_repayment", name="ck_loan_repaid_within_total"),
        CheckConstraint("version >= 1", name="ck_loan_version_positive"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'disbursed', 'repaid', 'defaulted')",
            name="ck_loan_status",
        ),
        CheckConstraint(
            "repayment_method IN ('auto-debit', 'manual')",
            name="ck_loan_repayment_method",
        ),
        Index("ix_loans_borrower_status", "borrower_id", "status"),
        Index("ix_loans_method_status", "repayment_method", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    borrower_id = Column(String(64), nullable=False, index=True)
    principal = Column(Numeric(18, 2), nullable=False)
    interest_rate_per_day = Column(Numeric(10, 6), nullable=False)
    tenure_days = Column(Integer, nullable=False)
    due_date = Column(Date, nullable=False)
    total_repayment = Column(Numeric(18, 2), nullable=False)
    repaid_amount = Column(Numeric(18, 2), nullable=False, default=0)
    status = Column(String(20), nullable=False, default="pending", index=True)
    repayment_method = Column(String(20), nullable=False, default="manual")
    payment_method_ref = Column(EncryptedString(length=512), nullable=True)
    disbursement_account_ref = Column(EncryptedString(length=512), nullable=True)
    disbursement_reference = Column(String(255), nullable=True)
    decided_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    disbursed_at = Column(DateTime(timezone=True), nullable=True)
    repaid_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    repayments = relationship(
        "Repayment",
        back_populates="loan",
        order_by="Repayment.due_date",
        cascade="save-update, merge",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining_balance(self):
        return (self.total_repayment or 0) - (self.repaid_amount or 0)
