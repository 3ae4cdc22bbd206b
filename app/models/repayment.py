import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.db.base import Base


class Repayment(Base):
    __tablename__ = "repayments"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint("amount_due >= 0", name="ck_repayment_amount_due_nonneg"),
        CheckConstraint("amount_paid >= 0", name="ck_repayment_amount_paid_nonneg"),
        CheckConstraint("penalty >= 0", name="ck_repayment_penalty_nonneg"),
        CheckConstraint("late_fee >= 0", name="ck_repayment_late_fee_nonneg"),
        CheckConstraint(
            "status IN ('pending', 'paid', 'late', 'defaulted')",
            name="ck_repayment_status",
        ),
        Index("ix_repayments_loan_due", "loan_id", "due_date"),
        Index("ix_repayments_status_due", "status", "due_date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    amount_due = Column(Numeric(18, 2), nullable=False)
    amount_paid = Column(Numeric(18, 2), nullable=False, default=0)
    due_date = Column(Date, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    penalty = Column(Numeric(18, 2), nullable=False, default=0)
    late_fee = Column(Numeric(18, 2), nullable=False, default=0)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    charge_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    loan = relationship("Loan", back_populates="repayments")

    @property
    def outstanding(self):
        return (self.amount_due or 0) + (self.penalty or 0) - (self.amount_paid or 0)
