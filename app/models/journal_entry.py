import uuid

from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class JournalEntry(Base):
    __tablename__ = "journal_entries"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_journal_amount_positive"),
        CheckConstraint("debit_account <> credit_account", name="ck_journal_distinct_accounts"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    loan_id = Column(UUID(as_uuid=True), ForeignKey("loans.id", ondelete="RESTRICT"), nullable=False, index=True)
    repayment_id = Column(UUID(as_uuid=True), ForeignKey("repayments.id", ondelete="SET NULL"), nullable=True)
    entry_type = Column(String(30), nullable=False)
    entry_date = Column(Date, nullable=False, server_default=func.current_date())
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    debit_account = Column(String(255), nullable=False)
    credit_account = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    external_reference = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
