"""Create loans, repayments, journal_entries and audit_logs tables"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_ledger_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "loans",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("borrower_id", sa.String(length=64), nullable=False),
        sa.Column("principal", sa.Numeric(18, 2), nullable=False),
        sa.Column("interest_rate_per_day", sa.Numeric(10, 6), nullable=False),
        sa.Column("tenure_days", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("total_repayment", sa.Numeric(18, 2), nullable=False),
        sa.Column("repaid_amount", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("repayment_method", sa.String(length=20), nullable=False, server_default=sa.text("'manual'")),
        sa.Column("payment_method_ref", sa.LargeBinary(), nullable=True),
        sa.Column("disbursement_account_ref", sa.LargeBinary(), nullable=True),
        sa.Column("disbursement_reference", sa.String(length=255), nullable=True),
        sa.Column("decided_by", sa.String(length=64), nullable=True),
        sa.Column("approved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("disbursed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("repaid_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("defaulted_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("principal > 0", name="ck_loan_principal_positive"),
        sa.CheckConstraint("tenure_days > 0", name="ck_loan_tenure_positive"),
        sa.CheckConstraint("interest_rate_per_day >= 0", name="ck_loan_rate_nonneg"),
        sa.CheckConstraint("repaid_amount >= 0", name="ck_loan_repaid_nonneg"),
        sa.CheckConstraint("repaid_amount <= total_repayment", name="ck_loan_repaid_within_total"),
        sa.CheckConstraint("version >= 1", name="ck_loan_version_positive"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected', 'disbursed', 'repaid', 'defaulted')",
            name="ck_loan_status",
        ),
        sa.CheckConstraint(
            "repayment_method IN ('auto-debit', 'manual')",
            name="ck_loan_repayment_method",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_loans_borrower_id", "loans", ["borrower_id"])
    op.create_index("ix_loans_status", "loans", ["status"])
    op.create_index("ix_loans_borrower_status", "loans", ["borrower_id", "status"])
    op.create_index("ix_loans_method_status", "loans", ["repayment_method", "status"])

    op.create_table(
        "repayments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("loan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("amount_due", sa.Numeric(18, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("penalty", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("late_fee", sa.Numeric(18, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("charge_reference", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount_due >= 0", name="ck_repayment_amount_due_nonneg"),
        sa.CheckConstraint("amount_paid >= 0", name="ck_repayment_amount_paid_nonneg"),
        sa.CheckConstraint("penalty >= 0", name="ck_repayment_penalty_nonneg"),
        sa.CheckConstraint("late_fee >= 0", name="ck_repayment_late_fee_nonneg"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'late', 'defaulted')",
            name="ck_repayment_status",
        ),
        sa.ForeignKeyConstraint(["loan_id"], ["loans.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_repayments_loan_id", "repayments", ["loan_id"])
    op.create_index("ix_repayments_loan_due", "repayments", ["loan_id", "due_date"])
    op.create_index("ix_repayments_status_due", "repayments", ["status", "due_date"])

    op.create_table(
        "journal_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("loan_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("repayment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("entry_type", sa.String(length=30), nullable=False),
        sa.Column("entry_date", sa.Date(), nullable=False, server_default=sa.func.current_date()),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("debit_account", sa.String(length=255), nullable=False),
        sa.Column("credit_account", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("external_reference", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_journal_amount_positive"),
        sa.CheckConstraint("debit_account <> credit_account", name="ck_journal_distinct_accounts"),
        sa.ForeignKeyConstraint(["loan_id"], ["loans.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["repayment_id"], ["repayments.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journal_entries_loan_id", "journal_entries", ["loan_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_resource_id", "audit_logs", ["resource_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_logs_resource_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_journal_entries_loan_id", table_name="journal_entries")
    op.drop_table("journal_entries")

    op.drop_index("ix_repayments_status_due", table_name="repayments")
    op.drop_index("ix_repayments_loan_due", table_name="repayments")
    op.drop_index("ix_repayments_loan_id", table_name="repayments")
    op.drop_table("repayments")

    op.drop_index("ix_loans_method_status", table_name="loans")
    op.drop_index("ix_loans_borrower_status", table_name="loans")
    op.drop_index("ix_loans_status", table_name="loans")
    op.drop_index("ix_loans_borrower_id", table_name="loans")
    op.drop_table("loans")
