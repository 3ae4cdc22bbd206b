from app.models.audit_log import AuditLog
from app.models.journal_entry import JournalEntry
from app.models.loan import Loan
from app.models.repayment import Repayment

__all__ = [
    "AuditLog",
    "JournalEntry",
    "Loan",
    "Repayment",
]
