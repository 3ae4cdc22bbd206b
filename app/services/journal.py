from __future__ import annotations

from datetime import date
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.journal_entry import JournalEntry
from app.models.loan import Loan


LOANS_RECEIVABLE = "loans_receivable"
CASH = "cash"
INTEREST_INCOME = "interest_income"
PENALTY_INCOME = "penalty_income"

ENTRY_ACCOUNTS: dict[str, tuple[str, str]] = {
    "disbursement": (LOANS_RECEIVABLE, CASH),
    "interest": (LOANS_RECEIVABLE, INTEREST_INCOME),
    "repayment": (CASH, LOANS_RECEIVABLE),
    "penalty": (LOANS_RECEIVABLE, PENALTY_INCOME),
}


def post_entry(
    db: AsyncSession,
    loan: Loan,
    entry_type: str,
    amount: Decimal,
    *,
    entry_date: date,
    repayment_id=None,
    external_reference: str | None = None,
    description: str | None = None,
) -> JournalEntry | None:
    """Post one balanced debit/credit pair; zero amounts are not journaled."""
    if amount <= 0:
        return None
    debit, credit = ENTRY_ACCOUNTS[entry_type]
    entry = JournalEntry(
        loan_id=loan.id,
        repayment_id=repayment_id,
        entry_type=entry_type,
        entry_date=entry_date,
        amount=amount,
        currency=settings.currency,
        debit_account=debit,
        credit_account=credit,
        description=description,
        external_reference=external_reference,
    )
    db.add(entry)
    return entry


def receivable_balance(entries: list[JournalEntry]) -> Decimal:
    """Net debit balance of the receivable account across ``entries``."""
    balance = Decimal("0")
    for entry in entries:
        if entry.debit_account == LOANS_RECEIVABLE:
            balance += entry.amount
        if entry.credit_account == LOANS_RECEIVABLE:
            balance -= entry.amount
    return balance
