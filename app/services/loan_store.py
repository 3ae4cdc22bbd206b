from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.loan import Loan
from app.models.repayment import Repayment
from app.schemas.loan import (
    ACTIVE_LOAN_STATUSES,
    OPEN_REPAYMENT_STATUSES,
    RepaymentMethod,
    RepaymentStatus,
)


async def get_loan(db: AsyncSession, loan_id: UUID, *, for_update: bool = False) -> Loan | None:
    stmt = select(Loan).where(Loan.id == loan_id)
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_active_loan_for_borrower(
    db: AsyncSession,
    borrower_id: str,
    *,
    exclude_loan_id: UUID | None = None,
) -> Loan | None:
    stmt = select(Loan).where(
        Loan.borrower_id == borrower_id,
        Loan.status.in_(sorted(ACTIVE_LOAN_STATUSES)),
    )
    if exclude_loan_id is not None:
        stmt = stmt.where(Loan.id != exclude_loan_id)
    stmt = stmt.order_by(Loan.created_at.asc()).limit(1)
    return (await db.execute(stmt)).scalars().first()


async def get_repayment(db: AsyncSession, repayment_id: UUID, *, for_update: bool = False) -> Repayment | None:
    stmt = select(Repayment).where(Repayment.id == repayment_id)
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def list_repayments(db: AsyncSession, loan_id: UUID) -> list[Repayment]:
    stmt = (
        select(Repayment)
        .where(Repayment.loan_id == loan_id)
        .order_by(Repayment.due_date.asc(), Repayment.created_at.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_open_repayments(db: AsyncSession, loan_id: UUID, *, for_update: bool = False) -> list[Repayment]:
    stmt = (
        select(Repayment)
        .where(
            Repayment.loan_id == loan_id,
            Repayment.status.in_(sorted(OPEN_REPAYMENT_STATUSES)),
        )
        .order_by(Repayment.due_date.asc(), Repayment.created_at.asc())
    )
    if for_update:
        stmt = stmt.with_for_update()
    return list((await db.execute(stmt)).scalars().all())


async def get_earliest_pending_repayment(db: AsyncSession, loan_id: UUID) -> Repayment | None:
    stmt = (
        select(Repayment)
        .where(
            Repayment.loan_id == loan_id,
            Repayment.status == RepaymentStatus.PENDING.value,
        )
        .order_by(Repayment.due_date.asc(), Repayment.created_at.asc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalars().first()


async def list_auto_debit_loan_ids(db: AsyncSession) -> list[UUID]:
    stmt = (
        select(Loan.id)
        .where(
            Loan.repayment_method == RepaymentMethod.AUTO_DEBIT.value,
            Loan.status.in_(sorted(ACTIVE_LOAN_STATUSES)),
        )
        .order_by(Loan.created_at.asc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_overdue_repayment_refs(db: AsyncSession, as_of: date) -> list[tuple[UUID, UUID]]:
    """(repayment_id, loan_id) pairs of pending repayments due strictly before ``as_of``.

    Only installments of loans that are still active are returned.
    """
    stmt = (
        select(Repayment.id, Repayment.loan_id)
        .join(Loan, Loan.id == Repayment.loan_id)
        .where(
            Repayment.status == RepaymentStatus.PENDING.value,
            Repayment.due_date < as_of,
            Loan.status.in_(sorted(ACTIVE_LOAN_STATUSES)),
        )
        .order_by(Repayment.due_date.asc())
    )
    return [(row[0], row[1]) for row in (await db.execute(stmt)).all()]


async def list_late_repayment_refs(db: AsyncSession, due_before: date) -> list[tuple[UUID, UUID]]:
    stmt = (
        select(Repayment.id, Repayment.loan_id)
        .where(
            Repayment.status == RepaymentStatus.LATE.value,
            Repayment.due_date < due_before,
        )
        .order_by(Repayment.due_date.asc())
    )
    return [(row[0], row[1]) for row in (await db.execute(stmt)).all()]
