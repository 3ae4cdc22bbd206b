from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol
from uuid import UUID

from redis.exceptions import LockError, RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock, system_clock
from app.core.context import reset_cycle_id, set_cycle_id
from app.core.settings import settings
from app.db.retry import commit_or_raise, run_with_retry
from app.schemas.loan import ACTIVE_LOAN_STATUSES, LoanStatus, RepaymentMethod, RepaymentStatus
from app.services import journal, loan_store, payments
from app.services.audit import SYSTEM_ACTOR, model_snapshot, record_audit_log
from app.services.ledger_errors import PaymentError
from app.services.loan_locks import LoanLockRegistry, loan_locks
from app.services.loan_repayments import installment_outstanding
from app.services.notifications import NotificationCapability, notify_safely
from app.utils.redis_client import get_redis_client, redis_key


logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]

_FROM_SETTINGS = object()


@dataclass
class ReconciliationReport:
    cycle_id: str
    started_at: datetime
    finished_at: datetime | None = None
    skipped: bool = False
    loans_scanned: int = 0
    charges_succeeded: int = 0
    charges_failed: int = 0
    repayments_marked_late: int = 0
    penalties_applied: Decimal = Decimal("0.00")
    loans_defaulted: int = 0
    errors: list[str] = field(default_factory=list)


class CycleGuard(Protocol):
    async def acquire(self) -> bool: ...

    async def release(self) -> None: ...


class RedisCycleGuard:
    """Cross-worker lock so only one process runs a reconciliation cycle at a time."""

    def __init__(self, name: str = "reconciliation", *, ttl_seconds: int | None = None) -> None:
        self._name = redis_key("lock", name)
        self._ttl = ttl_seconds or settings.reconciliation_lock_ttl_seconds
        self._lock = None

    async def acquire(self) -> bool:
        self._lock = get_redis_client().lock(self._name, timeout=self._ttl, blocking=False)
        return bool(await self._lock.acquire(blocking=False))

    async def release(self) -> None:
        if self._lock is None:
            return
        try:
            await self._lock.release()
        except LockError as exc:
            logger.warning("Reconciliation lock already expired: %s", exc)
        finally:
            self._lock = None


class ReconciliationScheduler:
    """Owns the recurring reconciliation job.

    One cycle runs three passes in order: the auto-debit sweep, overdue
    detection, then (only when a threshold is configured) default detection.
    Every pass re-reads the store, so a repayment collected by the sweep is no
    longer pending when overdue detection looks for candidates. Each loan is
    processed in its own session under the shared per-loan lock; a failure is
    logged, counted and the batch moves on.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        charger: payments.ChargeCapability,
        notifier: NotificationCapability | None = None,
        clock: Clock = system_clock,
        locks: LoanLockRegistry = loan_locks,
        cycle_guard: CycleGuard | None = None,
        interval_seconds: float | None = None,
        penalty_amount: Decimal | None = None,
        default_after_days_late=_FROM_SETTINGS,
        charge_timeout: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._charger = charger
        self._notifier = notifier
        self._clock = clock
        self._locks = locks
        self._cycle_guard = cycle_guard
        self._interval = interval_seconds or settings.reconciliation_interval_seconds
        self._penalty = penalty_amount if penalty_amount is not None else settings.late_penalty_amount
        self._default_after_days_late = (
            settings.default_after_days_late
            if default_after_days_late is _FROM_SETTINGS
            else default_after_days_late
        )
        self._charge_timeout = charge_timeout
        self._cycle_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self.last_report: ReconciliationReport | None = None

    # -- lifecycle --

    def start(self) -> asyncio.Task:
        if self._task is not None and not self._task.done():
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_forever(), name="reconciliation-scheduler")
        logger.info("Reconciliation scheduler started interval=%ss", self._interval)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            logger.info("Reconciliation scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run_forever(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:  # noqa: BLE001 - the loop must survive a bad cycle
                logger.exception("Reconciliation cycle crashed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue

    # -- one cycle --

    @asynccontextmanager
    async def _guarded(self) -> AsyncIterator[bool]:
        if self._cycle_lock.locked():
            yield False
            return
        async with self._cycle_lock:
            acquired = True
            if self._cycle_guard is not None:
                try:
                    acquired = await self._cycle_guard.acquire()
                except RedisError as exc:
                    # Row locks and one-way transitions keep a concurrent run safe.
                    logger.warning("Reconciliation lock unavailable, running unguarded: %s", exc)
                    acquired = True
            try:
                yield acquired
            finally:
                if acquired and self._cycle_guard is not None:
                    try:
                        await self._cycle_guard.release()
                    except RedisError as exc:
                        logger.warning("Reconciliation lock release failed: %s", exc)

    async def run_cycle(self) -> ReconciliationReport:
        cycle_id = uuid.uuid4().hex[:12]
        token = set_cycle_id(cycle_id)
        report = ReconciliationReport(cycle_id=cycle_id, started_at=self._clock.now())
        try:
            async with self._guarded() as acquired:
                if not acquired:
                    report.skipped = True
                    logger.info("Reconciliation cycle skipped; another run is in progress")
                    return report
                today = self._clock.today()
                logger.info("Running reconciliation cycle as_of=%s", today.isoformat())
                await self._auto_debit_sweep(report, today)
                await self._detect_overdue(report, today)
                if self._default_after_days_late:
                    await self._detect_defaults(report, today)
        finally:
            report.finished_at = self._clock.now()
            self.last_report = report
            if not report.skipped:
                logger.info(
                    "Reconciliation cycle finished scanned=%s charged=%s failed=%s late=%s defaulted=%s errors=%s",
                    report.loans_scanned,
                    report.charges_succeeded,
                    report.charges_failed,
                    report.repayments_marked_late,
                    report.loans_defaulted,
                    len(report.errors),
                )
            reset_cycle_id(token)
        return report

    # -- pass 1: auto-debit --

    async def _auto_debit_sweep(self, report: ReconciliationReport, today: date) -> None:
        async with self._session_factory() as db:
            loan_ids = await loan_store.list_auto_debit_loan_ids(db)
        report.loans_scanned = len(loan_ids)
        for loan_id in loan_ids:
            try:
                charged = await self._debit_loan(loan_id, today)
            except PaymentError as exc:
                report.charges_failed += 1
                logger.warning("Auto-debit failed: %s", exc.message, extra={"loan_id": loan_id})
            except Exception as exc:  # noqa: BLE001 - isolate per-loan failures
                report.errors.append(f"auto-debit {loan_id}: {exc}")
                logger.exception("Auto-debit crashed", extra={"loan_id": loan_id})
            else:
                if charged:
                    report.charges_succeeded += 1

    async def _debit_loan(self, loan_id: UUID, today: date) -> bool:
        async with self._locks.hold(loan_id):
            async with self._session_factory() as db:
                # The row lock stays held across the charge so another process
                # cannot apply a repayment to this loan mid-collection.
                loan = await loan_store.get_loan(db, loan_id, for_update=True)
                if (
                    loan is None
                    or loan.status not in ACTIVE_LOAN_STATUSES
                    or loan.repayment_method != RepaymentMethod.AUTO_DEBIT.value
                ):
                    return False
                repayment = await loan_store.get_earliest_pending_repayment(db, loan_id)
                if repayment is None or repayment.due_date > today:
                    return False
                outstanding = installment_outstanding(repayment)
                amount = min(outstanding, loan.remaining_balance)
                if amount <= 0:
                    return False

                method_ref = loan.payment_method_ref
                borrower_id = loan.borrower_id
                repayment_id = repayment.id
                result = await payments.call_capability(
                    self._charger.charge(method_ref, amount),
                    operation="charge",
                    timeout=self._charge_timeout,
                    target_ref=method_ref,
                )
                await run_with_retry(
                    db,
                    partial(
                        self._settle_charge,
                        loan_id=loan_id,
                        repayment_id=repayment_id,
                        amount=amount,
                        reference=result.reference,
                    ),
                    description=f"auto-debit charge {result.reference} for loan {loan_id}",
                )
        logger.info("Auto-debit collected amount=%s reference=%s", amount, result.reference, extra={"loan_id": loan_id})
        await notify_safely(self._notifier, borrower_id, f"Your repayment of {amount} was collected automatically.")
        return True

    async def _settle_charge(
        self,
        db: AsyncSession,
        *,
        loan_id: UUID,
        repayment_id: UUID,
        amount: Decimal,
        reference: str | None,
    ) -> None:
        loan = await loan_store.get_loan(db, loan_id, for_update=True)
        repayment = await loan_store.get_repayment(db, repayment_id, for_update=True)
        if loan is None or repayment is None:
            raise LookupError(f"loan {loan_id} or repayment {repayment_id} disappeared after charge {reference}")
        # A retried write must not book the same charge twice.
        already_booked = reference is not None and repayment.charge_reference == reference
        if not already_booked and repayment.status != RepaymentStatus.PAID.value:
            now = self._clock.now()
            old_snapshot = model_snapshot(loan)
            applied = min(amount, loan.remaining_balance)
            if applied < amount:
                logger.error(
                    "Charge %s collected %s but only %s was owed; refund the difference",
                    reference,
                    amount,
                    applied,
                    extra={"loan_id": loan_id},
                )
            repayment.amount_paid = Decimal(repayment.amount_paid or 0) + applied
            repayment.charge_reference = reference
            if installment_outstanding(repayment) <= 0:
                repayment.status = RepaymentStatus.PAID.value
                repayment.paid_at = now
            loan.repaid_amount = Decimal(loan.repaid_amount or 0) + applied
            if loan.repaid_amount >= loan.total_repayment:
                loan.status = LoanStatus.REPAID.value
                loan.repaid_at = now
            journal.post_entry(
                db,
                loan,
                "repayment",
                applied,
                entry_date=now.date(),
                repayment_id=repayment.id,
                external_reference=reference,
                description="Auto-debit collection",
            )
            record_audit_log(
                db,
                actor_id=SYSTEM_ACTOR,
                action="loan.auto_debit_collected",
                resource_type="loan",
                resource_id=str(loan.id),
                old_value=old_snapshot,
                new_value={**model_snapshot(loan), "repayment_id": str(repayment.id), "amount": str(applied)},
            )
        await db.commit()

    # -- pass 2: overdue --

    async def _detect_overdue(self, report: ReconciliationReport, today: date) -> None:
        async with self._session_factory() as db:
            refs = await loan_store.list_overdue_repayment_refs(db, today)
        for repayment_id, loan_id in refs:
            try:
                marked = await self._mark_late(repayment_id, loan_id, today)
            except Exception as exc:  # noqa: BLE001 - isolate per-repayment failures
                report.errors.append(f"overdue {repayment_id}: {exc}")
                logger.exception("Overdue detection crashed for repayment=%s", repayment_id, extra={"loan_id": loan_id})
            else:
                if marked:
                    report.repayments_marked_late += 1
                    report.penalties_applied += self._penalty

    async def _mark_late(self, repayment_id: UUID, loan_id: UUID, today: date) -> bool:
        async with self._locks.hold(loan_id):
            async with self._session_factory() as db:
                loan = await loan_store.get_loan(db, loan_id, for_update=True)
                repayment = await loan_store.get_repayment(db, repayment_id, for_update=True)
                # Only pending -> late; a late or paid repayment is never penalised again.
                if repayment is None or repayment.status != RepaymentStatus.PENDING.value:
                    return False
                if repayment.due_date >= today:
                    return False
                # Settled or written-off loans owe nothing further.
                if loan is None or loan.status not in ACTIVE_LOAN_STATUSES:
                    return False
                old_snapshot = model_snapshot(repayment)
                penalty = self._penalty
                repayment.status = RepaymentStatus.LATE.value
                repayment.penalty = Decimal(repayment.penalty or 0) + penalty
                repayment.late_fee = penalty
                loan.total_repayment = Decimal(loan.total_repayment) + penalty
                journal.post_entry(
                    db,
                    loan,
                    "penalty",
                    penalty,
                    entry_date=today,
                    repayment_id=repayment.id,
                    description=f"Late penalty for installment due {repayment.due_date.isoformat()}",
                )
                record_audit_log(
                    db,
                    actor_id=SYSTEM_ACTOR,
                    action="repayment.marked_late",
                    resource_type="repayment",
                    resource_id=str(repayment.id),
                    old_value=old_snapshot,
                    new_value=model_snapshot(repayment),
                )
                await commit_or_raise(db)
                amount_due = repayment.amount_due
                borrower_id = loan.borrower_id
        logger.info("Repayment %s marked late penalty=%s", repayment_id, penalty, extra={"loan_id": loan_id})
        await notify_safely(
            self._notifier,
            borrower_id,
            f"Your repayment of {amount_due} is overdue. A penalty of {penalty} has been added.",
        )
        return True

    # -- pass 3: default --

    async def _detect_defaults(self, report: ReconciliationReport, today: date) -> None:
        cutoff = today - timedelta(days=int(self._default_after_days_late))
        async with self._session_factory() as db:
            refs = await loan_store.list_late_repayment_refs(db, cutoff)
        for repayment_id, loan_id in refs:
            try:
                defaulted = await self._mark_default(repayment_id, loan_id, cutoff)
            except Exception as exc:  # noqa: BLE001 - isolate per-repayment failures
                report.errors.append(f"default {repayment_id}: {exc}")
                logger.exception("Default detection crashed for repayment=%s", repayment_id, extra={"loan_id": loan_id})
            else:
                if defaulted:
                    report.loans_defaulted += 1

    async def _mark_default(self, repayment_id: UUID, loan_id: UUID, cutoff: date) -> bool:
        async with self._locks.hold(loan_id):
            async with self._session_factory() as db:
                loan = await loan_store.get_loan(db, loan_id, for_update=True)
                repayment = await loan_store.get_repayment(db, repayment_id, for_update=True)
                if repayment is None or repayment.status != RepaymentStatus.LATE.value:
                    return False
                if repayment.due_date >= cutoff:
                    return False
                repayment.status = RepaymentStatus.DEFAULTED.value
                loan_defaulted = False
                if loan is not None and loan.status in ACTIVE_LOAN_STATUSES:
                    old_snapshot = model_snapshot(loan)
                    loan.status = LoanStatus.DEFAULTED.value
                    loan.defaulted_at = self._clock.now()
                    loan_defaulted = True
                    record_audit_log(
                        db,
                        actor_id=SYSTEM_ACTOR,
                        action="loan.defaulted",
                        resource_type="loan",
                        resource_id=str(loan.id),
                        old_value=old_snapshot,
                        new_value={**model_snapshot(loan), "repayment_id": str(repayment.id)},
                    )
                await commit_or_raise(db)
                borrower_id = loan.borrower_id if loan is not None else None
        if loan_defaulted and borrower_id:
            logger.warning("Loan defaulted after missed installment %s", repayment_id, extra={"loan_id": loan_id})
            await notify_safely(self._notifier, borrower_id, "Your loan has been marked as defaulted.")
        return loan_defaulted


def build_scheduler(
    *,
    session_factory: SessionFactory | None = None,
    charger: payments.ChargeCapability | None = None,
    notifier: NotificationCapability | None = None,
    clock: Clock = system_clock,
) -> ReconciliationScheduler:
    from app.db.session import AsyncSessionLocal
    from app.services.notifications import build_notifier

    guard = RedisCycleGuard() if settings.reconciliation_use_redis_lock else None
    return ReconciliationScheduler(
        session_factory or AsyncSessionLocal,
        charger=charger or payments.build_payment_gateway(),
        notifier=notifier or build_notifier(),
        clock=clock,
        cycle_guard=guard,
    )
