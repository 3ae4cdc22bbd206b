import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.schemas.loan import LoanStatus, RepaymentMethod, RepaymentStatus
from app.services import loan_ledger, loan_repayments, loan_store
from app.services.audit import SYSTEM_ACTOR
from app.services.journal import LOANS_RECEIVABLE, PENALTY_INCOME
from app.services.ledger_errors import AlreadySettledError
from app.services.reconciliation import ReconciliationScheduler
from conftest import START, FakeGateway, make_loan, make_repayment

TODAY = START.date()


def _scheduler(session_factory, gateway, notifier, clock, locks, **overrides) -> ReconciliationScheduler:
    kwargs = dict(
        charger=gateway,
        notifier=notifier,
        clock=clock,
        locks=locks,
        interval_seconds=3600,
        penalty_amount=Decimal("10.00"),
        default_after_days_late=None,
        charge_timeout=1,
    )
    kwargs.update(overrides)
    return ReconciliationScheduler(session_factory, **kwargs)


def _seed(store, *, method=RepaymentMethod.AUTO_DEBIT.value, due_in_days=0, borrower_id="borrower-1", **loan_overrides):
    due = TODAY + timedelta(days=due_in_days)
    loan = make_loan(borrower_id=borrower_id, repayment_method=method, due_date=due, **loan_overrides)
    repayment = make_repayment(loan, due_date=due)
    store.register(loan)
    store.register(repayment)
    return loan, repayment


class _HangingGateway(FakeGateway):
    async def charge(self, method_ref, amount):
        if method_ref == "pm_hang":
            self.charges.append((method_ref, amount))
            await asyncio.sleep(60)
        return await super().charge(method_ref, amount)


class _FlakyStoreGateway(FakeGateway):
    def __init__(self, db, failures: int) -> None:
        super().__init__()
        self._db = db
        self._failures = failures

    async def charge(self, method_ref, amount):
        result = await super().charge(method_ref, amount)
        self._db.fail_commits = self._failures
        return result


class _Guard:
    def __init__(self, *, acquired=True, error=None) -> None:
        self.acquired = acquired
        self.error = error
        self.released = 0

    async def acquire(self) -> bool:
        if self.error is not None:
            raise self.error
        return self.acquired

    async def release(self) -> None:
        self.released += 1


@pytest.mark.asyncio
async def test_auto_debit_collects_due_installment(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store)
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    report = await scheduler.run_cycle()

    assert report.loans_scanned == 1
    assert report.charges_succeeded == 1
    assert report.charges_failed == 0
    assert report.repayments_marked_late == 0
    assert gateway.charges == [("pm_card_4242", Decimal("1004.00"))]
    assert repayment.status == RepaymentStatus.PAID.value
    assert repayment.amount_paid == Decimal("1004.00")
    assert repayment.charge_reference.startswith("ch_")
    assert loan.repaid_amount == Decimal("1004.00")
    assert loan.status == LoanStatus.REPAID.value
    (entry,) = patch_store.journal_for(loan.id)
    assert entry.external_reference == repayment.charge_reference
    assert patch_store.audit[-1].actor_id == SYSTEM_ACTOR
    assert notifier.messages == [("borrower-1", "Your repayment of 1004.00 was collected automatically.")]
    assert scheduler.last_report is report


@pytest.mark.asyncio
async def test_auto_debit_skips_installments_not_yet_due(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, due_in_days=3)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.loans_scanned == 1
    assert report.charges_succeeded == 0
    assert gateway.charges == []
    assert repayment.status == RepaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_auto_debit_charges_only_remaining_balance(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, repaid_amount="1000.00")

    await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert gateway.charges == [("pm_card_4242", Decimal("4.00"))]
    assert loan.status == LoanStatus.REPAID.value
    assert repayment.amount_paid == Decimal("4.00")
    assert repayment.status == RepaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_declined_charge_then_overdue_penalty(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store)
    gateway.decline = True
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    first = await scheduler.run_cycle()

    assert first.charges_failed == 1
    assert first.repayments_marked_late == 0
    assert repayment.status == RepaymentStatus.PENDING.value
    assert loan.repaid_amount == Decimal("0.00")

    clock.advance(days=1)
    second = await scheduler.run_cycle()

    assert second.charges_failed == 1
    assert second.repayments_marked_late == 1
    assert second.penalties_applied == Decimal("10.00")
    assert repayment.status == RepaymentStatus.LATE.value
    assert repayment.penalty == Decimal("10.00")
    assert repayment.late_fee == Decimal("10.00")
    assert loan.total_repayment == Decimal("1014.00")
    assert notifier.messages[-1] == (
        "borrower-1",
        "Your repayment of 1004.00 is overdue. A penalty of 10.00 has been added.",
    )


@pytest.mark.asyncio
async def test_sweep_runs_before_overdue_detection(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, due_in_days=-2)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.charges_succeeded == 1
    assert report.repayments_marked_late == 0
    assert repayment.status == RepaymentStatus.PAID.value
    assert repayment.penalty == Decimal("0.00")


@pytest.mark.asyncio
async def test_overdue_manual_installment_penalised_once(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, method=RepaymentMethod.MANUAL.value, due_in_days=-1)
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    first = await scheduler.run_cycle()
    clock.advance(days=1)
    second = await scheduler.run_cycle()

    assert first.loans_scanned == 0
    assert first.repayments_marked_late == 1
    assert second.repayments_marked_late == 0
    assert gateway.charges == []
    assert repayment.penalty == Decimal("10.00")
    assert loan.total_repayment == Decimal("1014.00")
    (entry,) = patch_store.journal_for(loan.id)
    assert (entry.entry_type, entry.debit_account, entry.credit_account) == ("penalty", LOANS_RECEIVABLE, PENALTY_INCOME)
    assert entry.repayment_id == repayment.id


@pytest.mark.asyncio
async def test_installment_due_today_is_not_overdue(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    _, repayment = _seed(patch_store, method=RepaymentMethod.MANUAL.value, due_in_days=0)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.repayments_marked_late == 0
    assert repayment.status == RepaymentStatus.PENDING.value


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [LoanStatus.REPAID.value, LoanStatus.DEFAULTED.value])
async def test_overdue_installment_on_closed_loan_not_penalised(
    session_factory, patch_store, gateway, notifier, clock, locks, status
) -> None:
    loan, repayment = _seed(
        patch_store,
        method=RepaymentMethod.MANUAL.value,
        due_in_days=-5,
        status=status,
        repaid_amount="1004.00" if status == LoanStatus.REPAID.value else "0.00",
    )

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.repayments_marked_late == 0
    assert repayment.status == RepaymentStatus.PENDING.value
    assert repayment.penalty == Decimal("0.00")
    assert loan.total_repayment == Decimal("1004.00")
    assert patch_store.journal_for(loan.id) == []
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_loan_settled_after_listing_is_not_penalised(
    monkeypatch, session_factory, patch_store, gateway, notifier, clock, locks
) -> None:
    loan, repayment = _seed(patch_store, method=RepaymentMethod.MANUAL.value, due_in_days=-5)

    async def listed_before_settlement(db, as_of):
        loan.status = LoanStatus.REPAID.value
        loan.repaid_amount = loan.total_repayment
        return [(repayment.id, loan.id)]

    monkeypatch.setattr(loan_store, "list_overdue_repayment_refs", listed_before_settlement)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.repayments_marked_late == 0
    assert report.errors == []
    assert loan.total_repayment == loan.repaid_amount == Decimal("1004.00")
    assert repayment.status == RepaymentStatus.PENDING.value
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_repaid_before_payout_never_reopens_balance(fake_db, session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan = await loan_ledger.apply_for_loan(
        fake_db,
        borrower_id="borrower-1",
        principal=Decimal("1000"),
        tenure_days=30,
        disbursement_account_ref="acct_0001",
        clock=clock,
        locks=locks,
    )
    gateway.decline = True
    await loan_ledger.decide_loan(fake_db, loan.id, "approve", disburser=gateway, clock=clock, locks=locks)
    await loan_repayments.apply_repayment(fake_db, loan.id, Decimal("500.00"), clock=clock, locks=locks)
    gateway.decline = False
    await loan_ledger.retry_disbursement(fake_db, loan.id, disburser=gateway, clock=clock, locks=locks)
    await loan_repayments.apply_repayment(fake_db, loan.id, Decimal("512.07"), clock=clock, locks=locks)

    (installment,) = patch_store.repayments_for(loan.id)
    assert loan.status == LoanStatus.REPAID.value
    assert installment.status == RepaymentStatus.PAID.value
    assert installment.amount_paid == Decimal("1012.07")

    clock.advance(days=45)
    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.repayments_marked_late == 0
    assert loan.total_repayment == loan.repaid_amount == Decimal("1012.07")
    assert notifier.messages == []


@pytest.mark.asyncio
async def test_hung_charge_times_out_without_stalling_batch(session_factory, patch_store, notifier, clock, locks) -> None:
    gateway = _HangingGateway()
    _, stuck = _seed(patch_store, borrower_id="borrower-1", payment_method_ref="pm_hang")
    _, healthy = _seed(patch_store, borrower_id="borrower-2")

    report = await _scheduler(session_factory, gateway, notifier, clock, locks, charge_timeout=0.05).run_cycle()

    assert report.loans_scanned == 2
    assert report.charges_failed == 1
    assert report.charges_succeeded == 1
    assert stuck.status == RepaymentStatus.PENDING.value
    assert healthy.status == RepaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_confirmed_charge_persisted_after_transient_failures(fake_db, session_factory, patch_store, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store)
    gateway = _FlakyStoreGateway(fake_db, failures=2)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.charges_succeeded == 1
    assert fake_db.rollbacks == 2
    assert len(gateway.charges) == 1
    assert loan.repaid_amount == Decimal("1004.00")
    assert len(patch_store.journal_for(loan.id)) == 1


@pytest.mark.asyncio
async def test_manual_repayment_waits_for_in_flight_charge(session_factory, fake_db, patch_store, gateway, notifier, clock, locks) -> None:
    loan, _ = _seed(patch_store)
    gateway.delay = 0.05
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    cycle = asyncio.create_task(scheduler.run_cycle())
    await asyncio.sleep(0.01)
    assert locks.is_locked(loan.id)

    with pytest.raises(AlreadySettledError):
        await loan_repayments.apply_repayment(fake_db, loan.id, Decimal("1004.00"), clock=clock, locks=locks)

    report = await cycle
    assert report.charges_succeeded == 1
    assert loan.repaid_amount == Decimal("1004.00")


@pytest.mark.asyncio
async def test_default_detection_when_threshold_configured(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, method=RepaymentMethod.MANUAL.value, due_in_days=-10)
    repayment.status = RepaymentStatus.LATE.value
    repayment.penalty = Decimal("10.00")

    report = await _scheduler(
        session_factory, gateway, notifier, clock, locks, default_after_days_late=3
    ).run_cycle()

    assert report.loans_defaulted == 1
    assert repayment.status == RepaymentStatus.DEFAULTED.value
    assert loan.status == LoanStatus.DEFAULTED.value
    assert loan.defaulted_at == START
    assert notifier.messages[-1] == ("borrower-1", "Your loan has been marked as defaulted.")


@pytest.mark.asyncio
async def test_no_default_without_threshold(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    loan, repayment = _seed(patch_store, method=RepaymentMethod.MANUAL.value, due_in_days=-90)
    repayment.status = RepaymentStatus.LATE.value

    report = await _scheduler(session_factory, gateway, notifier, clock, locks).run_cycle()

    assert report.loans_defaulted == 0
    assert loan.status == LoanStatus.DISBURSED.value


@pytest.mark.asyncio
async def test_overlapping_cycles_are_skipped(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    _seed(patch_store)
    gateway.delay = 0.05
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    first, second = await asyncio.gather(scheduler.run_cycle(), scheduler.run_cycle())

    assert sorted([first.skipped, second.skipped]) == [False, True]
    assert len(gateway.charges) == 1


@pytest.mark.asyncio
async def test_cycle_guard_held_elsewhere_skips(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    _seed(patch_store)
    guard = _Guard(acquired=False)

    report = await _scheduler(session_factory, gateway, notifier, clock, locks, cycle_guard=guard).run_cycle()

    assert report.skipped
    assert gateway.charges == []
    assert guard.released == 0


@pytest.mark.asyncio
async def test_cycle_guard_outage_runs_unguarded(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    _seed(patch_store)
    guard = _Guard(error=RedisConnectionError("redis down"))

    report = await _scheduler(session_factory, gateway, notifier, clock, locks, cycle_guard=guard).run_cycle()

    assert not report.skipped
    assert report.charges_succeeded == 1


@pytest.mark.asyncio
async def test_start_runs_a_cycle_and_stop_ends_loop(session_factory, patch_store, gateway, notifier, clock, locks) -> None:
    _seed(patch_store)
    scheduler = _scheduler(session_factory, gateway, notifier, clock, locks)

    scheduler.start()
    await asyncio.sleep(0.05)
    assert scheduler.running
    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.last_report is not None
    assert scheduler.last_report.charges_succeeded == 1
