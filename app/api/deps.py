from fastapi import Request

from app.core.clock import Clock, system_clock
from app.services.loan_locks import LoanLockRegistry, loan_locks
from app.services.notifications import NotificationCapability
from app.services.payments import ChargeCapability, DisburseCapability
from app.services.reconciliation import ReconciliationScheduler


def get_payment_gateway(request: Request) -> ChargeCapability | DisburseCapability:
    return request.app.state.payment_gateway


def get_notifier(request: Request) -> NotificationCapability | None:
    return getattr(request.app.state, "notifier", None)


def get_clock() -> Clock:
    return system_clock


def get_loan_locks() -> LoanLockRegistry:
    return loan_locks


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return request.app.state.scheduler
