from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import text

from app.core.settings import settings
from app.db.session import engine
from app.services.reconciliation import ReconciliationScheduler
from app.utils.redis_client import get_redis_client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _check_db() -> dict[str, str]:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:  # pragma: no cover - exercised in runtime
        return {"status": "error", "error": str(exc)}


async def _check_redis() -> dict[str, str]:
    # Redis only backs the cross-worker reconciliation lock.
    if not settings.reconciliation_use_redis_lock:
        return {"status": "ok", "detail": "not configured"}
    try:
        await get_redis_client().ping()
        return {"status": "ok"}
    except Exception as exc:
        return {"status": "error", "error": str(exc)}


def _check_scheduler(scheduler: ReconciliationScheduler | None) -> dict[str, Any]:
    if not settings.reconciliation_enabled:
        return {"status": "ok", "detail": "disabled"}
    if scheduler is None or not scheduler.running:
        return {"status": "error", "error": "reconciliation loop is not running"}
    last = scheduler.last_report
    return {
        "status": "ok",
        "last_cycle_id": last.cycle_id if last else None,
        "last_cycle_at": last.started_at.isoformat() if last else None,
    }


async def live_payload() -> dict[str, str]:
    return {"status": "ok", "timestamp": _now_iso()}


async def ready_payload(scheduler: ReconciliationScheduler | None = None) -> dict[str, Any]:
    checks = {
        "database": await _check_db(),
        "redis": await _check_redis(),
        "reconciliation": _check_scheduler(scheduler),
    }
    ready = all(check["status"] == "ok" for check in checks.values())
    return {
        "status": "ok" if ready else "degraded",
        "ready": ready,
        "environment": settings.environment,
        "payment_gateway_mode": settings.payment_gateway_mode,
        "timestamp": _now_iso(),
        "checks": checks,
    }
