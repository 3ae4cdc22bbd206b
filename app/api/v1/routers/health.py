from fastapi import APIRouter, Depends

from app.api.deps import get_scheduler
from app.core.health import live_payload, ready_payload
from app.services.reconciliation import ReconciliationScheduler

router = APIRouter(tags=["health"])


@router.get("/health/live", summary="Service liveness check")
async def health_live() -> dict:
    return await live_payload()


@router.get("/health/ready", summary="Service readiness check")
async def health_ready(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> dict:
    return await ready_payload(scheduler)


@router.get("/health", summary="Backward-compatible readiness check")
async def read_health(scheduler: ReconciliationScheduler = Depends(get_scheduler)) -> dict:
    return await ready_payload(scheduler)
