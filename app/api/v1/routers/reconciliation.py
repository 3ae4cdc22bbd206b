from dataclasses import asdict

from fastapi import APIRouter, Depends

from app.api import deps
from app.schemas.loan import ReconciliationReportResponse
from app.services.reconciliation import ReconciliationScheduler


router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post(
    "/run",
    response_model=ReconciliationReportResponse,
    summary="Run one reconciliation cycle now",
)
async def run_reconciliation_cycle(
    scheduler: ReconciliationScheduler = Depends(deps.get_scheduler),
) -> ReconciliationReportResponse:
    report = await scheduler.run_cycle()
    return ReconciliationReportResponse(**asdict(report))


@router.get(
    "/last",
    response_model=ReconciliationReportResponse | None,
    summary="Report of the most recent reconciliation cycle",
)
async def last_reconciliation_report(
    scheduler: ReconciliationScheduler = Depends(deps.get_scheduler),
) -> ReconciliationReportResponse | None:
    if scheduler.last_report is None:
        return None
    return ReconciliationReportResponse(**asdict(scheduler.last_report))
