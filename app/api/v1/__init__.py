from fastapi import APIRouter

from app.api.v1.routers import health, loans, reconciliation

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(loans.router)
api_router.include_router(reconciliation.router)

__all__ = ["api_router"]
