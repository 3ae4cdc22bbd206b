import logging

from fastapi import FastAPI

from app.core.settings import settings
from app.utils.redis_client import close_redis_client

logger = logging.getLogger(__name__)


def register_event_handlers(app: FastAPI) -> None:
    @app.on_event("startup")
    async def on_startup() -> None:
        logger.info("Application startup")
        if settings.reconciliation_enabled:
            app.state.scheduler.start()

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        logger.info("Application shutdown")
        await app.state.scheduler.stop()
        if settings.reconciliation_use_redis_lock:
            await close_redis_client()
