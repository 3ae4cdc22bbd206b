from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1 import api_router
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.core.response_envelope import register_response_envelope
from app.core.settings import settings
from app.events import register_event_handlers
from app.middlewares.request_context import RequestContextMiddleware
from app.services.notifications import build_notifier
from app.services.payments import build_payment_gateway
from app.services.reconciliation import build_scheduler


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Micro-lending Ledger", version="0.1.0")
    register_exception_handlers(app)
    register_response_envelope(app)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.payment_gateway = build_payment_gateway()
    app.state.notifier = build_notifier()
    app.state.scheduler = build_scheduler(
        charger=app.state.payment_gateway,
        notifier=app.state.notifier,
    )

    app.include_router(api_router, prefix="/api/v1")
    register_event_handlers(app)
    return app


app = create_app()
