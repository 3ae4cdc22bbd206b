from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from app.core.settings import settings


logger = logging.getLogger(__name__)


class NotificationCapability(Protocol):
    async def notify(self, recipient_ref: str, message: str) -> None: ...


class LoggingNotifier:
    async def notify(self, recipient_ref: str, message: str) -> None:
        logger.info("Notification to borrower=%s: %s", recipient_ref, message)


class WebhookNotifier:
    """Hands messages to an SMS/WhatsApp relay over HTTP."""

    def __init__(self, url: str, *, timeout: float = 10, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def notify(self, recipient_ref: str, message: str) -> None:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, json={"recipient": recipient_ref, "message": message})
            response.raise_for_status()


async def notify_safely(
    notifier: NotificationCapability | None,
    recipient_ref: str,
    message: str,
    *,
    timeout: float | None = None,
) -> bool:
    """Fire-and-forget delivery; failures are logged and never propagate."""
    if notifier is None:
        return False
    limit = timeout if timeout is not None else settings.capability_timeout_seconds
    try:
        await asyncio.wait_for(notifier.notify(recipient_ref, message), timeout=limit)
    except Exception as exc:  # noqa: BLE001 - delivery is best effort
        logger.warning("Notification to borrower=%s failed: %s", recipient_ref, exc)
        return False
    return True


def build_notifier() -> NotificationCapability:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url, timeout=settings.capability_timeout_seconds)
    return LoggingNotifier()
