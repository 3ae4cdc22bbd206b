from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.settings import settings
from app.services.ledger_errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, DBAPIError, StaleDataError)


async def commit_or_raise(db: AsyncSession) -> None:
    """Commit once; a store failure surfaces as PersistenceError."""
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Ledger store unavailable", details={"error": str(exc)}) from exc


async def run_with_retry(
    db: AsyncSession,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    description: str,
    attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> T:
    """Run ``operation`` (which must re-read what it mutates and commit) until it sticks.

    Used once an external side effect is confirmed, so the ledger write is not
    optional. ``operation`` has to be idempotent: after a rollback it is
    invoked again from scratch.
    """
    max_attempts = attempts if attempts is not None else settings.persistence_retry_attempts
    delay = backoff_seconds if backoff_seconds is not None else settings.persistence_retry_backoff_seconds
    last_error: Exception | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(db)
        except TRANSIENT_ERRORS as exc:
            last_error = exc
            await db.rollback()
            logger.warning(
                "Persisting %s failed (attempt %s/%s): %s",
                description,
                attempt,
                max_attempts,
                exc,
            )
            if attempt < max_attempts and delay:
                await asyncio.sleep(delay * (2 ** (attempt - 1)))
    logger.error("Giving up persisting %s after %s attempts", description, max_attempts)
    raise PersistenceError(
        f"Could not persist {description}",
        details={"attempts": max_attempts, "error": str(last_error)},
    ) from last_error
