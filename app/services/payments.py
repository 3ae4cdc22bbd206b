from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Protocol

import httpx

from app.core.settings import settings
from app.models.types import mask_reference
from app.services.ledger_errors import PaymentError


logger = logging.getLogger(__name__)

SANDBOX_DECLINE_PREFIX = "decline"


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    reference: str | None = None
    message: str | None = None


class ChargeCapability(Protocol):
    async def charge(self, method_ref: str, amount: Decimal) -> PaymentResult: ...


class DisburseCapability(Protocol):
    async def disburse(self, amount: Decimal, destination_ref: str | None) -> PaymentResult: ...


def _to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate_amount(amount: Decimal) -> None:
    if amount is None or amount <= 0:
        raise PaymentError("Invalid amount", code="invalid_amount", details={"amount": str(amount)})


class SandboxPaymentGateway:
    """Test-mode gateway: nothing moves, every call returns a fake reference.

    Payment method references starting with ``decline`` are refused so the
    failure paths can be exercised end to end.
    """

    async def charge(self, method_ref: str, amount: Decimal) -> PaymentResult:
        _validate_amount(amount)
        if not method_ref:
            raise PaymentError("Payment method is required", code="payment_method_required")
        if method_ref.startswith(SANDBOX_DECLINE_PREFIX):
            return PaymentResult(success=False, message="Card declined (sandbox)")
        return PaymentResult(success=True, reference=f"sandbox_ch_{uuid.uuid4().hex[:16]}")

    async def disburse(self, amount: Decimal, destination_ref: str | None) -> PaymentResult:
        _validate_amount(amount)
        if destination_ref and destination_ref.startswith(SANDBOX_DECLINE_PREFIX):
            return PaymentResult(success=False, message="Payout rejected (sandbox)")
        return PaymentResult(
            success=True,
            reference=f"sandbox_tr_{uuid.uuid4().hex[:16]}",
            message="Funds disbursed (TEST MODE - no real money moved)",
        )


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        currency: str = "USD",
        timeout: float = 20,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._currency = currency
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self._api_key}"},
        )

    async def _post(self, path: str, payload: dict) -> PaymentResult:
        headers = {"Idempotency-Key": str(uuid.uuid4())}
        async with self._client() as client:
            response = await client.post(path, json=payload, headers=headers)
        if response.status_code >= 500:
            raise PaymentError(
                "Payment gateway unavailable",
                code="gateway_unavailable",
                details={"status_code": response.status_code},
            )
        body = response.json() if response.content else {}
        status = str(body.get("status", "")).lower()
        if response.is_success and status in {"succeeded", "success", "paid"}:
            return PaymentResult(success=True, reference=body.get("id"))
        return PaymentResult(
            success=False,
            reference=body.get("id"),
            message=body.get("error") or body.get("message") or f"status={status or response.status_code}",
        )

    async def charge(self, method_ref: str, amount: Decimal) -> PaymentResult:
        _validate_amount(amount)
        if not method_ref:
            raise PaymentError("Payment method is required", code="payment_method_required")
        return await self._post(
            "/charges",
            {
                "payment_method": method_ref,
                "amount": _to_minor_units(amount),
                "currency": self._currency.lower(),
                "confirm": True,
            },
        )

    async def disburse(self, amount: Decimal, destination_ref: str | None) -> PaymentResult:
        _validate_amount(amount)
        return await self._post(
            "/payouts",
            {
                "destination": destination_ref,
                "amount": _to_minor_units(amount),
                "currency": self._currency.lower(),
            },
        )


async def call_capability(
    call: Awaitable[PaymentResult],
    *,
    operation: str,
    timeout: float | None = None,
    target_ref: str | None = None,
) -> PaymentResult:
    """Await a charge/disburse call with a bounded timeout.

    Timeouts, transport errors and declines all come back as ``PaymentError``.
    """
    limit = timeout if timeout is not None else settings.capability_timeout_seconds
    try:
        result = await asyncio.wait_for(call, timeout=limit)
    except (asyncio.TimeoutError, TimeoutError) as exc:
        raise PaymentError(
            f"{operation} timed out after {limit}s",
            code=f"{operation}_timeout",
            details={"timeout_seconds": limit, "target": mask_reference(target_ref)},
        ) from exc
    except httpx.HTTPError as exc:
        raise PaymentError(
            f"{operation} failed: {exc}",
            code=f"{operation}_failed",
            details={"target": mask_reference(target_ref)},
        ) from exc
    if not result.success:
        raise PaymentError(
            f"{operation} declined: {result.message or 'no reason given'}",
            code=f"{operation}_declined",
            details={"reference": result.reference, "target": mask_reference(target_ref)},
        )
    return result


def build_payment_gateway() -> SandboxPaymentGateway | HttpPaymentGateway:
    if settings.payment_gateway_mode == "http":
        return HttpPaymentGateway(
            settings.payment_gateway_url,
            settings.payment_gateway_api_key,
            currency=settings.currency,
            timeout=settings.capability_timeout_seconds,
        )
    logger.info("Using sandbox payment gateway; no real money will move")
    return SandboxPaymentGateway()
