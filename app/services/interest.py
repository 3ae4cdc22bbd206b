from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, localcontext

from app.services.ledger_errors import ValidationError


TWOPLACES = Decimal("0.01")


def as_decimal(value) -> Decimal:
    """Coerce a money-ish value to ``Decimal``; ``None`` counts as zero."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value if value is not None else 0))


def quantize_money(value) -> Decimal:
    return as_decimal(value).quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def compute_total_repayment(principal, daily_rate, tenure_days: int) -> Decimal:
    """Compound daily interest: ``principal * (1 + daily_rate) ** tenure_days``.

    ``daily_rate`` is a fraction (0.0004 for 0.04%/day). The result is rounded
    half-up to cents; the computation runs in a fixed-precision decimal context
    so identical inputs always reproduce the same total.
    """
    principal = as_decimal(principal)
    rate = as_decimal(daily_rate)
    if principal < 0:
        raise ValidationError("principal must not be negative", details={"principal": str(principal)})
    if rate < 0:
        raise ValidationError("daily_rate must not be negative", details={"daily_rate": str(rate)})
    if tenure_days < 0:
        raise ValidationError("tenure_days must not be negative", details={"tenure_days": tenure_days})
    with localcontext() as ctx:
        ctx.prec = 34
        total = principal * (Decimal("1") + rate) ** tenure_days
    return total.quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def compute_due_date(today: date, tenure_days: int) -> date:
    return today + timedelta(days=tenure_days)


def split_installments(total, count: int) -> list[Decimal]:
    """Equal installments in cents; the last one absorbs the rounding remainder."""
    if count < 1:
        raise ValidationError("installment count must be >= 1", details={"count": count})
    total = quantize_money(total)
    share = (total / Decimal(count)).quantize(TWOPLACES, rounding=ROUND_DOWN)
    installments = [share] * (count - 1)
    installments.append(total - share * (count - 1))
    return installments


def installment_due_dates(start: date, tenure_days: int, count: int) -> list[date]:
    if count < 1:
        raise ValidationError("installment count must be >= 1", details={"count": count})
    dates = []
    for period in range(1, count + 1):
        offset = (tenure_days * period + count - 1) // count
        dates.append(start + timedelta(days=offset))
    return dates
