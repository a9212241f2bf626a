"""Time-based cancellation refund policy."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from reservation_engine.domain.clock import ensure_utc

SECONDS_PER_HOUR = 3600


def evaluate(
    created_at: datetime,
    now: datetime,
    cancel_window_hours: float,
    full_refund_fraction: float,
) -> float:
    """
    Map elapsed time since booking creation to a refund fraction.

    Returns ``full_refund_fraction`` when fewer than ``cancel_window_hours``
    hours have elapsed (strictly less), otherwise ``0.0``.
    """
    elapsed = ensure_utc(now) - ensure_utc(created_at)
    hours_elapsed = elapsed.total_seconds() / SECONDS_PER_HOUR

    if hours_elapsed < cancel_window_hours:
        return float(full_refund_fraction)
    return 0.0


def refund_amount(total: int, fraction: float) -> int:
    """Refund in minor units, rounded half-up."""
    amount = Decimal(total) * Decimal(str(fraction))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
