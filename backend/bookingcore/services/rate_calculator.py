# backend/bookingcore/services/rate_calculator.py
"""
Rate, duration and cost arithmetic for bookings.

Pure functions with no storage access. ``None`` stands for "unknown"
(no rate yet, or a duration that rounds to nothing) and callers display it
as such rather than as zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping, Optional, Union

Number = Union[Decimal, int, float, str]

HALF_HOUR = Decimal("0.5")
MINUTES_PER_UNIT = Decimal(30)
CENTS = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Optional[Decimal]:
    """Convert a rate-like value to Decimal without float artefacts."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def duration_hours(start_at: datetime, end_at: datetime) -> Decimal:
    """
    Booking length rounded to the nearest half hour.

    ``round(minutes / 30) * 0.5`` with ties rounding away from zero, so
    10:00-10:40 is 0.5h and 10:00-10:45 is 1.0h. A result <= 0 means the
    duration is unknown.
    """
    minutes = Decimal(str((end_at - start_at).total_seconds())) / Decimal(60)
    units = (minutes / MINUTES_PER_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return units * HALF_HOUR


def cost(rate: Optional[Number], hours: Optional[Number]) -> Optional[Decimal]:
    """``rate * hours`` when both are known and hours > 0, else None."""
    rate_value = to_decimal(rate)
    hours_value = to_decimal(hours)
    if rate_value is None or hours_value is None or hours_value <= 0:
        return None
    if rate_value < 0:
        raise ValueError("rate must be non-negative")
    return (rate_value * hours_value).quantize(CENTS, rounding=ROUND_HALF_UP)


def group_cost(
    coach_rates: Mapping[str, Optional[Number]],
    hours: Optional[Number],
    expected_coach_ids: Optional[Iterable[str]] = None,
) -> Optional[Decimal]:
    """
    Sum of every coach's rate times the duration.

    Pending (None) while the map is empty, while any expected coach has no
    rate yet, or while the duration is unknown.
    """
    rates = {coach_id: to_decimal(rate) for coach_id, rate in coach_rates.items()}
    rates = {coach_id: rate for coach_id, rate in rates.items() if rate is not None}
    if not rates:
        return None
    if expected_coach_ids is not None and any(c not in rates for c in expected_coach_ids):
        return None
    return cost(sum(rates.values(), Decimal(0)), hours)


@dataclass(frozen=True)
class CostEstimate:
    """Duration and total cost of a booking as shown to participants."""

    duration_hours: Optional[Decimal]
    total: Optional[Decimal]
    is_group: bool

    @property
    def is_known(self) -> bool:
        return self.total is not None


def estimate_booking_cost(
    start_at: datetime,
    end_at: datetime,
    coach_ids: Iterable[str],
    rate_usd: Optional[Number] = None,
    coach_rates: Optional[Mapping[str, Optional[Number]]] = None,
) -> CostEstimate:
    """Pick the single-coach or per-coach formula based on the coach count."""
    coaches = list(coach_ids)
    hours: Optional[Decimal] = duration_hours(start_at, end_at)
    if hours is not None and hours <= 0:
        hours = None

    if len(coaches) > 1:
        return CostEstimate(
            duration_hours=hours,
            total=group_cost(coach_rates or {}, hours, expected_coach_ids=coaches),
            is_group=True,
        )
    return CostEstimate(duration_hours=hours, total=cost(rate_usd, hours), is_group=False)
