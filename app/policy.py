"""
Cancellation policy: maps how close to pickup a guest cancels onto a penalty
measured in days of the trip's average daily cost.

  72h or more before pickup   free         no penalty
  24h to 72h                  moderate     a quarter of the trip's days
  12h to 24h                  late         half of the trip's days
  0h to 12h                   last_minute  every day of the trip
  after pickup                no_show      every day of the trip

Only the refundable base (daily rate x days) is ever at risk; fees and taxes
are stripped by the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from app.money import ZERO, quantize

FREE_CANCELLATION_HOURS = Decimal(72)
MODERATE_CANCELLATION_HOURS = Decimal(24)
LATE_CANCELLATION_HOURS = Decimal(12)

# (min hours before pickup, tier, label, share of trip days forfeited)
TIERS: tuple[tuple[Decimal, str, str, Decimal], ...] = (
    (FREE_CANCELLATION_HOURS, "free", "72+ hours before pickup: full refund", Decimal(0)),
    (MODERATE_CANCELLATION_HOURS, "moderate", "24-72 hours: 75% refund", Decimal("0.25")),
    (LATE_CANCELLATION_HOURS, "late", "12-24 hours: 50% refund", Decimal("0.5")),
    (Decimal(0), "last_minute", "Under 12 hours: no refund", Decimal(1)),
)
NO_SHOW = ("no_show", "No-show (cancelled after pickup time)", Decimal(1))


@dataclass(frozen=True)
class CancellationQuote:
    tier: str
    label: str
    penalty_amount: Decimal
    penalty_days: Decimal
    average_daily_cost: Decimal
    refund_amount: Decimal
    hours_until_pickup: Decimal


def _tier_for(hours: Decimal) -> tuple[str, str, Decimal]:
    for threshold, tier, label, share in TIERS:
        if hours >= threshold:
            return tier, label, share
    return NO_SHOW


def evaluate(
    scheduled_start: datetime,
    now: datetime,
    refundable_base: Decimal,
    trip_days: int,
) -> CancellationQuote:
    if scheduled_start.tzinfo is None or now.tzinfo is None:
        raise ValueError("scheduled_start and now must be timezone-aware")
    if refundable_base < 0:
        raise ValueError(f"refundable_base must be >= 0, got {refundable_base}")
    if trip_days <= 0:
        raise ValueError(f"trip_days must be positive, got {trip_days}")

    seconds = Decimal(str((scheduled_start - now).total_seconds()))
    hours = seconds / Decimal(3600)

    average = quantize(refundable_base / Decimal(trip_days))
    tier, label, share = _tier_for(hours)
    penalty_days = share * Decimal(trip_days)

    if share >= 1:
        # whole trip forfeited; avoids 3 x 33.33 leaving a cent behind
        penalty = refundable_base
    else:
        penalty = max(min(refundable_base, quantize(refundable_base * share)), ZERO)

    return CancellationQuote(
        tier=tier,
        label=label,
        penalty_amount=penalty,
        penalty_days=penalty_days,
        average_daily_cost=average,
        refund_amount=refundable_base - penalty,
        hours_until_pickup=hours.quantize(Decimal("0.01")),
    )
