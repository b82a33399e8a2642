"""
Refund rules for cancelling a match whose payment was already captured.

Uncaptured holds are always voided in full; these rules only decide how much
of a captured payment goes back to the requester, based on how long before
the experience starts the cancellation happens:

    flexible        100% if >= 24h before start, else 0%
    moderate        100% if >= 72h, 50% if >= 24h, else 0%
    strict          100% if >= 7 days, 50% if >= 72h, else 0%
    non_refundable  0%
    full            100% regardless of timing

A match without a start date is treated as far in the future.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from fiesta_escrow.models.experience import CancellationPolicy

# (minimum hours before start, percent refunded), checked top to bottom
_POLICY_STEPS: dict[CancellationPolicy, list[tuple[float, int]]] = {
    CancellationPolicy.FLEXIBLE: [(24, 100)],
    CancellationPolicy.MODERATE: [(72, 100), (24, 50)],
    CancellationPolicy.STRICT: [(168, 100), (72, 50)],
    CancellationPolicy.NON_REFUNDABLE: [],
    CancellationPolicy.FULL: [(float("-inf"), 100)],
}


@dataclass(frozen=True)
class RefundCalculation:
    policy: CancellationPolicy
    refund_percent: int
    refund_cents: int
    hours_until_start: float | None


def hours_until(start_date: datetime | None, now: datetime | None = None) -> float | None:
    if start_date is None:
        return None
    now = now or datetime.now(timezone.utc)
    # SQLite hands back naive datetimes; they are stored as UTC
    if start_date.tzinfo is None:
        start_date = start_date.replace(tzinfo=timezone.utc)
    return (start_date - now).total_seconds() / 3600


def refund_percent(policy: CancellationPolicy, hours_before_start: float | None) -> int:
    hours = float("inf") if hours_before_start is None else hours_before_start
    for minimum_hours, percent in _POLICY_STEPS[policy]:
        if hours >= minimum_hours:
            return percent
    return 0


def calculate_refund(
    policy: CancellationPolicy | str,
    amount_cents: int,
    start_date: datetime | None,
    now: datetime | None = None,
) -> RefundCalculation:
    """Refund owed on cancellation, rounded to the nearest cent."""
    policy = CancellationPolicy(policy)
    hours = hours_until(start_date, now)
    percent = refund_percent(policy, hours)
    return RefundCalculation(
        policy=policy,
        refund_percent=percent,
        refund_cents=round(amount_cents * percent / 100),
        hours_until_start=hours,
    )
