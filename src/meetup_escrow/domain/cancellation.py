"""Cancellation timing classifier.

Maps the moment a transaction is cancelled, relative to its scheduled
meetup, onto a named tier. The tier drives the reputation penalty and the
last-minute counters. Pure and deterministic: same inputs, same tier.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from meetup_escrow.domain.enums import CancellationTiming
from meetup_escrow.domain.exceptions import ValidationError

# Upper bounds (exclusive, in hours before the meetup) of each tier.
_TIER_BOUNDS: tuple[tuple[float, CancellationTiming], ...] = (
    (2.0, CancellationTiming.LAST_MINUTE),
    (6.0, CancellationTiming.SAME_DAY),
    (24.0, CancellationTiming.ONE_DAY_BEFORE),
    (72.0, CancellationTiming.FEW_DAYS_BEFORE),
)

_TIMING_LABELS: dict[CancellationTiming, str] = {
    CancellationTiming.LAST_MINUTE: "Cancelled 2 hours before meetup",
    CancellationTiming.SAME_DAY: "Cancelled same day",
    CancellationTiming.ONE_DAY_BEFORE: "Cancelled 1 day before",
    CancellationTiming.FEW_DAYS_BEFORE: "Cancelled few days before",
    CancellationTiming.WELL_IN_ADVANCE: "Cancelled well in advance",
    CancellationTiming.AFTER_SCHEDULED_TIME: "Cancelled after scheduled time",
    CancellationTiming.UNSCHEDULED: "Cancelled",
}


def classify_cancellation(
    scheduled_meetup_at: datetime | None,
    cancel_time: datetime,
) -> CancellationTiming:
    """Return the timing tier of a cancellation.

    Args:
        scheduled_meetup_at: When the meetup was scheduled, or None.
        cancel_time: When the cancellation happened.

    Raises:
        ValidationError: If either datetime is naive.
    """
    _require_aware(cancel_time, "cancel_time")
    if scheduled_meetup_at is None:
        return CancellationTiming.UNSCHEDULED
    _require_aware(scheduled_meetup_at, "scheduled_meetup_at")

    hours_until_meetup = (scheduled_meetup_at - cancel_time) / timedelta(hours=1)
    if hours_until_meetup < 0:
        return CancellationTiming.AFTER_SCHEDULED_TIME
    for upper_bound, tier in _TIER_BOUNDS:
        if hours_until_meetup < upper_bound:
            return tier
    return CancellationTiming.WELL_IN_ADVANCE


def is_last_minute(timing: CancellationTiming | None) -> bool:
    return timing == CancellationTiming.LAST_MINUTE


def timing_label(timing: CancellationTiming | None) -> str:
    """Human-readable label for a timing tier."""
    if timing is None:
        return _TIMING_LABELS[CancellationTiming.UNSCHEDULED]
    return _TIMING_LABELS[timing]


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{name} must be timezone-aware")
