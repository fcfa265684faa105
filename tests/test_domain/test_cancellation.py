"""Tests for the cancellation timing classifier."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from meetup_escrow.domain.cancellation import (
    classify_cancellation,
    is_last_minute,
    timing_label,
)
from meetup_escrow.domain.enums import CancellationTiming
from meetup_escrow.domain.exceptions import ValidationError

NOW = datetime(2026, 5, 10, 9, 30, tzinfo=UTC)


class TestTiers:
    @pytest.mark.parametrize(
        ("offset_hours", "expected"),
        [
            (1, CancellationTiming.LAST_MINUTE),
            (5, CancellationTiming.SAME_DAY),
            (20, CancellationTiming.ONE_DAY_BEFORE),
            (50, CancellationTiming.FEW_DAYS_BEFORE),
            (100, CancellationTiming.WELL_IN_ADVANCE),
            (-1, CancellationTiming.AFTER_SCHEDULED_TIME),
        ],
    )
    def test_examples(self, offset_hours: int, expected: CancellationTiming) -> None:
        assert classify_cancellation(NOW + timedelta(hours=offset_hours), NOW) == expected

    def test_unscheduled(self) -> None:
        assert classify_cancellation(None, NOW) == CancellationTiming.UNSCHEDULED

    @pytest.mark.parametrize(
        ("offset_hours", "expected"),
        [
            (0, CancellationTiming.LAST_MINUTE),
            (2, CancellationTiming.SAME_DAY),
            (6, CancellationTiming.ONE_DAY_BEFORE),
            (24, CancellationTiming.FEW_DAYS_BEFORE),
            (72, CancellationTiming.WELL_IN_ADVANCE),
        ],
    )
    def test_lower_bounds_are_inclusive(self, offset_hours: int, expected: CancellationTiming) -> None:
        assert classify_cancellation(NOW + timedelta(hours=offset_hours), NOW) == expected

    def test_one_second_late_is_after_scheduled_time(self) -> None:
        meetup = NOW - timedelta(seconds=1)
        assert classify_cancellation(meetup, NOW) == CancellationTiming.AFTER_SCHEDULED_TIME

    def test_just_under_two_hours_is_last_minute(self) -> None:
        meetup = NOW + timedelta(hours=2) - timedelta(milliseconds=1)
        assert classify_cancellation(meetup, NOW) == CancellationTiming.LAST_MINUTE

    def test_offsets_are_compared_as_instants(self) -> None:
        tokyo = timezone(timedelta(hours=9))
        meetup = (NOW + timedelta(hours=1)).astimezone(tokyo)
        assert classify_cancellation(meetup, NOW) == CancellationTiming.LAST_MINUTE


class TestValidation:
    def test_naive_cancel_time_rejected(self) -> None:
        with pytest.raises(ValidationError, match="cancel_time"):
            classify_cancellation(None, datetime(2026, 5, 10, 9, 30))

    def test_naive_meetup_rejected(self) -> None:
        with pytest.raises(ValidationError, match="scheduled_meetup_at"):
            classify_cancellation(datetime(2026, 5, 10, 12, 0), NOW)


class TestHelpers:
    def test_is_last_minute_only_for_last_minute(self) -> None:
        assert is_last_minute(CancellationTiming.LAST_MINUTE)
        assert not any(
            is_last_minute(t) for t in CancellationTiming if t != CancellationTiming.LAST_MINUTE
        )
        assert not is_last_minute(None)

    def test_labels(self) -> None:
        assert timing_label(CancellationTiming.SAME_DAY) == "Cancelled same day"
        assert timing_label(None) == "Cancelled"
        assert all(timing_label(t) for t in CancellationTiming)
