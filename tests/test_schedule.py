from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from app.transfers.errors import InvalidInputError
from app.transfers.schedule import (
    aging_period_from_days,
    complaint_window_from_hours,
    compute_eligible_time,
)


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
AGING = timedelta(days=7)
COMPLAINT = timedelta(hours=24)


def test_service_window_dominates():
    window_end = T0 + timedelta(days=10)
    eligible = compute_eligible_time(T0, window_end, AGING, COMPLAINT)
    assert eligible == T0 + timedelta(days=11)


def test_aging_dominates():
    window_end = T0 + timedelta(days=1)
    eligible = compute_eligible_time(T0, window_end, AGING, COMPLAINT)
    assert eligible == T0 + timedelta(days=7)


@pytest.mark.parametrize("window_offset_h", [-72, -1, 0, 1, 24, 150, 167, 168, 500])
def test_both_constraints_hold(window_offset_h):
    window_end = T0 + timedelta(hours=window_offset_h)
    eligible = compute_eligible_time(T0, window_end, AGING, COMPLAINT)
    assert eligible >= T0 + AGING
    assert eligible >= window_end + COMPLAINT
    assert eligible in (T0 + AGING, window_end + COMPLAINT)


def test_late_payment_still_returns_valid_time():
    window_end = T0 - timedelta(days=2)
    eligible = compute_eligible_time(T0, window_end, AGING, COMPLAINT)
    assert eligible == T0 + AGING


def test_numeric_durations_are_seconds():
    eligible = compute_eligible_time(T0, T0, 3600, 60.0)
    assert eligible == T0 + timedelta(hours=1)


def test_mixed_timezones_compare_by_instant():
    plus_two = timezone(timedelta(hours=2))
    confirmed = datetime(2026, 3, 2, 11, 0, tzinfo=plus_two)  # == T0
    eligible = compute_eligible_time(confirmed, T0 + timedelta(days=1), AGING, COMPLAINT)
    assert eligible == T0 + AGING


@pytest.mark.parametrize("bad", [0, -1, math.nan, math.inf, -math.inf, None, True, "soon", timedelta(0)])
def test_invalid_durations_raise(bad):
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, T0, bad, COMPLAINT)
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, T0, AGING, bad)


def test_naive_timestamps_rejected():
    with pytest.raises(InvalidInputError):
        compute_eligible_time(datetime(2026, 3, 2), T0, AGING, COMPLAINT)
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, "2026-03-02T00:00:00Z", AGING, COMPLAINT)


def test_payload_duration_helpers():
    assert aging_period_from_days(7) == timedelta(days=7)
    assert aging_period_from_days("1.5") == timedelta(days=1.5)
    assert complaint_window_from_hours(24) == timedelta(hours=24)

    for bad in ("NaN", "inf", "", "-3", 0, None, False):
        with pytest.raises(InvalidInputError):
            aging_period_from_days(bad)
        with pytest.raises(InvalidInputError):
            complaint_window_from_hours(bad)


def test_invalid_input_is_a_value_error():
    with pytest.raises(ValueError):
        compute_eligible_time(T0, T0, -5, COMPLAINT)


def test_huge_duration_helpers_raise_invalid_input():
    with pytest.raises(InvalidInputError):
        aging_period_from_days(1e12)
    with pytest.raises(InvalidInputError):
        complaint_window_from_hours(10**400)
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, T0, 10**400, COMPLAINT)


def test_eligible_time_past_datetime_range_raises_invalid_input():
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, T0, timedelta(days=5_000_000), timedelta(hours=1))
    with pytest.raises(InvalidInputError):
        compute_eligible_time(T0, T0, AGING, timedelta(days=5_000_000))
