# app/transfers/schedule.py
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Union

from app.transfers.errors import InvalidInputError

Duration = Union[timedelta, int, float]


def _require_aware(name: str, value: Any) -> datetime:
    if not isinstance(value, datetime):
        raise InvalidInputError(f"{name} must be a datetime, got {type(value).__name__}")
    if value.tzinfo is None or value.utcoffset() is None:
        raise InvalidInputError(f"{name} must be timezone-aware")
    return value


def _finite_positive(name: str, value: Any) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or value is None:
        raise InvalidInputError(f"{name} must be a finite positive number, got {value!r}")
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            raise InvalidInputError(f"{name} must be a finite positive number, got {value!r}") from None
    if not isinstance(value, (int, float)):
        raise InvalidInputError(f"{name} must be a finite positive number, got {type(value).__name__}")
    try:
        number = float(value)
    except OverflowError:
        raise InvalidInputError(f"{name} is out of range") from None
    if not math.isfinite(number) or number <= 0:
        raise InvalidInputError(f"{name} must be a finite positive number, got {value!r}")
    return number


def _to_timedelta(name: str, **parts: float) -> timedelta:
    try:
        return timedelta(**parts)
    except OverflowError:
        raise InvalidInputError(f"{name} is out of range") from None


def _as_timedelta(name: str, value: Any) -> timedelta:
    if isinstance(value, timedelta):
        if value <= timedelta(0):
            raise InvalidInputError(f"{name} must be positive, got {value}")
        return value
    return _to_timedelta(name, seconds=_finite_positive(name, value))


def aging_period_from_days(value: Any) -> timedelta:
    return _to_timedelta("aging_period_days", days=_finite_positive("aging_period_days", value))


def complaint_window_from_hours(value: Any) -> timedelta:
    return _to_timedelta("complaint_window_hours", hours=_finite_positive("complaint_window_hours", value))


def compute_eligible_time(
    payment_confirmed_at: datetime,
    service_window_end: datetime,
    aging_period: Duration,
    complaint_window: Duration,
) -> datetime:
    """
    Earliest moment a payout may execute.

    Both constraints hold independently:
      - aging:     at least ``aging_period`` after the payment was confirmed
      - complaint: at least ``complaint_window`` after the service ended

    Numeric durations are seconds. Non-finite or non-positive durations raise
    InvalidInputError, as does any pair whose sum leaves the datetime range;
    the result is never earlier than either bound.
    """
    confirmed = _require_aware("payment_confirmed_at", payment_confirmed_at)
    window_end = _require_aware("service_window_end", service_window_end)
    aging = _as_timedelta("aging_period", aging_period)
    complaint = _as_timedelta("complaint_window", complaint_window)

    try:
        return max(confirmed + aging, window_end + complaint)
    except OverflowError:
        raise InvalidInputError(
            f"eligible time is out of range (aging={aging}, complaint_window={complaint})"
        ) from None
