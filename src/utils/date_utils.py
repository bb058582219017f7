"""
Date and Clock Utilities

This module provides the time primitives shared by the workflow engine:
- Coercion of ISO strings / naive datetimes into timezone-aware UTC values.
- A `Clock` protocol with a real and a controllable implementation.
- Countdown helpers used to display time left until a status deadline.

All deadline and priority logic is a pure function of (record, now), so the
engine never calls `datetime.now()` directly; it asks a Clock.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_dt(value: Any) -> Optional[datetime]:
    """Coerce an ISO string or datetime into a timezone-aware datetime."""

    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    return None


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return coerced.isoformat() if coerced else None


def hours_until(deadline: datetime, now: datetime) -> float:
    """Hours from `now` to `deadline`; negative once the deadline has passed."""

    return (coerce_dt(deadline) - coerce_dt(now)).total_seconds() / 3600.0


class Clock(Protocol):
    """Supplies the current time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """A manually advanced clock.

    Used by the CLI demo to simulate days passing and by tests to pin time.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = coerce_dt(start) or utcnow()
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: Any) -> None:
        dt = coerce_dt(value)
        if dt is None:
            raise ValueError(f"Invalid datetime: {value!r}")
        with self._lock:
            self._now = dt

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """Move the clock forward by `delta` or by timedelta keyword args."""

        step = delta if delta is not None else timedelta(**kwargs)
        with self._lock:
            self._now = self._now + step
            return self._now


@dataclass
class TimeRemaining:
    """Breakdown of the time left until a deadline.

    Attributes:
        total_seconds: Signed seconds until the deadline (negative when overdue)
        days, hours, minutes, seconds: Floor components of the remaining time
        is_expired: True once the deadline has been reached
        label: Human-readable countdown, or "Overdue"
    """
    total_seconds: float
    days: int
    hours: int
    minutes: int
    seconds: int
    is_expired: bool
    label: str


def time_remaining(deadline: Any, now: Any) -> TimeRemaining:
    """
    Compute a display countdown from `now` to `deadline`.

    Args:
        deadline: Deadline as datetime or ISO string
        now: Reference time as datetime or ISO string

    Returns:
        TimeRemaining with a label such as "2d 5h 30m" or "Overdue"

    Raises:
        ValueError: If either value cannot be parsed

    Examples:
        >>> start = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)
        >>> time_remaining(start + timedelta(days=2, hours=5, minutes=30), start).label
        '2d 5h 30m'
    """
    deadline_dt = coerce_dt(deadline)
    now_dt = coerce_dt(now)
    if deadline_dt is None or now_dt is None:
        raise ValueError("deadline and now must be datetimes or ISO strings")

    total = (deadline_dt - now_dt).total_seconds()
    remaining = max(total, 0.0)
    days = int(remaining // 86400)
    hours = int((remaining % 86400) // 3600)
    minutes = int((remaining % 3600) // 60)
    seconds = int(remaining % 60)

    is_expired = total <= 0
    label = "Overdue" if is_expired else f"{days}d {hours}h {minutes}m"

    return TimeRemaining(
        total_seconds=total,
        days=days,
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        is_expired=is_expired,
        label=label,
    )
