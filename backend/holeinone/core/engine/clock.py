"""
Clock / Expiry Evaluator
========================

Every time-bounded transition compares an injected "now" against stored
deadlines. Nothing here keeps state between calls.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """
    Clock frozen at a given instant, moved forward explicitly.

    Usage:
        clock = FixedClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))
        clock.advance(minutes=16)
    """

    def __init__(self, now: Optional[datetime] = None):
        self._now = as_utc(now) if now is not None else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now

    def set(self, now: datetime) -> None:
        self._now = as_utc(now)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a timestamp to aware UTC.

    SQLite hands back naive datetimes for timezone-aware columns; those are
    stored in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def has_passed(deadline: Optional[datetime], now: datetime) -> bool:
    """True once now is strictly after the deadline. No deadline never passes."""
    if deadline is None:
        return False
    return as_utc(now) > as_utc(deadline)


def seconds_remaining(deadline: Optional[datetime], now: datetime) -> int:
    if deadline is None:
        return 0
    remaining = (as_utc(deadline) - as_utc(now)).total_seconds()
    return max(0, int(remaining))
