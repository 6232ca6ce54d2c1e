"""
AR Follow-up Automation -- Clock

Every component that needs "now" takes a Clock instead of calling
``datetime.now()`` directly.  Production code uses ``SystemClock``; tests
use ``FrozenClock`` and move time forward explicitly.

Usage:
    clock = FrozenClock(datetime(2025, 1, 9, 9, 0, tzinfo=timezone.utc))
    scanner = DueWindowScanner(store, resolver, config, clock=clock)
    clock.advance(hours=72)
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time (timezone-aware, UTC)."""

    def now(self) -> datetime: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


class FrozenClock:
    """A clock that only moves when told to.

    ``sleep()`` advances the frozen time instead of blocking, so a
    scheduler loop driven by this clock runs instantly in tests.
    """

    def __init__(self, start: datetime) -> None:
        self._now = ensure_utc(start)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)

    def advance(self, **delta: float) -> datetime:
        """Move time forward by ``timedelta(**delta)`` and return the new now."""
        with self._lock:
            self._now = self._now + timedelta(**delta)
            return self._now

    def sleep(self, seconds: float) -> None:
        self.advance(seconds=seconds)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as an ISO 8601 UTC string (None passes through)."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    """Parse an ISO 8601 string written by ``to_iso``; None/'' -> None."""
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except (ValueError, TypeError):
        return None
