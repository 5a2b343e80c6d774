"""
tally.engine.clock — UTC helpers and the injectable clock
==========================================================

Services never call ``datetime.now`` directly; they take a ``Clock`` so
tests can pin and advance time.  SQLite hands back naive datetimes for
``DateTime(timezone=True)`` columns, so comparisons go through
:func:`as_utc`.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class FrozenClock:
    """A manually advanced clock (used by tests and replays)."""

    def __init__(self, start: datetime) -> None:
        self.now = as_utc(start)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now
