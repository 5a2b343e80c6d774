"""
tally.services.rate_limit_service — Per-Member Action Rate Limiting
=====================================================================

Sliding-window limits per member and scope (quiz 3/hour, tasks 10/hour,
votes 5/minute, check-ins 3/day, redemptions 10/hour by default; windows
live in the ``settings`` table under ``ratelimit.<scope>.*``).

DB-backed: each accepted action inserts a ``rate_limit_events`` row.  The
check and the insert run inside the caller's transaction, after the member
lock, so two concurrent requests cannot both take the last slot and a
request that is later refused (duplicate, validator failure) rolls its hit
back.  A scope with ``max_requests`` of 0 or no settings is unlimited.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from tally.database.models import RateLimitEvent
from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.outcomes import RateLimited

if TYPE_CHECKING:
    from tally.engine.cache import ConfigCache

logger = logging.getLogger(__name__)

REDEMPTION_SCOPE = "redemption"


class ActionRateLimiter:
    """Sliding-window limiter keyed by ``(member_id, scope)``."""

    def __init__(self, cache: ConfigCache, *, clock: Clock = utcnow) -> None:
        self._cache = cache
        self._clock = clock

    def limits(self, scope: str) -> tuple[int, int]:
        """``(max_requests, window_seconds)`` for *scope*."""
        return (
            self._cache.get_int(f"ratelimit.{scope}.max_requests", 0),
            self._cache.get_int(f"ratelimit.{scope}.window_seconds", 0),
        )

    def acquire_in_session(self, session: Session, member_id: str, scope: str) -> int:
        """Count one hit for *member_id* in *scope*, or raise :class:`RateLimited`.

        The caller must already hold the member lock.  Returns the number of
        requests left in the window.
        """
        max_requests, window_seconds = self.limits(scope)
        if max_requests <= 0 or window_seconds <= 0:
            return -1

        now = self._clock()
        cutoff = now - timedelta(seconds=window_seconds)
        session.execute(
            delete(RateLimitEvent).where(
                RateLimitEvent.member_id == member_id,
                RateLimitEvent.scope == scope,
                RateLimitEvent.created_at < cutoff,
            )
        )
        timestamps = session.scalars(
            select(RateLimitEvent.created_at)
            .where(
                RateLimitEvent.member_id == member_id,
                RateLimitEvent.scope == scope,
                RateLimitEvent.created_at >= cutoff,
            )
            .order_by(RateLimitEvent.created_at.asc())
        ).all()

        if len(timestamps) >= max_requests:
            oldest = as_utc(timestamps[0])
            reset = (oldest + timedelta(seconds=window_seconds) - as_utc(now)).total_seconds()
            logger.warning(
                "Rate limit exceeded for member %s on %s: %d/%d in %ds",
                member_id, scope, len(timestamps), max_requests, window_seconds,
            )
            raise RateLimited(
                f"Too many {scope} requests, please try again later",
                scope=scope,
                limit=max_requests,
                window_seconds=window_seconds,
                retry_after_seconds=max(1, int(reset) + 1),
            )

        session.add(RateLimitEvent(member_id=member_id, scope=scope, created_at=now))
        session.flush()
        return max_requests - len(timestamps) - 1
