"""
tests/test_rate_limit_service.py — Action Rate Limiter Tests
==============================================================
Sliding-window counting against the ``rate_limit_events`` table, limits
read from settings, and pruning of hits that left the window.
"""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tally.database.engine import get_session, lock_member
from tally.database.models import RateLimitEvent
from tally.engine.outcomes import RateLimited
from tally.services.settings_service import update_setting


@pytest.fixture
def limiter(services):
    return services.limiter


def _hit(engine, limiter, member_id: str, scope: str) -> int:
    with get_session(engine) as session:
        lock_member(session, member_id)
        return limiter.acquire_in_session(session, member_id, scope)


def _events(engine, member_id: str) -> int:
    with Session(engine) as session:
        return session.scalar(
            select(func.count()).select_from(RateLimitEvent)
            .where(RateLimitEvent.member_id == member_id)
        )


class TestLimits:
    def test_defaults_from_settings(self, limiter):
        assert limiter.limits("quiz") == (3, 3600)
        assert limiter.limits("task") == (10, 3600)
        assert limiter.limits("vote") == (5, 60)
        assert limiter.limits("event") == (3, 86400)
        assert limiter.limits("redemption") == (10, 3600)

    def test_unknown_scope_is_unlimited(self, limiter, db_engine, member_id):
        assert limiter.limits("election") == (0, 0)
        for _ in range(20):
            assert _hit(db_engine, limiter, member_id, "election") == -1
        assert _events(db_engine, member_id) == 0

    def test_zero_max_disables_the_limit(self, limiter, services, db_engine, member_id):
        update_setting(
            db_engine, services.cache,
            key="ratelimit.vote.max_requests", value=0, actor_id="admin-1",
        )
        for _ in range(10):
            assert _hit(db_engine, limiter, member_id, "vote") == -1


class TestSlidingWindow:
    def test_counts_down_then_refuses(self, limiter, clock, db_engine, member_id):
        remaining = []
        for _ in range(5):
            remaining.append(_hit(db_engine, limiter, member_id, "vote"))
            clock.advance(seconds=5)

        with pytest.raises(RateLimited) as exc_info:
            _hit(db_engine, limiter, member_id, "vote")

        assert remaining == [4, 3, 2, 1, 0]
        assert exc_info.value.context == {
            "scope": "vote",
            "limit": 5,
            "window_seconds": 60,
            "retry_after_seconds": 36,
        }
        assert _events(db_engine, member_id) == 5

    def test_oldest_hit_leaving_frees_one_slot(self, limiter, clock, db_engine, member_id):
        for _ in range(5):
            _hit(db_engine, limiter, member_id, "vote")
            clock.advance(seconds=10)

        clock.advance(seconds=11)
        assert _hit(db_engine, limiter, member_id, "vote") == 0
        with pytest.raises(RateLimited):
            _hit(db_engine, limiter, member_id, "vote")

    def test_expired_hits_are_pruned(self, limiter, clock, db_engine, member_id):
        for _ in range(3):
            _hit(db_engine, limiter, member_id, "quiz")
        clock.advance(hours=2)

        assert _hit(db_engine, limiter, member_id, "quiz") == 2
        assert _events(db_engine, member_id) == 1

    def test_scopes_are_counted_separately(self, limiter, db_engine, member_id):
        for _ in range(3):
            _hit(db_engine, limiter, member_id, "quiz")

        assert _hit(db_engine, limiter, member_id, "task") == 9
        with pytest.raises(RateLimited):
            _hit(db_engine, limiter, member_id, "quiz")

    def test_refused_transaction_rolls_its_hit_back(self, limiter, db_engine, member_id):
        with pytest.raises(RuntimeError):
            with get_session(db_engine) as session:
                lock_member(session, member_id)
                limiter.acquire_in_session(session, member_id, "quiz")
                raise RuntimeError("validator failed")

        assert _events(db_engine, member_id) == 0

    def test_window_change_applies_immediately(
        self, limiter, services, clock, db_engine, member_id,
    ):
        for _ in range(3):
            _hit(db_engine, limiter, member_id, "quiz")
        update_setting(
            db_engine, services.cache,
            key="ratelimit.quiz.window_seconds", value=60, actor_id="admin-1",
        )
        clock.advance(seconds=61)

        assert _hit(db_engine, limiter, member_id, "quiz") == 2
