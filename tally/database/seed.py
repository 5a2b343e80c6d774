"""
tally.database.seed — Default Settings Seeder
===============================================

Baseline tuning values seeded on first startup so the ledger enforces sane
limits before any operator touches the settings.

Idempotent — only inserts keys that don't already exist.  Values changed
later through the admin API are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from tally.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    # Fraud heuristics
    "fraud.velocity_ceiling": (
        100, "fraud", "Max points earned per trailing hour before the velocity flag",
    ),
    "fraud.ip_ceiling": (
        20, "fraud", "Max audit-log actions from one IP per trailing hour",
    ),
    "fraud.timing_threshold_seconds": (
        2, "fraud", "Adjacent actions closer than this are a timing anomaly",
    ),
    "fraud.suspicious_threshold": (
        50, "fraud", "Score at or above which activity is suspicious",
    ),
    "fraud.auto_suspend_threshold": (
        80, "fraud", "Score above which the member is suspended automatically",
    ),
    "fraud.auto_suspend_days": (7, "fraud", "Length of an automatic suspension"),
    # Action validation
    "quiz.min_completion_seconds": (5, "actions", "Quizzes finished faster are rejected"),
    "quiz.token_ttl_minutes": (15, "actions", "Lifetime of a quiz start token"),
    "vote.cooldown_seconds": (60, "actions", "Min seconds between two campaign votes"),
    "checkin.window_before_minutes": (60, "actions", "Check-in opens this long before the event"),
    "checkin.window_after_minutes": (120, "actions", "Check-in closes this long after the event"),
    "checkin.max_distance_meters": (500, "actions", "Max distance from the event location"),
    # Per-member sliding-window rate limits (accepted actions per window)
    "ratelimit.quiz.max_requests": (3, "ratelimit", "Quiz submissions per window"),
    "ratelimit.quiz.window_seconds": (3600, "ratelimit", "Quiz rate limit window"),
    "ratelimit.task.max_requests": (10, "ratelimit", "Task completions per window"),
    "ratelimit.task.window_seconds": (3600, "ratelimit", "Task rate limit window"),
    "ratelimit.vote.max_requests": (5, "ratelimit", "Campaign votes per window"),
    "ratelimit.vote.window_seconds": (60, "ratelimit", "Vote rate limit window"),
    "ratelimit.event.max_requests": (3, "ratelimit", "Event check-ins per window"),
    "ratelimit.event.window_seconds": (86400, "ratelimit", "Check-in rate limit window"),
    "ratelimit.redemption.max_requests": (10, "ratelimit", "Redemptions per window"),
    "ratelimit.redemption.window_seconds": (3600, "ratelimit", "Redemption rate limit window"),
    # Redemption bands; points_per_unit converts points to external value
    "redemption.airtime.min_points": (100, "redemption", "Smallest airtime redemption"),
    "redemption.airtime.max_points": (10000, "redemption", "Largest airtime redemption"),
    "redemption.airtime.points_per_unit": (1.0, "redemption", "Points per unit of airtime"),
    "redemption.data.min_points": (100, "redemption", "Smallest data redemption"),
    "redemption.data.max_points": (10000, "redemption", "Largest data redemption"),
    "redemption.data.points_per_unit": (1.0, "redemption", "Points per unit of data value"),
    "redemption.cash.min_points": (1000, "redemption", "Smallest cash redemption"),
    "redemption.cash.max_points": (50000, "redemption", "Largest cash redemption"),
    "redemption.cash.points_per_unit": (2.0, "redemption", "Points per unit of cash"),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Runs on every startup but only writes rows for keys that are missing,
    so it is safe to call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
