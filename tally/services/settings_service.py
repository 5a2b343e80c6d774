"""
tally.services.settings_service — Settings Reads & Audited Writes
===================================================================

Typed read/write access to the ``settings`` table.  Every mutation writes
an ``admin_log`` row with the before/after value and then reloads the
:class:`~tally.engine.cache.ConfigCache`, so new thresholds apply to the
next request.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import AdminActionType, Setting
from tally.services.audit_service import log_admin_action

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.engine.cache import ConfigCache

logger = logging.getLogger(__name__)


def _parse(value_json: str) -> Any:
    try:
        return json.loads(value_json)
    except (json.JSONDecodeError, TypeError):
        return value_json


def get_all_settings(engine: Engine) -> list[dict]:
    """Every setting as a plain dict, ordered by category then key."""
    with Session(engine) as session:
        rows = session.scalars(
            select(Setting).order_by(Setting.category, Setting.key)
        ).all()
        return [
            {
                "key": r.key,
                "value": _parse(r.value_json),
                "category": r.category,
                "description": r.description,
            }
            for r in rows
        ]


def update_setting(
    engine: Engine,
    cache: ConfigCache,
    *,
    key: str,
    value: Any,
    actor_id: str,
    category: str | None = None,
    description: str | None = None,
) -> dict:
    """Insert or update one setting, audit it, and refresh the cache."""
    value_json = json.dumps(value)
    with get_session(engine) as session:
        existing = session.get(Setting, key)
        before = None
        if existing is not None:
            before = {"value": _parse(existing.value_json)}
            existing.value_json = value_json
            if category:
                existing.category = category
            if description is not None:
                existing.description = description
            action = AdminActionType.UPDATE.value
        else:
            session.add(Setting(
                key=key,
                value_json=value_json,
                category=category or "general",
                description=description,
            ))
            action = AdminActionType.CREATE.value

        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=action,
            target_table="settings",
            target_id=key,
            before=before,
            after={"value": value},
        )

    cache.reload()
    logger.info("Setting %s changed by %s: %r", key, actor_id, value)
    return {"key": key, "value": value}
