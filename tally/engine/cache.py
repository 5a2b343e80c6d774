"""
tally.engine.cache — In-Memory Tuning Cache
=============================================

Every threshold the ledger enforces (fraud ceilings, quiz minimum time,
check-in window, redemption bands) lives in the ``settings`` table.  Reading
it on every request would put a query in front of every credit, so the
values are cached in memory and refreshed via :meth:`ConfigCache.reload`
whenever an operator changes a setting through the admin API.

The cache only ever holds tuning values.  Nothing that carries a ledger
invariant is kept in memory.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.models import Setting

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class ConfigCache:
    """Thread-safe in-memory cache of the ``settings`` table.

    Usage:
        cache = ConfigCache(engine)
        cache.load_all()

        ceiling = cache.get_int("fraud.velocity_ceiling", default=100)
        per_unit = cache.get_float("redemption.cash.points_per_unit", default=1.0)
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        # key → parsed JSON value
        self._settings: dict[str, Any] = {}

    # -------------------------------------------------------------------
    # Cache loading
    # -------------------------------------------------------------------
    def load_all(self) -> None:
        """Load every setting from the DB. Call on startup."""
        self._load_settings()
        logger.info("Config cache loaded: %d settings", len(self._settings))

    def reload(self) -> None:
        """Re-read the settings table after an operator change."""
        self._load_settings()
        logger.info("Config cache reloaded")

    def _load_settings(self) -> None:
        with Session(self._engine) as session:
            rows = session.scalars(select(Setting)).all()
            parsed: dict[str, Any] = {}
            for row in rows:
                try:
                    parsed[row.key] = json.loads(row.value_json)
                except (json.JSONDecodeError, TypeError):
                    parsed[row.key] = row.value_json

        with self._lock:
            self._settings = parsed

    def snapshot(self) -> dict[str, Any]:
        """Return a copy of every cached key → value."""
        with self._lock:
            return dict(self._settings)

    # -------------------------------------------------------------------
    # Typed setting accessors (thread-safe)
    # -------------------------------------------------------------------
    def get_setting(self, key: str, default: Any = None) -> Any:
        """Return the parsed JSON value for *key*, or *default*."""
        with self._lock:
            return self._settings.get(key, default)

    def get_int(self, key: str, default: int = 0) -> int:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return int(val)
        except (TypeError, ValueError):
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        val = self.get_setting(key)
        if val is None:
            return default
        try:
            return float(val)
        except (TypeError, ValueError):
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        val = self.get_setting(key)
        if val is None:
            return default
        return bool(val)
