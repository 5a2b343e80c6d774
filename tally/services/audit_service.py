"""
tally.services.audit_service — Audit Log & Admin Log Writers
==============================================================

Two trails:

* ``audit_logs`` — one row per member action handled by the core or the API.
  The fraud detector reads ``(member_id, ip_address, created_at)`` back out
  of it for the IP-concentration and timing heuristics.
* ``admin_log`` — operator mutations with before/after snapshots.

Both writers have an in-session variant so the row commits (or rolls back)
with the change it describes.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from tally.database.engine import get_session
from tally.database.models import AdminLog, AuditLog
from tally.engine.clock import Clock, utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


def fingerprint(ip_address: str | None, user_agent: str | None) -> str:
    """SHA-256 of ``"ip:user-agent"`` (missing parts hash as empty strings)."""
    raw = f"{ip_address or ''}:{user_agent or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Admin audit helpers
# ---------------------------------------------------------------------------

def row_to_dict(obj: Any) -> dict | None:
    """Convert a mapped instance to a JSON-serializable dict keyed by column name."""
    if obj is None:
        return None
    result = {}
    for attr in inspect(obj).mapper.column_attrs:
        val = getattr(obj, attr.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        elif isinstance(val, Decimal):
            val = str(val)
        result[attr.columns[0].name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
    timestamp: datetime | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=str(actor_id),
        action_type=action_type,
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
        timestamp=timestamp or utcnow(),
    ))


def get_admin_log(engine: Engine, *, limit: int = 50, target_table: str | None = None) -> list[AdminLog]:
    """Newest-first admin log entries."""
    with Session(engine) as session:
        stmt = select(AdminLog).order_by(AdminLog.timestamp.desc(), AdminLog.id.desc())
        if target_table:
            stmt = stmt.where(AdminLog.target_table == target_table)
        rows = session.scalars(stmt.limit(limit)).all()
        for r in rows:
            session.expunge(r)
        return list(rows)


# ---------------------------------------------------------------------------
# Member action audit log
# ---------------------------------------------------------------------------
class AuditLogger:
    """Writes ``audit_logs`` rows stamped by the injected clock."""

    def __init__(self, engine: Engine, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._clock = clock

    def record_in_session(
        self,
        session: Session,
        *,
        member_id: str | None,
        action: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
        status: str = "success",
    ) -> AuditLog:
        row = AuditLog(
            member_id=member_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            fingerprint=fingerprint(ip_address, user_agent),
            status=status,
            created_at=self._clock(),
        )
        session.add(row)
        return row

    def record(self, **kwargs: Any) -> AuditLog:
        """Write one audit row in its own transaction."""
        with get_session(self._engine) as session:
            row = self.record_in_session(session, **kwargs)
        return row
