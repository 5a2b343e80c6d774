"""
tally.services.suspension_service — Suspension Lifecycle
==========================================================

State machine per member::

    active ──suspend(d)──▶ suspended-until(t) ──now ≥ t (lazy)──▶ active
    active ──suspend()───▶ suspended-permanent ──restore()──────▶ active

Expiry is *lazy*: nothing runs on a timer.  The next gate check that sees
an expired row flips its ``is_active`` off and, when no active suspension
remains, puts ``Member.status`` back to ``active``.

Suspension rows are never deleted; only ``is_active`` and the lift
bookkeeping columns change.  This service is the only writer of
``account_suspensions`` and ``members.status``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from tally.database.engine import get_session, lock_member
from tally.database.models import (
    AccountSuspension,
    AdminActionType,
    Member,
    MemberStatus,
)
from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.outcomes import AccountSuspended, MemberNotFound
from tally.services.audit_service import log_admin_action, row_to_dict

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class SuspensionManager:
    """Suspend, restore and gate members."""

    def __init__(self, engine: Engine, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._clock = clock

    # -------------------------------------------------------------------
    # Gate
    # -------------------------------------------------------------------
    def active_suspension_in_session(
        self, session: Session, member_id: str,
    ) -> AccountSuspension | None:
        """Return the governing active suspension, expiring stale rows first.

        A permanent suspension wins over any timed one; otherwise the one
        that ends last.  Expired rows and ``Member.status`` are only written
        under the member lock, after re-reading the rows it protects.
        """
        now = as_utc(self._clock())
        member = session.get(Member, member_id)
        live, expired = self._partition(session, member_id, now)
        wanted = MemberStatus.SUSPENDED.value if live else MemberStatus.ACTIVE.value

        if member is not None and (expired or member.status != wanted):
            member = lock_member(session, member_id)
            live, expired = self._partition(session, member_id, now)
            for row in expired:
                row.is_active = False
                row.lifted_at = now
                row.lifted_by = SYSTEM_ACTOR
                logger.info("Suspension %d for member %s expired", row.id, member_id)
            wanted = MemberStatus.SUSPENDED.value if live else MemberStatus.ACTIVE.value
            if member.status != wanted:
                member.status = wanted

        if not live:
            return None
        permanent = [r for r in live if r.expires_at is None]
        if permanent:
            return permanent[0]
        return max(live, key=lambda r: as_utc(r.expires_at))

    @staticmethod
    def _partition(
        session: Session, member_id: str, now: datetime,
    ) -> tuple[list[AccountSuspension], list[AccountSuspension]]:
        """Split the member's active rows into ``(live, expired)``."""
        rows = session.scalars(
            select(AccountSuspension)
            .where(
                AccountSuspension.member_id == member_id,
                AccountSuspension.is_active.is_(True),
            )
            .execution_options(populate_existing=True)
        ).all()
        live: list[AccountSuspension] = []
        expired: list[AccountSuspension] = []
        for row in rows:
            if row.expires_at is not None and as_utc(row.expires_at) <= now:
                expired.append(row)
            else:
                live.append(row)
        return live, expired

    def active_suspension(self, member_id: str) -> AccountSuspension | None:
        with get_session(self._engine) as session:
            return self.active_suspension_in_session(session, member_id)

    def is_suspended(self, member_id: str) -> bool:
        return self.active_suspension(member_id) is not None

    def require_active_in_session(self, session: Session, member_id: str) -> None:
        """Raise :class:`AccountSuspended` if the member is suspended."""
        suspension = self.active_suspension_in_session(session, member_id)
        if suspension is not None:
            raise AccountSuspended(
                "Account is suspended",
                reason=suspension.reason,
                expires_at=(
                    as_utc(suspension.expires_at).isoformat()
                    if suspension.expires_at is not None else None
                ),
            )

    def require_active(self, member_id: str) -> None:
        with get_session(self._engine) as session:
            if session.get(Member, member_id) is None:
                raise MemberNotFound(f"Member {member_id} not found")
            self.require_active_in_session(session, member_id)

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def suspend(
        self,
        member_id: str,
        reason: str,
        suspended_by: str,
        duration_days: float | None = None,
        notes: str | None = None,
    ) -> AccountSuspension:
        """Open a new suspension; ``duration_days=None`` is permanent."""
        if duration_days is not None and duration_days <= 0:
            raise ValueError("duration_days must be positive")

        now = self._clock()
        with get_session(self._engine) as session:
            member = lock_member(session, member_id)
            row = AccountSuspension(
                member_id=member_id,
                reason=reason,
                suspended_by=str(suspended_by),
                suspended_at=now,
                expires_at=now + timedelta(days=duration_days) if duration_days else None,
                is_active=True,
                notes=notes,
            )
            session.add(row)
            member.status = MemberStatus.SUSPENDED.value
            session.flush()
            log_admin_action(
                session,
                actor_id=str(suspended_by),
                action_type=AdminActionType.SUSPEND.value,
                target_table="account_suspensions",
                target_id=str(row.id),
                before=None,
                after=row_to_dict(row),
                reason=reason,
                timestamp=now,
            )

        logger.warning(
            "Member %s suspended by %s until %s: %s",
            member_id, suspended_by,
            row.expires_at.isoformat() if row.expires_at else "further notice",
            reason,
        )
        return row

    def restore(self, member_id: str, lifted_by: str, reason: str | None = None) -> int:
        """Lift every active suspension.  Returns how many were lifted."""
        now = self._clock()
        with get_session(self._engine) as session:
            member = lock_member(session, member_id)
            rows = session.scalars(
                select(AccountSuspension).where(
                    AccountSuspension.member_id == member_id,
                    AccountSuspension.is_active.is_(True),
                )
            ).all()
            before = [row_to_dict(r) for r in rows]
            for row in rows:
                row.is_active = False
                row.lifted_at = now
                row.lifted_by = str(lifted_by)
            member.status = MemberStatus.ACTIVE.value
            if rows:
                log_admin_action(
                    session,
                    actor_id=str(lifted_by),
                    action_type=AdminActionType.RESTORE.value,
                    target_table="account_suspensions",
                    target_id=member_id,
                    before={"suspensions": before},
                    after={"status": MemberStatus.ACTIVE.value},
                    reason=reason,
                    timestamp=now,
                )

        if rows:
            logger.info("Member %s restored by %s (%d lifted)", member_id, lifted_by, len(rows))
        return len(rows)

    def history(self, member_id: str) -> list[AccountSuspension]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(AccountSuspension)
                .where(AccountSuspension.member_id == member_id)
                .order_by(AccountSuspension.suspended_at, AccountSuspension.id)
            ).all()
            for r in rows:
                session.expunge(r)
            return list(rows)
