"""
tally.services.uniqueness_service — Exactly-Once Action Reservation
=====================================================================

Before a credit is written the action instance is *reserved* by inserting
its ``action_completions`` row.  Storage decides:

* ``(member_id, action_id, action_type)`` is unique — a second completion
  of the same action by the same member is refused ("already completed");
* ``proof_url`` is globally unique — a proof may back exactly one
  completion across all members ("proof already submitted").

A pre-check gives a friendly answer in the common case; the insert runs in a
SAVEPOINT so that a concurrent duplicate which slips past the pre-check is
caught as an ``IntegrityError`` and turned into a refusal without poisoning
the caller's transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tally.database.engine import get_session, lock_member
from tally.database.models import ActionCompletion, ActionType
from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.outcomes import ActionCooldown

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

ALREADY_COMPLETED = "already completed"
PROOF_ALREADY_SUBMITTED = "proof already submitted"


@dataclass
class GuardDecision:
    allowed: bool
    reason: str | None = None
    completion: ActionCompletion | None = None


class UniquenessGuard:
    """Reserves action instances so each is credited at most once."""

    def __init__(self, engine: Engine, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._clock = clock

    # -------------------------------------------------------------------
    # Reservation
    # -------------------------------------------------------------------
    def reserve_in_session(
        self,
        session: Session,
        member_id: str,
        action_id: str,
        action_type: ActionType | str,
        *,
        proof_url: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        fingerprint: str | None = None,
    ) -> GuardDecision:
        """Insert the completion row inside the caller's transaction.

        The caller must already hold the member lock.
        """
        action_type = ActionType(action_type)

        reason = self._existing_reason(session, member_id, action_id, action_type, proof_url)
        if reason is not None:
            return GuardDecision(allowed=False, reason=reason)

        completion = ActionCompletion(
            member_id=member_id,
            action_family=action_type.family.value,
            action_id=action_id,
            action_type=action_type.value,
            proof_url=proof_url,
            points_awarded=0,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            fingerprint=fingerprint,
            created_at=self._clock(),
        )
        try:
            with session.begin_nested():   # SAVEPOINT
                session.add(completion)
                session.flush()
        except IntegrityError:
            # The SAVEPOINT was rolled back; the outer txn is still alive.
            reason = self._existing_reason(
                session, member_id, action_id, action_type, proof_url,
            ) or ALREADY_COMPLETED
            logger.info(
                "Concurrent duplicate for %s %s:%s — %s",
                member_id, action_type.value, action_id, reason,
            )
            return GuardDecision(allowed=False, reason=reason)

        return GuardDecision(allowed=True, completion=completion)

    def check_and_reserve(
        self,
        member_id: str,
        action_id: str,
        action_type: ActionType | str,
        proof_url: str | None = None,
    ) -> GuardDecision:
        """Reserve in a transaction of its own."""
        with get_session(self._engine) as session:
            lock_member(session, member_id)
            return self.reserve_in_session(
                session, member_id, action_id, action_type, proof_url=proof_url,
            )

    @staticmethod
    def _existing_reason(
        session: Session,
        member_id: str,
        action_id: str,
        action_type: ActionType,
        proof_url: str | None,
    ) -> str | None:
        duplicate = session.scalar(
            select(ActionCompletion.id).where(
                ActionCompletion.member_id == member_id,
                ActionCompletion.action_id == action_id,
                ActionCompletion.action_type == action_type.value,
            )
        )
        if duplicate is not None:
            return ALREADY_COMPLETED
        if proof_url:
            reused = session.scalar(
                select(ActionCompletion.id).where(ActionCompletion.proof_url == proof_url)
            )
            if reused is not None:
                return PROOF_ALREADY_SUBMITTED
        return None

    # -------------------------------------------------------------------
    # Cooldown
    # -------------------------------------------------------------------
    def enforce_cooldown(
        self,
        session: Session,
        member_id: str,
        action_type: ActionType | str,
        cooldown_seconds: float,
    ) -> None:
        """Raise :class:`ActionCooldown` if the member's latest completion of
        *action_type* is younger than *cooldown_seconds*."""
        if cooldown_seconds <= 0:
            return
        action_type = ActionType(action_type)
        last = session.scalar(
            select(ActionCompletion.created_at)
            .where(
                ActionCompletion.member_id == member_id,
                ActionCompletion.action_type == action_type.value,
            )
            .order_by(ActionCompletion.created_at.desc())
            .limit(1)
        )
        if last is None:
            return
        ready_at = as_utc(last) + timedelta(seconds=cooldown_seconds)
        now = as_utc(self._clock())
        if now < ready_at:
            raise ActionCooldown(
                "Please wait before performing this action again",
                retry_after_seconds=round((ready_at - now).total_seconds(), 1),
            )
