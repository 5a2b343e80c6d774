"""
tally.services.action_service — Member Action Handlers
========================================================

One handler per credited action kind: quiz, micro/volunteer task, campaign
vote, event check-in and election-day report.  Each handler runs the same
pipeline::

    suspension gate ──▶ fraud screen ──▶
        [ member lock → suspension re-check → rate limit → cooldown →
          uniqueness reservation → validators → ledger credit →
          link completion → audit row ]  (one DB transaction)

A suspended member is refused before scoring, so their attempts never add
fraud evidence or stack further suspensions.  The fraud screen looks at
history *before* this action.  A suspicious
screen is persisted as evidence; above the auto-suspend threshold the member
is suspended on the spot and the action is refused.

Policy refusals never escape as exceptions: every handler returns an
:class:`~tally.engine.outcomes.ActionOutcome`, with ``rejection`` set when
the action was refused.  A refused action leaves no completion row and no
ledger row behind, only a ``failure`` audit row.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from tally.database.engine import get_session, lock_member
from tally.database.models import ActionType
from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.fraud import FraudAssessment, severity_for
from tally.engine.geofence import (
    Coordinates,
    haversine_m,
    validate_checkin_window,
    validate_location,
    validate_quiz_timing,
)
from tally.engine.outcomes import (
    AccountSuspended,
    ActionOutcome,
    DuplicateAction,
    MemberNotFound,
    Rejection,
)
from tally.services.audit_service import fingerprint
from tally.services.suspension_service import SYSTEM_ACTOR

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from tally.engine.cache import ConfigCache
    from tally.engine.tokens import ActionTokenSigner
    from tally.services.audit_service import AuditLogger
    from tally.services.fraud_service import FraudDetector
    from tally.services.ledger_service import LedgerStore
    from tally.services.rate_limit_service import ActionRateLimiter
    from tally.services.suspension_service import SuspensionManager
    from tally.services.uniqueness_service import UniquenessGuard

logger = logging.getLogger(__name__)

EVENT_CHECKIN_POINTS = 10

TASK_KINDS: dict[str, ActionType] = {
    "micro": ActionType.MICRO_TASK,
    "volunteer": ActionType.VOLUNTEER_TASK,
}


@dataclass(frozen=True, slots=True)
class ActionContext:
    """Who is acting, and from where."""

    member_id: str
    ip_address: str | None = None
    user_agent: str | None = None


class ActionService:
    """Turns member actions into at-most-once ledger credits."""

    def __init__(
        self,
        engine: Engine,
        cache: ConfigCache,
        *,
        ledger: LedgerStore,
        guard: UniquenessGuard,
        fraud: FraudDetector,
        suspensions: SuspensionManager,
        audit: AuditLogger,
        tokens: ActionTokenSigner,
        limiter: ActionRateLimiter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = engine
        self._cache = cache
        self._ledger = ledger
        self._guard = guard
        self._fraud = fraud
        self._suspensions = suspensions
        self._audit = audit
        self._tokens = tokens
        self._limiter = limiter
        self._clock = clock

    # -------------------------------------------------------------------
    # Quiz
    # -------------------------------------------------------------------
    def start_quiz(self, member_id: str, quiz_id: str) -> str:
        """Open a quiz attempt and return the signed start token.

        Raises :class:`MemberNotFound` / :class:`AccountSuspended`.
        """
        self._suspensions.require_active(member_id)
        ttl = timedelta(minutes=self._cache.get_int("quiz.token_ttl_minutes", 15))
        return self._tokens.issue(member_id, "quiz", quiz_id, ttl)

    def submit_quiz(
        self,
        ctx: ActionContext,
        quiz_id: str,
        token: str,
        points: int,
        is_correct: bool,
    ) -> ActionOutcome:
        """Record a quiz attempt; credit *points* only for a correct answer.

        A wrong answer still uses up the attempt.
        """
        def work() -> ActionOutcome:
            claims = self._tokens.verify(token, ctx.member_id, "quiz", quiz_id)
            elapsed = (as_utc(self._clock()) - claims.issued_at).total_seconds()
            minimum = self._cache.get_float("quiz.min_completion_seconds", 5.0)
            return self._complete(
                ctx, ActionType.QUIZ, quiz_id,
                points if is_correct else 0,
                details={"completion_seconds": round(elapsed, 3), "is_correct": is_correct},
                validate=lambda: validate_quiz_timing(elapsed, minimum),
            )

        return self._handle(ctx, ActionType.QUIZ, quiz_id, work)

    # -------------------------------------------------------------------
    # Tasks, votes, check-ins, election reports
    # -------------------------------------------------------------------
    def complete_task(
        self,
        ctx: ActionContext,
        task_id: str,
        task_kind: str,
        points: int,
        proof_url: str | None = None,
    ) -> ActionOutcome:
        try:
            action_type = TASK_KINDS[task_kind]
        except KeyError:
            raise ValueError(f"Unknown task kind: {task_kind!r}") from None

        return self._handle(ctx, action_type, task_id, lambda: self._complete(
            ctx, action_type, task_id, points, proof_url=proof_url,
        ))

    def cast_campaign_vote(
        self, ctx: ActionContext, campaign_id: str, points: int,
    ) -> ActionOutcome:
        cooldown = self._cache.get_float("vote.cooldown_seconds", 60)
        return self._handle(ctx, ActionType.CAMPAIGN_VOTE, campaign_id, lambda: self._complete(
            ctx, ActionType.CAMPAIGN_VOTE, campaign_id, points, cooldown_seconds=cooldown,
        ))

    def check_in(
        self,
        ctx: ActionContext,
        event_id: str,
        event_time: datetime,
        points: int = EVENT_CHECKIN_POINTS,
        event_coords: Coordinates | tuple[float, float] | dict | None = None,
        member_coords: Coordinates | tuple[float, float] | dict | None = None,
    ) -> ActionOutcome:
        event_at = Coordinates.parse(event_coords)
        member_at = Coordinates.parse(member_coords)
        before = timedelta(minutes=self._cache.get_int("checkin.window_before_minutes", 60))
        after = timedelta(minutes=self._cache.get_int("checkin.window_after_minutes", 120))
        max_distance = self._cache.get_float("checkin.max_distance_meters", 500.0)

        details: dict[str, Any] = {"event_time": as_utc(event_time).isoformat()}
        if member_at is not None:
            details["member_coords"] = {"lat": member_at.lat, "lng": member_at.lng}
        if event_at is not None and member_at is not None:
            details["distance_m"] = round(haversine_m(event_at, member_at), 1)

        def validate() -> None:
            validate_checkin_window(event_time, self._clock(), before=before, after=after)
            validate_location(event_at, member_at, max_distance)

        return self._handle(ctx, ActionType.EVENT_CHECKIN, event_id, lambda: self._complete(
            ctx, ActionType.EVENT_CHECKIN, event_id, points,
            details=details, validate=validate,
        ))

    def submit_election_report(
        self,
        ctx: ActionContext,
        polling_unit_id: str,
        election_id: str,
        points: int,
        proof_url: str | None = None,
    ) -> ActionOutcome:
        """One accepted report per member per polling unit per election."""
        action_id = f"{election_id}:{polling_unit_id}"
        details = {"election_id": election_id, "polling_unit_id": polling_unit_id}
        return self._handle(ctx, ActionType.ELECTION_REPORT, action_id, lambda: self._complete(
            ctx, ActionType.ELECTION_REPORT, action_id, points,
            proof_url=proof_url, details=details,
        ))

    # -------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------
    def _handle(
        self,
        ctx: ActionContext,
        action_type: ActionType,
        action_id: str,
        work: Callable[[], ActionOutcome],
    ) -> ActionOutcome:
        assessment: FraudAssessment | None = None
        try:
            # Suspended members fail fast: no fraud screen, no new evidence
            self._suspensions.require_active(ctx.member_id)
            assessment = self._screen(ctx, action_type)
            outcome = work()
        except Rejection as rejection:
            logger.info(
                "Rejected %s %s for member %s: %s",
                action_type.value, action_id, ctx.member_id, rejection.code,
            )
            self._audit.record(
                member_id=None if isinstance(rejection, MemberNotFound) else ctx.member_id,
                action=f"{action_type.value}.rejected",
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                resource_type=action_type.family.value,
                resource_id=action_id,
                details=rejection.to_dict(),
                status="failure",
            )
            return ActionOutcome.rejected(rejection, assessment)

        outcome.assessment = assessment
        if assessment is not None and assessment.suspicious:
            outcome.warnings.extend(assessment.reasons)
        return outcome

    def _screen(self, ctx: ActionContext, action_type: ActionType) -> FraudAssessment:
        """Pre-action fraud screen.  Persists evidence when suspicious and
        suspends above the auto-suspend threshold."""
        assessment = self._fraud.score(ctx.member_id, ctx.ip_address)
        if not assessment.suspicious:
            return assessment

        threshold = self._cache.get_int("fraud.auto_suspend_threshold", 80)
        blocked = assessment.score > threshold
        self._fraud.record_detection(
            ctx.member_id,
            action_type.value,
            assessment,
            severity=severity_for(assessment.score, threshold),
            blocked=blocked,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
        if blocked:
            days = self._cache.get_int("fraud.auto_suspend_days", 7)
            self._suspensions.suspend(
                ctx.member_id,
                reason="Automatic suspension: " + ", ".join(assessment.reasons),
                suspended_by=SYSTEM_ACTOR,
                duration_days=days,
            )
            raise AccountSuspended(
                "Account suspended due to suspicious activity",
                score=assessment.score,
            )
        return assessment

    def _complete(
        self,
        ctx: ActionContext,
        action_type: ActionType,
        action_id: str,
        points: int,
        *,
        proof_url: str | None = None,
        details: dict[str, Any] | None = None,
        validate: Callable[[], Any] | None = None,
        cooldown_seconds: float = 0,
    ) -> ActionOutcome:
        if points < 0:
            raise ValueError("Action points must not be negative")

        with get_session(self._engine) as session:
            lock_member(session, ctx.member_id)
            self._suspensions.require_active_in_session(session, ctx.member_id)
            if self._limiter is not None:
                self._limiter.acquire_in_session(
                    session, ctx.member_id, action_type.family.value,
                )
            if cooldown_seconds:
                self._guard.enforce_cooldown(
                    session, ctx.member_id, action_type, cooldown_seconds,
                )

            decision = self._guard.reserve_in_session(
                session, ctx.member_id, action_id, action_type,
                proof_url=proof_url,
                details=details,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                fingerprint=fingerprint(ctx.ip_address, ctx.user_agent),
            )
            if not decision.allowed:
                raise DuplicateAction(
                    decision.reason or "already completed",
                    action_id=action_id,
                    action_type=action_type.value,
                )
            if validate is not None:
                validate()

            completion = decision.completion
            tx = None
            if points > 0:
                tx = self._ledger.append_in_session(
                    session, ctx.member_id, points, action_type.source,
                    reference_type=action_type.value,
                    reference_id=action_id,
                )
                completion.points_awarded = points
                completion.transaction_id = tx.id

            self._audit.record_in_session(
                session,
                member_id=ctx.member_id,
                action=f"{action_type.value}.completed",
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                resource_type=action_type.family.value,
                resource_id=action_id,
                details={"points": points},
            )

        logger.info(
            "Credited %d points to %s for %s %s",
            points, ctx.member_id, action_type.value, action_id,
        )
        return ActionOutcome(ok=True, transaction=tx, completion=completion)
