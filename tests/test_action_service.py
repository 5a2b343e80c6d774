"""
tests/test_action_service.py — Member Action Handler Tests
============================================================
End-to-end through the action pipeline: fraud screen, suspension gate,
cooldown, uniqueness reservation, validators, ledger credit and audit rows.

The clock is advanced between actions so the timing heuristic only fires
where a test wants it to.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import make_member
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tally.database.models import ActionCompletion, AuditLog, FraudDetectionLog, PointSource
from tally.engine.outcomes import (
    AccountSuspended,
    ActionCooldown,
    CheckInWindowClosed,
    CheckInWindowExpired,
    DuplicateAction,
    InvalidActionToken,
    LocationMismatch,
    MemberNotFound,
    RateLimited,
    TooFast,
)
from tally.services.action_service import ActionContext

LAGOS = (6.5244, 3.3792)


@pytest.fixture
def actions(services):
    return services.actions


@pytest.fixture
def ctx(member_id):
    return ActionContext(member_id, ip_address="10.0.0.5", user_agent="pytest/1.0")


def _count(engine, model) -> int:
    with Session(engine) as session:
        return session.scalar(select(func.count()).select_from(model))


# ---------------------------------------------------------------------------
# Quiz
# ---------------------------------------------------------------------------
class TestQuiz:
    def test_duplicate_quiz_credits_once(self, actions, services, clock, db_engine, ctx):
        token = actions.start_quiz(ctx.member_id, "quiz-7")
        clock.advance(seconds=30)
        first = actions.submit_quiz(ctx, "quiz-7", token, 20, is_correct=True)

        clock.advance(seconds=30)
        token = actions.start_quiz(ctx.member_id, "quiz-7")
        clock.advance(seconds=30)
        second = actions.submit_quiz(ctx, "quiz-7", token, 20, is_correct=True)

        assert first.ok and first.points == 20
        assert not second.ok
        assert isinstance(second.rejection, DuplicateAction)
        assert second.rejection.message == "already completed"
        assert services.ledger.current_balance(ctx.member_id) == 20
        assert _count(db_engine, ActionCompletion) == 1

    def test_completion_links_the_ledger_row(self, actions, clock, ctx):
        token = actions.start_quiz(ctx.member_id, "quiz-1")
        clock.advance(seconds=12)
        outcome = actions.submit_quiz(ctx, "quiz-1", token, 15, is_correct=True)

        assert outcome.completion.transaction_id == outcome.transaction.id
        assert outcome.completion.points_awarded == 15
        assert outcome.completion.details["completion_seconds"] == 12.0
        assert outcome.transaction.source == PointSource.QUIZ.value
        assert outcome.transaction.reference_id == "quiz-1"

    def test_too_fast_is_rejected_and_can_be_retried(
        self, actions, services, clock, db_engine, ctx,
    ):
        token = actions.start_quiz(ctx.member_id, "quiz-2")
        clock.advance(seconds=2)
        fast = actions.submit_quiz(ctx, "quiz-2", token, 10, is_correct=True)

        assert isinstance(fast.rejection, TooFast)
        assert _count(db_engine, ActionCompletion) == 0
        assert services.ledger.current_balance(ctx.member_id) == 0

        clock.advance(seconds=30)
        token = actions.start_quiz(ctx.member_id, "quiz-2")
        clock.advance(seconds=8)
        assert actions.submit_quiz(ctx, "quiz-2", token, 10, is_correct=True).ok

    def test_wrong_answer_uses_the_attempt(self, actions, services, clock, ctx):
        token = actions.start_quiz(ctx.member_id, "quiz-3")
        clock.advance(seconds=20)
        wrong = actions.submit_quiz(ctx, "quiz-3", token, 10, is_correct=False)

        assert wrong.ok
        assert wrong.transaction is None
        assert wrong.points == 0
        assert services.ledger.current_balance(ctx.member_id) == 0

        clock.advance(seconds=20)
        token = actions.start_quiz(ctx.member_id, "quiz-3")
        clock.advance(seconds=20)
        retry = actions.submit_quiz(ctx, "quiz-3", token, 10, is_correct=True)
        assert isinstance(retry.rejection, DuplicateAction)

    def test_token_for_another_quiz_is_rejected(self, actions, clock, ctx):
        token = actions.start_quiz(ctx.member_id, "quiz-4")
        clock.advance(seconds=20)
        outcome = actions.submit_quiz(ctx, "quiz-5", token, 10, is_correct=True)
        assert isinstance(outcome.rejection, InvalidActionToken)

    def test_start_quiz_refused_while_suspended(self, actions, services, ctx):
        services.suspensions.suspend(ctx.member_id, "spam", "admin-1")
        with pytest.raises(AccountSuspended):
            actions.start_quiz(ctx.member_id, "quiz-6")


# ---------------------------------------------------------------------------
# Tasks & election reports
# ---------------------------------------------------------------------------
class TestTasks:
    def test_micro_task_credit(self, actions, services, ctx):
        outcome = actions.complete_task(ctx, "task-1", "micro", 25)
        assert outcome.ok
        assert outcome.transaction.source == PointSource.TASK.value
        assert services.ledger.current_balance(ctx.member_id) == 25

    def test_proof_cannot_back_two_completions(self, actions, clock, db_engine, ctx):
        other = ActionContext(make_member(db_engine, "Grace"), ip_address="10.0.0.6")
        proof = "https://cdn.example.com/proof/shared.jpg"

        assert actions.complete_task(ctx, "task-1", "volunteer", 50, proof_url=proof).ok
        clock.advance(minutes=1)
        outcome = actions.complete_task(other, "task-2", "volunteer", 50, proof_url=proof)
        assert outcome.rejection.message == "proof already submitted"

    def test_unknown_task_kind(self, actions, ctx):
        with pytest.raises(ValueError):
            actions.complete_task(ctx, "task-1", "bounty", 5)

    def test_election_report_once_per_polling_unit(self, actions, clock, ctx):
        assert actions.submit_election_report(ctx, "PU-001", "gov-2027", 30).ok
        clock.advance(minutes=1)
        again = actions.submit_election_report(ctx, "PU-001", "gov-2027", 30)
        clock.advance(minutes=1)
        other_unit = actions.submit_election_report(ctx, "PU-002", "gov-2027", 30)

        assert isinstance(again.rejection, DuplicateAction)
        assert other_unit.ok
        assert other_unit.completion.action_id == "gov-2027:PU-002"


# ---------------------------------------------------------------------------
# Campaign votes
# ---------------------------------------------------------------------------
class TestVotes:
    def test_cooldown_between_votes(self, actions, clock, ctx):
        assert actions.cast_campaign_vote(ctx, "camp-1", 5).ok
        clock.advance(seconds=10)
        early = actions.cast_campaign_vote(ctx, "camp-2", 5)
        clock.advance(seconds=55)
        later = actions.cast_campaign_vote(ctx, "camp-2", 5)

        assert isinstance(early.rejection, ActionCooldown)
        assert later.ok

    def test_one_vote_per_campaign(self, actions, clock, ctx):
        actions.cast_campaign_vote(ctx, "camp-1", 5)
        clock.advance(minutes=5)
        assert isinstance(actions.cast_campaign_vote(ctx, "camp-1", 5).rejection, DuplicateAction)


# ---------------------------------------------------------------------------
# Event check-in
# ---------------------------------------------------------------------------
class TestCheckIn:
    def test_window_scenario(self, actions, services, clock, ctx):
        event_time = clock() + timedelta(hours=2)

        early = actions.check_in(ctx, "evt-1", event_time)
        assert isinstance(early.rejection, CheckInWindowClosed)

        clock.now = event_time + timedelta(hours=3)
        late = actions.check_in(ctx, "evt-1", event_time)
        assert isinstance(late.rejection, CheckInWindowExpired)

        clock.now = event_time + timedelta(hours=1)
        on_time = actions.check_in(ctx, "evt-1", event_time)
        assert on_time.ok
        assert on_time.points == 10
        assert services.ledger.current_balance(ctx.member_id) == 10

    def test_location_mismatch(self, actions, clock, ctx):
        far = (LAGOS[0] + 0.02, LAGOS[1])
        outcome = actions.check_in(
            ctx, "evt-2", clock(), event_coords=LAGOS, member_coords=far,
        )
        assert isinstance(outcome.rejection, LocationMismatch)

    def test_location_recorded_on_success(self, actions, clock, ctx):
        near = {"lat": LAGOS[0] + 0.001, "lng": LAGOS[1]}
        outcome = actions.check_in(
            ctx, "evt-3", clock(), event_coords=LAGOS, member_coords=near,
        )
        assert outcome.ok
        assert outcome.completion.details["distance_m"] == pytest.approx(111.2, abs=0.1)


# ---------------------------------------------------------------------------
# Audit trail & fraud screening
# ---------------------------------------------------------------------------
class TestAuditAndFraud:
    def test_success_and_rejection_are_audited(self, actions, clock, db_engine, ctx):
        actions.complete_task(ctx, "task-1", "micro", 5)
        clock.advance(minutes=1)
        actions.complete_task(ctx, "task-1", "micro", 5)

        with Session(db_engine) as session:
            rows = session.scalars(select(AuditLog).order_by(AuditLog.id)).all()
        assert [(r.action, r.status) for r in rows] == [
            ("micro_task.completed", "success"),
            ("micro_task.rejected", "failure"),
        ]
        assert rows[1].details["error"] == "duplicate_action"
        assert rows[0].ip_address == "10.0.0.5"

    def test_unknown_member_is_rejected(self, actions):
        outcome = actions.complete_task(ActionContext("ghost"), "task-1", "micro", 5)
        assert isinstance(outcome.rejection, MemberNotFound)

    def test_suspicious_but_allowed_action_carries_warnings(
        self, actions, services, clock, ctx,
    ):
        services.ledger.append(ctx.member_id, 120, PointSource.TASK)
        services.audit.record(member_id=ctx.member_id, action="task.completed")
        services.audit.record(member_id=ctx.member_id, action="task.completed")
        clock.advance(minutes=1)

        outcome = actions.cast_campaign_vote(ctx, "camp-9", 5)
        assert outcome.ok
        assert outcome.assessment.score == 50
        assert "excessive points earned" in outcome.warnings

        [detection] = services.fraud.recent_detections(ctx.member_id)
        assert detection.blocked is False
        assert detection.severity == "high"
        assert not services.suspensions.is_suspended(ctx.member_id)

    def test_high_score_suspends_and_refuses(self, actions, services, db_engine, ctx):
        services.ledger.append(ctx.member_id, 150, PointSource.QUIZ)
        for _ in range(21):
            services.audit.record(
                member_id=ctx.member_id, action="quiz.completed", ip_address=ctx.ip_address,
            )
        services.fraud.record_detection(
            ctx.member_id, "quiz", services.fraud.score(ctx.member_id),
        )

        outcome = actions.complete_task(ctx, "task-1", "micro", 10)

        assert isinstance(outcome.rejection, AccountSuspended)
        assert outcome.rejection.context["score"] == 90
        assert services.suspensions.is_suspended(ctx.member_id)
        [suspension] = services.suspensions.history(ctx.member_id)
        assert suspension.suspended_by == "system"
        assert suspension.expires_at is not None
        latest = services.fraud.recent_detections(ctx.member_id)[0]
        assert latest.blocked is True
        assert latest.severity == "critical"
        assert _count(db_engine, ActionCompletion) == 0
        assert services.ledger.current_balance(ctx.member_id) == 150

    def test_suspended_member_adds_no_fraud_evidence(
        self, actions, services, clock, db_engine, ctx,
    ):
        """A suspended member's attempt is refused before scoring, so it neither
        logs a detection nor stacks a second suspension."""
        services.suspensions.suspend(ctx.member_id, "chargeback", "admin-1")
        services.ledger.append(ctx.member_id, 150, PointSource.QUIZ)
        for _ in range(21):
            services.audit.record(
                member_id=ctx.member_id, action="quiz.completed", ip_address=ctx.ip_address,
            )
        clock.advance(minutes=1)

        outcome = actions.complete_task(ctx, "task-1", "micro", 10)

        assert isinstance(outcome.rejection, AccountSuspended)
        assert outcome.assessment is None
        assert _count(db_engine, FraudDetectionLog) == 0
        [suspension] = services.suspensions.history(ctx.member_id)
        assert suspension.suspended_by == "admin-1"
        assert suspension.expires_at is None


# ---------------------------------------------------------------------------
# Per-member rate limits
# ---------------------------------------------------------------------------
def _take_quiz(actions, clock, ctx, quiz_id: str, points: int = 10):
    token = actions.start_quiz(ctx.member_id, quiz_id)
    clock.advance(seconds=20)
    return actions.submit_quiz(ctx, quiz_id, token, points, is_correct=True)


class TestRateLimits:
    def test_fourth_quiz_in_an_hour_is_refused(self, actions, services, clock, db_engine, ctx):
        for n in range(3):
            assert _take_quiz(actions, clock, ctx, f"quiz-{n}").ok
            clock.advance(minutes=1)

        outcome = _take_quiz(actions, clock, ctx, "quiz-3")

        assert isinstance(outcome.rejection, RateLimited)
        assert outcome.rejection.status == 429
        assert outcome.rejection.context["scope"] == "quiz"
        assert outcome.rejection.context["limit"] == 3
        assert 0 < outcome.rejection.context["retry_after_seconds"] <= 3600
        assert services.ledger.current_balance(ctx.member_id) == 30
        assert _count(db_engine, ActionCompletion) == 3

    def test_window_slides_open_again(self, actions, clock, ctx):
        for n in range(3):
            assert _take_quiz(actions, clock, ctx, f"quiz-{n}").ok
        clock.advance(hours=1)

        assert _take_quiz(actions, clock, ctx, "quiz-3").ok

    def test_refused_attempts_do_not_use_up_slots(self, actions, clock, ctx):
        assert _take_quiz(actions, clock, ctx, "quiz-0").ok
        for _ in range(3):
            clock.advance(minutes=1)
            duplicate = _take_quiz(actions, clock, ctx, "quiz-0")
            assert isinstance(duplicate.rejection, DuplicateAction)

        clock.advance(minutes=1)
        assert _take_quiz(actions, clock, ctx, "quiz-1").ok
        clock.advance(minutes=1)
        assert _take_quiz(actions, clock, ctx, "quiz-2").ok

    def test_eleventh_task_in_an_hour_is_refused(self, actions, clock, ctx):
        for n in range(10):
            clock.advance(minutes=2)
            assert actions.complete_task(ctx, f"task-{n}", "micro", 2).ok

        clock.advance(minutes=2)
        outcome = actions.complete_task(ctx, "task-10", "volunteer", 2)
        assert isinstance(outcome.rejection, RateLimited)
        assert outcome.rejection.context["scope"] == "task"

    def test_limits_are_per_member(self, actions, clock, db_engine, ctx):
        other = ActionContext(make_member(db_engine, "Grace"), ip_address="10.0.0.6")
        for n in range(3):
            assert _take_quiz(actions, clock, ctx, f"quiz-{n}").ok

        assert _take_quiz(actions, clock, other, "quiz-0").ok

    def test_election_reports_are_not_limited(self, actions, clock, ctx):
        for n in range(12):
            clock.advance(minutes=1)
            assert actions.submit_election_report(ctx, f"pu-{n}", "gov-2027", 0).ok
