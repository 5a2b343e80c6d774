"""
tally.engine.outcomes — Typed rejections and action outcomes
=============================================================

Policy rejections are expected results, not system errors.  Components raise
a :class:`Rejection` subclass; the action handlers catch it and hand an
:class:`ActionOutcome` back to the caller, and the API turns it into a 4xx
body.  Storage failures (``SQLAlchemyError``) are *not* rejections and
propagate untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from tally.database.models import ActionCompletion, PointTransaction
    from tally.engine.fraud import FraudAssessment


class Rejection(Exception):
    """Base class for every expected, typed refusal."""

    code: str = "rejected"
    status: int = 400

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class MemberNotFound(Rejection):
    code = "member_not_found"
    status = 404


class DuplicateAction(Rejection):
    """Uniqueness Guard refusal — the action was already credited."""
    code = "duplicate_action"
    status = 409


class ActionCooldown(Rejection):
    code = "action_cooldown"
    status = 429


class RateLimited(Rejection):
    code = "rate_limited"
    status = 429


class IdempotencyKeyConflict(Rejection):
    """The key is already bound to another member's request."""
    code = "idempotency_key_conflict"
    status = 409


class AccountSuspended(Rejection):
    code = "account_suspended"
    status = 403


class InsufficientBalance(Rejection):
    code = "insufficient_balance"
    status = 409


class TooFast(Rejection):
    code = "too_fast"
    status = 422


class CheckInWindowClosed(Rejection):
    """Check-in attempted before the window opens."""
    code = "checkin_window_closed"
    status = 422


class CheckInWindowExpired(Rejection):
    """Check-in attempted after the window has closed."""
    code = "checkin_window_expired"
    status = 422


class LocationMismatch(Rejection):
    code = "location_mismatch"
    status = 422


class PointsOutOfRange(Rejection):
    code = "points_out_of_range"
    status = 422


class InvalidActionToken(Rejection):
    code = "invalid_action_token"
    status = 401


class RedemptionNotRefundable(Rejection):
    code = "redemption_not_refundable"
    status = 409


@dataclass(slots=True)
class ActionOutcome:
    """What an action handler hands back to its caller.

    ``ok`` is False exactly when ``rejection`` is set.  ``transaction`` is
    None for recorded-but-unrewarded attempts (e.g. a wrong quiz answer).
    """

    ok: bool
    transaction: PointTransaction | None = None
    completion: ActionCompletion | None = None
    rejection: Rejection | None = None
    assessment: FraudAssessment | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def points(self) -> int:
        return self.transaction.amount if self.transaction is not None else 0

    @classmethod
    def rejected(
        cls, rejection: Rejection, assessment: FraudAssessment | None = None
    ) -> ActionOutcome:
        return cls(ok=False, rejection=rejection, assessment=assessment)
