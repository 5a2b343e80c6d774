"""
tally.engine.tokens — Signed action tokens
===========================================

A quiz start hands the member a short-lived HS256 token that records *when*
the quiz was opened.  On submission the token is verified and the
completion time is derived server-side from the token's ``iat``, so a
client cannot claim a longer completion time than it actually took.

Expiry is checked against the injected clock rather than the wall clock so
the rule is testable; PyJWT's own ``exp`` check is therefore disabled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
from jwt.exceptions import InvalidTokenError

from tally.engine.clock import Clock, as_utc, utcnow
from tally.engine.outcomes import InvalidActionToken

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
TOKEN_TYPE = "action"

# Default lifetimes per action kind
DEFAULT_TTLS: dict[str, timedelta] = {
    "quiz": timedelta(minutes=15),
    "task": timedelta(minutes=30),
    "event": timedelta(hours=1),
}


@dataclass(frozen=True, slots=True)
class ActionClaims:
    member_id: str
    action: str
    action_id: str
    issued_at: datetime
    expires_at: datetime


class ActionTokenSigner:
    """Issue and verify action tokens bound to one member and one action."""

    def __init__(self, secret: str, *, clock: Clock = utcnow) -> None:
        if not secret:
            raise ValueError("Action token secret must not be empty")
        self._secret = secret
        self._clock = clock

    def issue(
        self, member_id: str, action: str, action_id: str, ttl: timedelta | None = None,
    ) -> str:
        now = self._clock()
        ttl = ttl or DEFAULT_TTLS.get(action, DEFAULT_TTLS["quiz"])
        payload = {
            "typ": TOKEN_TYPE,
            "sub": member_id,
            "act": action,
            "aid": action_id,
            # Sub-second precision matters for the minimum-time rule
            "iat_ms": int(now.timestamp() * 1000),
            "exp_ms": int((now + ttl).timestamp() * 1000),
        }
        return jwt.encode(payload, self._secret, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str, member_id: str, action: str, action_id: str) -> ActionClaims:
        """Return the claims or raise :class:`InvalidActionToken`."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                options={"verify_exp": False},
            )
        except InvalidTokenError:
            raise InvalidActionToken("Action token signature is invalid")

        if (
            payload.get("typ") != TOKEN_TYPE
            or payload.get("sub") != member_id
            or payload.get("act") != action
            or payload.get("aid") != action_id
        ):
            raise InvalidActionToken("Action token does not match this action")

        try:
            issued = datetime.fromtimestamp(int(payload["iat_ms"]) / 1000, UTC)
            expires = datetime.fromtimestamp(int(payload["exp_ms"]) / 1000, UTC)
        except (KeyError, TypeError, ValueError):
            raise InvalidActionToken("Action token is malformed")

        if as_utc(self._clock()) > expires:
            raise InvalidActionToken("Action token has expired")

        return ActionClaims(member_id, action, action_id, issued, expires)
