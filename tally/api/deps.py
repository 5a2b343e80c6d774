"""
tally.api.deps — FastAPI dependency injection
===============================================
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, Header, HTTPException, Request, status
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from tally.config import TallyConfig, load_config
from tally.database.engine import create_db_engine, init_db
from tally.services.action_service import ActionContext
from tally.services.container import Services, build_disbursement_client, build_services

_WEAK_SECRETS = frozenset({
    "tally-dev-secret-change-me",
    "replace-with-a-long-random-secret-of-at-least-32-chars",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            "JWT_SECRET is set to a known weak default. "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_config() -> TallyConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    engine = create_db_engine()
    init_db(engine)
    return engine


@lru_cache(maxsize=1)
def get_services() -> Services:
    """One service bundle per process."""
    return build_services(
        get_engine(),
        disbursement=build_disbursement_client(get_config()),
        token_secret=JWT_SECRET,
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------
def _decode_bearer(authorization: str | None) -> dict:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    token = authorization.split(" ", 1)[1]
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_current_member(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Validate a member JWT and return the member id (``sub``)."""
    payload = _decode_bearer(authorization)
    member_id = payload.get("sub")
    if not member_id:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")
    return str(member_id)


def get_current_admin(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate JWT and return admin user payload. Raises 401 if invalid."""
    payload = _decode_bearer(authorization)
    if not payload.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return payload


def get_action_context(
    request: Request,
    member_id: str = Depends(get_current_member),
) -> ActionContext:
    """Who is calling and from where, for audit rows and fraud screening."""
    return ActionContext(
        member_id=member_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
