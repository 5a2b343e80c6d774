"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of tally.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from datetime import UTC, datetime  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine, event  # noqa: E402

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB  # noqa: E402

from tally.database.engine import get_session  # noqa: E402
from tally.database.models import Base, Member  # noqa: E402
from tally.database.seed import seed_default_settings  # noqa: E402
from tally.engine.cache import ConfigCache  # noqa: E402
from tally.engine.clock import FrozenClock  # noqa: E402
from tally.services.container import Services, build_services  # noqa: E402
from tally.services.disbursement import DisbursementReceipt, DisbursementStatus  # noqa: E402

_jsonb_sqlite_registered = False

T0 = datetime(2026, 3, 14, 9, 0, 0, tzinfo=UTC)


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent).

    Also maps BigInteger → INTEGER so autoincrement works on SQLite.
    """
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy import BigInteger
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    @compiles(BigInteger, "sqlite")
    def _compile_bigint_as_integer(type_, compiler, **kw):
        return "INTEGER"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """In-memory SQLite engine with every Tally table and default settings.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    return engine


@pytest.fixture
def file_engine(tmp_path) -> Engine:
    """File-backed SQLite engine with one connection per thread.

    Every transaction starts with ``BEGIN IMMEDIATE`` so concurrent writers
    queue on the database lock instead of failing lock upgrades.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tally.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    seed_default_settings(engine)
    yield engine
    engine.dispose()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def cache(db_engine) -> ConfigCache:
    c = ConfigCache(db_engine)
    c.load_all()
    return c


@pytest.fixture
def disbursement() -> MagicMock:
    """Fake payout provider that completes every submission."""
    fake = MagicMock()
    fake.submit.return_value = DisbursementReceipt(
        DisbursementStatus.COMPLETED, provider_reference="prov-001",
    )
    fake.status.return_value = DisbursementReceipt(DisbursementStatus.UNKNOWN)
    return fake


@pytest.fixture
def services(db_engine, cache, clock, disbursement) -> Services:
    return build_services(
        db_engine,
        disbursement=disbursement,
        cache=cache,
        clock=clock,
        token_secret=_TEST_JWT_SECRET,
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_member(engine: Engine, display_name: str = "Ada", **kwargs) -> str:
    """Insert a member and return its id."""
    with get_session(engine) as session:
        member = Member(display_name=display_name, **kwargs)
        session.add(member)
        session.flush()
        return member.id


@pytest.fixture
def member_id(db_engine) -> str:
    return make_member(db_engine)


@pytest.fixture
def admin_token():
    """Generate a valid admin JWT for use in API integration tests."""
    return make_admin_token()


def make_admin_token(sub: str = "admin-1", username: str = "FixtureAdmin") -> str:
    """Create an admin JWT.  Usable as both a fixture and a factory function."""
    import jwt

    from tally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode(
        {"sub": sub, "username": username, "is_admin": True},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def make_member_token(member_id: str) -> str:
    import jwt

    from tally.api.deps import JWT_ALGORITHM, JWT_SECRET

    return jwt.encode({"sub": member_id}, JWT_SECRET, algorithm=JWT_ALGORITHM)
