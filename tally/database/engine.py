"""
tally.database.engine — Database Connection, Member Lock & Async Bridge
=========================================================================

SQLAlchemy + psycopg2 is **synchronous**; the HTTP API is ``asyncio``.  The
bridge is the same one the rest of the codebase relies on:

    1. A request arrives in a FastAPI handler  (async world).
    2. The handler calls ``await run_db(service.method, arg1, arg2)``.
    3. ``run_db`` ships the synchronous call to a **thread pool** via
       ``asyncio.to_thread()``.
    4. The DB work happens on a background thread — the event loop stays free.

Per-member serialization
------------------------
Every write that touches a member's ledger, completions or suspensions
starts with :func:`lock_member`.  It issues
``UPDATE members SET lock_version = lock_version + 1 WHERE id = :id``:

* on PostgreSQL the UPDATE holds a row lock on the member until the
  transaction ends, so two workers (or two processes) writing for the same
  member queue up behind each other while different members never contend;
* on SQLite the UPDATE takes the database RESERVED lock, which is coarser but
  gives the same linearizability for tests and single-node development.

Usage::

    from tally.database.engine import create_db_engine, get_session, lock_member

    engine = create_db_engine()          # reads DATABASE_URL from .env
    with get_session(engine) as session:
        member = lock_member(session, member_id)
        ...
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine, update
from sqlalchemy.orm import Session

from tally.database.models import Base, Member
from tally.engine.outcomes import MemberNotFound

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    The connection pool is sized for a handful of API workers:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,        # Set True for SQL debugging
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,   # Reconnect stale connections automatically
        pool_timeout=10,      # Fail after 10s instead of hanging forever
        pool_recycle=3600,    # Recycle connections after 1 hour
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`tally.database.models` and seed
    the default tuning settings.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained as a safety net for dev/test
        environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")

    from tally.database.seed import seed_default_settings

    seed_default_settings(engine)


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    ``expire_on_commit=False`` so rows returned out of the block stay
    readable after the session closes.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Per-member write lock
# ---------------------------------------------------------------------------
def lock_member(session: Session, member_id: str) -> Member:
    """Take the per-member write lock for the rest of *session*'s transaction.

    Must be the first write in the transaction.  Raises
    :class:`~tally.engine.outcomes.MemberNotFound` for an unknown id.
    """
    result = session.execute(
        update(Member)
        .where(Member.id == member_id)
        .values(lock_version=Member.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise MemberNotFound(f"Member {member_id} not found")
    member = session.get(Member, member_id, populate_existing=True)
    assert member is not None
    return member


def lock_members(session: Session, *member_ids: str) -> list[Member]:
    """Lock several members in a stable (sorted) order to avoid deadlocks.

    Returns the members in the order the ids were given.
    """
    locked = {mid: lock_member(session, mid) for mid in sorted(set(member_ids))}
    return [locked[mid] for mid in member_ids]


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every DB call from an async route goes through this wrapper::

        result = await run_db(services.ledger.current_balance, member_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
