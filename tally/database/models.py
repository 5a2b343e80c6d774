"""
tally.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- members              — Identity the ledger is keyed on (never deleted)
- point_transactions   — Append-only signed point movements with running balance
- action_completions   — One row per credited action instance (exactly-once key)
- audit_logs           — Generic request/action log read by the fraud detector
- fraud_detection_logs — Append-only fraud evidence
- account_suspensions  — Suspension history; only ``is_active`` is ever flipped
- redemptions          — Points → airtime/data/cash payouts, keyed by idempotency key
- settings             — Tuning knobs (thresholds, weights, redemption bands)
- admin_log            — Append-only operator audit trail
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Tally ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class MemberStatus(enum.StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TransactionType(enum.StrEnum):
    CREDIT = "credit"
    DEBIT = "debit"


class PointSource(enum.StrEnum):
    """Where a ledger movement came from."""
    QUIZ = "quiz"
    TASK = "task"
    VOTE = "vote"
    EVENT = "event"
    ELECTION = "election"
    PURCHASE = "purchase"
    REDEMPTION = "redemption"
    REFUND = "refund"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"


# Sources that count as *earned* points for the velocity heuristic.
EARNING_SOURCES: frozenset[str] = frozenset({
    PointSource.QUIZ.value,
    PointSource.TASK.value,
    PointSource.VOTE.value,
    PointSource.EVENT.value,
    PointSource.ELECTION.value,
})


class ActionFamily(enum.StrEnum):
    QUIZ = "quiz"
    TASK = "task"
    VOTE = "vote"
    EVENT = "event"
    ELECTION = "election"


class ActionType(enum.StrEnum):
    """Concrete action kinds; the third part of the exactly-once key."""
    QUIZ = "quiz"
    MICRO_TASK = "micro_task"
    VOLUNTEER_TASK = "volunteer_task"
    CAMPAIGN_VOTE = "campaign_vote"
    EVENT_CHECKIN = "event_checkin"
    ELECTION_REPORT = "election_report"

    @property
    def family(self) -> ActionFamily:
        return ACTION_FAMILIES[self]

    @property
    def source(self) -> PointSource:
        return FAMILY_SOURCES[ACTION_FAMILIES[self]]


ACTION_FAMILIES: dict[ActionType, ActionFamily] = {
    ActionType.QUIZ: ActionFamily.QUIZ,
    ActionType.MICRO_TASK: ActionFamily.TASK,
    ActionType.VOLUNTEER_TASK: ActionFamily.TASK,
    ActionType.CAMPAIGN_VOTE: ActionFamily.VOTE,
    ActionType.EVENT_CHECKIN: ActionFamily.EVENT,
    ActionType.ELECTION_REPORT: ActionFamily.ELECTION,
}

FAMILY_SOURCES: dict[ActionFamily, PointSource] = {
    ActionFamily.QUIZ: PointSource.QUIZ,
    ActionFamily.TASK: PointSource.TASK,
    ActionFamily.VOTE: PointSource.VOTE,
    ActionFamily.EVENT: PointSource.EVENT,
    ActionFamily.ELECTION: PointSource.ELECTION,
}


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ProductType(enum.StrEnum):
    AIRTIME = "airtime"
    DATA = "data"
    CASH = "cash"


class RedemptionStatus(enum.StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AdminActionType(enum.StrEnum):
    """Categories of operator mutations recorded in admin_log."""
    SUSPEND = "SUSPEND"
    RESTORE = "RESTORE"
    ADJUST = "ADJUST"
    REFUND = "REFUND"
    UPDATE = "UPDATE"
    CREATE = "CREATE"


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Members — identity the ledger is keyed on
# ---------------------------------------------------------------------------
class Member(Base):
    """A platform member.

    ``lock_version`` is bumped by :func:`tally.database.engine.lock_member`
    at the start of every per-member write transaction; the bump is what
    serializes concurrent writers for the same member.
    """
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MemberStatus.ACTIVE.value
    )
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    transactions: Mapped[list[PointTransaction]] = relationship(
        back_populates="member", order_by="PointTransaction.sequence"
    )
    suspensions: Mapped[list[AccountSuspension]] = relationship(
        back_populates="member", order_by="AccountSuspension.suspended_at"
    )

    def __repr__(self) -> str:
        return f"<Member id={self.id} name={self.display_name!r} status={self.status}>"


# ---------------------------------------------------------------------------
# PointTransaction — append-only ledger
# ---------------------------------------------------------------------------
class PointTransaction(Base):
    """Immutable ledger fact.

    Per member, rows ordered by ``sequence`` satisfy
    ``balance_after[n] = balance_after[n-1] + amount[n]`` and
    ``balance_after >= 0``.  Rows are never updated or deleted.
    """
    __tablename__ = "point_transactions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(10), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reference_type: Mapped[str | None] = mapped_column(String(30), nullable=True)
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    member: Mapped[Member] = relationship(back_populates="transactions")

    __table_args__ = (
        # Optimistic backstop for the per-member lock
        UniqueConstraint("member_id", "sequence", name="uq_point_tx_member_seq"),
        CheckConstraint("balance_after >= 0", name="ck_point_tx_balance_non_negative"),
        CheckConstraint("amount <> 0", name="ck_point_tx_amount_non_zero"),
        Index("ix_point_tx_member_time", "member_id", "created_at"),
        Index("ix_point_tx_reference", "reference_type", "reference_id"),
        # One ledger credit per verified purchase reference
        Index(
            "uq_point_tx_purchase_ref",
            "reference_id",
            unique=True,
            postgresql_where=text("source = 'purchase'"),
            sqlite_where=text("source = 'purchase'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PointTransaction id={self.id} member={self.member_id} "
            f"seq={self.sequence} amount={self.amount} balance={self.balance_after}>"
        )


# ---------------------------------------------------------------------------
# ActionCompletion — exactly-once record per credited action
# ---------------------------------------------------------------------------
class ActionCompletion(Base):
    """Quiz attempts, task completions, campaign votes, event attendance and
    election-day submissions, discriminated by ``action_family``.

    ``details`` holds the family-specific payload (quiz completion time,
    check-in coordinates, polling unit, …).
    """
    __tablename__ = "action_completions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id"), nullable=False
    )
    action_family: Mapped[str] = mapped_column(String(20), nullable=False)
    action_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    proof_url: Mapped[str | None] = mapped_column(String(500), nullable=True, unique=True)
    points_awarded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("point_transactions.id"), nullable=True
    )
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "member_id", "action_id", "action_type",
            name="uq_action_completion_member_action",
        ),
        Index("ix_action_completion_member_family_time",
              "member_id", "action_family", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ActionCompletion id={self.id} member={self.member_id} "
            f"{self.action_type}:{self.action_id}>"
        )


# ---------------------------------------------------------------------------
# AuditLog — generic action log (read by the fraud detector)
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("members.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="success")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_audit_logs_ip_time", "ip_address", "created_at"),
        Index("ix_audit_logs_member_time", "member_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} member={self.member_id} action={self.action}>"


# ---------------------------------------------------------------------------
# RateLimitEvent — sliding-window hits per member and scope
# ---------------------------------------------------------------------------
class RateLimitEvent(Base):
    """One accepted action counted against a member's rate limit.

    ``scope`` is an action family (``quiz``, ``task``, ``vote``, ``event``)
    or ``redemption``.  Rows older than the scope's window are pruned on the
    next check.
    """
    __tablename__ = "rate_limit_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    scope: Mapped[str] = mapped_column(String(30), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_rate_limit_member_scope_time", "member_id", "scope", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<RateLimitEvent member={self.member_id!r} scope={self.scope} ts={self.created_at}>"


# ---------------------------------------------------------------------------
# FraudDetectionLog — append-only evidence
# ---------------------------------------------------------------------------
class FraudDetectionLog(Base):
    __tablename__ = "fraud_detection_logs"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Serialized evidence union: {"evidence": [{"kind": ..., ...}, ...]}
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_fraud_logs_member_time", "member_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FraudDetectionLog id={self.id} member={self.member_id} "
            f"severity={self.severity} blocked={self.blocked}>"
        )


# ---------------------------------------------------------------------------
# AccountSuspension — suspension history
# ---------------------------------------------------------------------------
class AccountSuspension(Base):
    """A suspension period.  ``expires_at`` of ``None`` means permanent.

    Rows are never deleted; expiry and restoration only flip ``is_active``.
    """
    __tablename__ = "account_suspensions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    suspended_by: Mapped[str] = mapped_column(String(64), nullable=False)
    suspended_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    lifted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lifted_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    member: Mapped[Member] = relationship(back_populates="suspensions")

    __table_args__ = (
        Index("ix_suspensions_member_active", "member_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountSuspension id={self.id} member={self.member_id} "
            f"active={self.is_active} expires={self.expires_at}>"
        )


# ---------------------------------------------------------------------------
# Redemption — points → external value
# ---------------------------------------------------------------------------
class Redemption(Base):
    __tablename__ = "redemptions"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("members.id"), nullable=False
    )
    product_type: Mapped[str] = mapped_column(String(20), nullable=False)
    destination: Mapped[str] = mapped_column(String(100), nullable=False)
    points_debited: Mapped[int] = mapped_column(Integer, nullable=False)
    external_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RedemptionStatus.PENDING.value
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    debit_transaction_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("point_transactions.id"), nullable=True
    )
    refund_transaction_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("point_transactions.id"), nullable=True
    )
    provider_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_redemptions_member_time", "member_id", "created_at"),
        Index("ix_redemptions_status_time", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Redemption id={self.id} member={self.member_id} "
            f"{self.product_type} points={self.points_debited} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# Setting — key/value tuning store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Every tuning knob (fraud ceilings and weights, quiz minimum time,
    check-in window, redemption bands) lives here so operators can adjust
    values without redeploying.  Values are stored as JSON strings; typed
    accessors live in :class:`~tally.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only operator audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"
