"""Initial ledger schema

Revision ID: a7c3e9f1b2d4
Revises:
Create Date: 2026-10-12 09:41:17.204118

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = 'a7c3e9f1b2d4'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create members, the append-only ledger and the integrity tables."""

    # --- members ---
    op.create_table(
        "members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("is_verified", sa.Boolean, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("lock_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # --- point_transactions ---
    op.create_table(
        "point_transactions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(36), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("transaction_type", sa.String(10), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("balance_after", sa.Integer, nullable=False),
        sa.Column("reference_type", sa.String(30), nullable=True),
        sa.Column("reference_id", sa.String(128), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("member_id", "sequence", name="uq_point_tx_member_seq"),
        sa.CheckConstraint("balance_after >= 0", name="ck_point_tx_balance_non_negative"),
        sa.CheckConstraint("amount <> 0", name="ck_point_tx_amount_non_zero"),
    )
    op.create_index(
        "ix_point_tx_member_time", "point_transactions", ["member_id", "created_at"],
    )
    op.create_index(
        "ix_point_tx_reference", "point_transactions", ["reference_type", "reference_id"],
    )
    op.create_index(
        "uq_point_tx_purchase_ref", "point_transactions", ["reference_id"],
        unique=True,
        postgresql_where=sa.text("source = 'purchase'"),
        sqlite_where=sa.text("source = 'purchase'"),
    )

    # --- action_completions ---
    op.create_table(
        "action_completions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(36), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("action_family", sa.String(20), nullable=False),
        sa.Column("action_id", sa.String(128), nullable=False),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("proof_url", sa.String(500), nullable=True, unique=True),
        sa.Column("points_awarded", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "transaction_id",
            sa.BigInteger,
            sa.ForeignKey("point_transactions.id"),
            nullable=True,
        ),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint(
            "member_id", "action_id", "action_type",
            name="uq_action_completion_member_action",
        ),
    )
    op.create_index(
        "ix_action_completion_member_family_time", "action_completions",
        ["member_id", "action_family", "created_at"],
    )

    # --- audit_logs ---
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "member_id",
            sa.String(36),
            sa.ForeignKey("members.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("resource_type", sa.String(50), nullable=True),
        sa.Column("resource_id", sa.String(128), nullable=True),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=True),
        sa.Column("status", sa.String(10), nullable=False, server_default="success"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_audit_logs_ip_time", "audit_logs", ["ip_address", "created_at"])
    op.create_index("ix_audit_logs_member_time", "audit_logs", ["member_id", "created_at"])

    # --- fraud_detection_logs ---
    op.create_table(
        "fraud_detection_logs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(36), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("action_type", sa.String(30), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("blocked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("score", sa.Integer, nullable=False, server_default="0"),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text, nullable=True),
        sa.Column("fingerprint", sa.String(64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_fraud_logs_member_time", "fraud_detection_logs", ["member_id", "created_at"],
    )

    # --- account_suspensions ---
    op.create_table(
        "account_suspensions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(36), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("suspended_by", sa.String(64), nullable=False),
        sa.Column(
            "suspended_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("lifted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lifted_by", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
    )
    op.create_index(
        "ix_suspensions_member_active", "account_suspensions", ["member_id", "is_active"],
    )

    # --- redemptions ---
    op.create_table(
        "redemptions",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("member_id", sa.String(36), sa.ForeignKey("members.id"), nullable=False),
        sa.Column("product_type", sa.String(20), nullable=False),
        sa.Column("destination", sa.String(100), nullable=False),
        sa.Column("points_debited", sa.Integer, nullable=False),
        sa.Column("external_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("idempotency_key", sa.String(128), nullable=False, unique=True),
        sa.Column(
            "debit_transaction_id",
            sa.BigInteger,
            sa.ForeignKey("point_transactions.id"),
            nullable=True,
        ),
        sa.Column(
            "refund_transaction_id",
            sa.BigInteger,
            sa.ForeignKey("point_transactions.id"),
            nullable=True,
        ),
        sa.Column("provider_reference", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_redemptions_member_time", "redemptions", ["member_id", "created_at"])
    op.create_index("ix_redemptions_status_time", "redemptions", ["status", "created_at"])

    # --- settings ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_settings_category", "settings", ["category"])

    # --- admin_log ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"],
    )


def downgrade() -> None:
    """Drop every ledger table (children first)."""
    op.drop_table("admin_log")
    op.drop_table("settings")
    op.drop_table("redemptions")
    op.drop_table("account_suspensions")
    op.drop_table("fraud_detection_logs")
    op.drop_table("audit_logs")
    op.drop_table("action_completions")
    op.drop_index("uq_point_tx_purchase_ref", table_name="point_transactions")
    op.drop_table("point_transactions")
    op.drop_table("members")
