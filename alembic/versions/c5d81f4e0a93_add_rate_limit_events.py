"""Add rate_limit_events table

Revision ID: c5d81f4e0a93
Revises: a7c3e9f1b2d4
Create Date: 2026-10-19 10:12:05.618342

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = 'c5d81f4e0a93'
down_revision: str | Sequence[str] | None = 'a7c3e9f1b2d4'
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the per-member sliding-window rate limit table."""
    op.create_table(
        "rate_limit_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "member_id",
            sa.String(36),
            sa.ForeignKey("members.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("scope", sa.String(30), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_rate_limit_member_scope_time",
        "rate_limit_events",
        ["member_id", "scope", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_rate_limit_member_scope_time", table_name="rate_limit_events")
    op.drop_table("rate_limit_events")
