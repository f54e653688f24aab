"""Initial schema for the metered-access state store.

Creates ``usage_ledger``, ``subscriptions``, ``provider_events`` and
``stories``.  ``usage_ledger`` keeps the two legacy counter columns so rows
imported from the previous counter schema can be normalised lazily.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "usage_ledger",
        sa.Column("identity", sa.String(320), primary_key=True),
        sa.Column("daily_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("daily_date", sa.String(10), nullable=True),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("legacy_reads_today", sa.Integer(), nullable=True),
        sa.Column("legacy_last_reset_ms", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("daily_count >= 0", name="ck_usage_ledger_daily_count"),
        sa.CheckConstraint("total_count >= 0", name="ck_usage_ledger_total_count"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("identity", sa.String(320), primary_key=True),
        sa.Column("external_customer_id", sa.String(256), nullable=True),
        sa.Column("external_subscription_id", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("external_customer_id", name="uq_subscriptions_customer"),
        sa.CheckConstraint(
            "status IN ('none', 'trialing', 'active', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
    )

    op.create_table(
        "provider_events",
        sa.Column("event_id", sa.String(256), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("identity", sa.String(320), nullable=True),
        sa.Column("outcome", sa.String(32), nullable=False),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_provider_events_received", "provider_events", ["received_at"])

    op.create_table(
        "stories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(1024), nullable=False),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("source", sa.String(256), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_stories_published", "stories", ["published_at"])


def downgrade() -> None:
    op.drop_index("ix_stories_published", table_name="stories")
    op.drop_table("stories")
    op.drop_index("ix_provider_events_received", table_name="provider_events")
    op.drop_table("provider_events")
    op.drop_table("subscriptions")
    op.drop_table("usage_ledger")
