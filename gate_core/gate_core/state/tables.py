"""SQLAlchemy 2.0 ORM table definitions for the metered-access state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from gate_core.identity import MAX_IDENTITY_LENGTH

MAX_STORY_ID_LENGTH = 256


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timestamp column that always binds and returns UTC-aware datetimes.

    SQLite stores datetimes as naive ISO strings, so values are converted
    to UTC before binding (keeping string comparison in SQL consistent) and
    tagged with UTC on the way out.  PostgreSQL uses ``timestamptz``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all state-store tables."""


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsageLedgerTable(Base):
    """Per-identity read counters.

    ``daily_count`` is only meaningful relative to ``daily_date``; a row
    whose ``daily_date`` is older than today's key counts as zero reads
    today.  ``daily_date`` never moves backwards.
    ``daily_date`` is ``NULL`` only for rows written by the previous counter
    schema, which kept ``legacy_reads_today`` / ``legacy_last_reset_ms``
    instead.
    """

    __tablename__ = "usage_ledger"

    identity: Mapped[str] = mapped_column(String(MAX_IDENTITY_LENGTH), primary_key=True)
    daily_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_seen_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    legacy_reads_today: Mapped[int | None] = mapped_column(Integer, nullable=True)
    legacy_last_reset_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("daily_count >= 0", name="ck_usage_ledger_daily_count"),
        CheckConstraint("total_count >= 0", name="ck_usage_ledger_total_count"),
    )


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """Cached subscription state, mirrored from the payment provider.

    ``updated_at`` holds the timestamp of the last applied provider event
    or reconciliation and is the ordering guard for webhook updates.
    """

    __tablename__ = "subscriptions"

    identity: Mapped[str] = mapped_column(String(MAX_IDENTITY_LENGTH), primary_key=True)
    external_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    external_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("external_customer_id", name="uq_subscriptions_customer"),
        CheckConstraint(
            "status IN ('none', 'trialing', 'active', 'past_due', 'canceled')",
            name="ck_subscriptions_status",
        ),
    )


class ProviderEventTable(Base):
    """Ids of provider webhook events that have already been applied."""

    __tablename__ = "provider_events"

    event_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    identity: Mapped[str | None] = mapped_column(String(MAX_IDENTITY_LENGTH), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_provider_events_received", "received_at"),)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class StoryTable(Base):
    """Ranked news items served through the content route.

    Rows are written by the ingestion pipeline, which lives outside this
    service.
    """

    __tablename__ = "stories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(1024), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    source: Mapped[str | None] = mapped_column(String(256), nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_stories_published", "published_at"),)


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------


class FavoriteTable(Base):
    """Stories a signed-in visitor saved.

    ``story_id`` is the client's opaque story reference and is not tied to
    ``stories.id``; saved items outlive ingestion pruning.
    """

    __tablename__ = "favorites"

    identity: Mapped[str] = mapped_column(String(MAX_IDENTITY_LENGTH), primary_key=True)
    story_id: Mapped[str] = mapped_column(String(MAX_STORY_ID_LENGTH), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
