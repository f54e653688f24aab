"""Repository classes providing access to the metered-access state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  The caller owns the transaction
(``async with factory() as session, session.begin():``) and therefore the
commit or rollback.

Mutations of ``usage_ledger`` are single conditional statements so that
concurrent writers, in one process or many, never need an application
lock: the database re-evaluates the ``WHERE`` clause against the latest
committed row before applying the ``SET``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, case, delete, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gate_core.state.tables import (
    FavoriteTable,
    ProviderEventTable,
    StoryTable,
    SubscriptionTable,
    UsageLedgerTable,
    UTCDateTime,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    ``rowcount`` on the returned result is 1 when the row was inserted and
    0 when it already existed.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# UsageLedgerRepository
# ---------------------------------------------------------------------------


class UsageLedgerRepository:
    """Row-level operations on ``usage_ledger``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _effective_daily_count(today: str) -> ColumnElement[int]:
        """SQL expression for today's count: the stored count, or 0 if stale.

        Only an older key is stale.  A key ahead of *today* was written by a
        worker whose clock already passed midnight; its count stands.
        """
        return case(
            (UsageLedgerTable.daily_date >= today, UsageLedgerTable.daily_count),
            else_=0,
        )

    @staticmethod
    def _advanced_daily_date(today: str) -> ColumnElement[str]:
        """SQL expression for the later of the stored key and *today*."""
        return case(
            (UsageLedgerTable.daily_date > today, UsageLedgerTable.daily_date),
            else_=today,
        )

    async def get(self, identity: str) -> UsageLedgerTable | None:
        result = await self._session.execute(
            select(UsageLedgerTable)
            .where(UsageLedgerTable.identity == identity)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure(self, identity: str, today: str) -> bool:
        """Create a zeroed record for *identity* if none exists.

        Returns ``True`` if a row was created.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            UsageLedgerTable,
            values={
                "identity": identity,
                "daily_count": 0,
                "daily_date": today,
                "total_count": 0,
            },
            index_elements=["identity"],
        )
        return bool(result.rowcount)

    async def adopt_legacy(self, identity: str, daily_count: int, daily_date: str) -> bool:
        """Rewrite a legacy-shaped row into the canonical shape.

        Compare-and-set on ``daily_date IS NULL`` so a concurrent writer that
        already migrated the row is never overwritten.
        """
        result = await self._session.execute(
            update(UsageLedgerTable)
            .where(
                UsageLedgerTable.identity == identity,
                UsageLedgerTable.daily_date.is_(None),
            )
            .values(daily_count=daily_count, daily_date=daily_date)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def increment_below(
        self,
        identity: str,
        today: str,
        limit: int | None,
        now: datetime,
    ) -> tuple[int, int, str] | None:
        """Atomically count one read if today's count is below *limit*.

        The comparison and the increment are one statement.  Returns the
        post-increment ``(daily_count, total_count, daily_date)`` or ``None``
        when the limit was already reached.  ``limit=None`` never refuses.
        """
        effective = self._effective_daily_count(today)
        stmt = (
            update(UsageLedgerTable)
            .where(UsageLedgerTable.identity == identity)
            .values(
                daily_count=effective + 1,
                daily_date=self._advanced_daily_date(today),
                total_count=UsageLedgerTable.total_count + 1,
                last_seen_at=literal(now, UTCDateTime()),
            )
            .returning(
                UsageLedgerTable.daily_count,
                UsageLedgerTable.total_count,
                UsageLedgerTable.daily_date,
            )
            .execution_options(synchronize_session=False)
        )
        if limit is not None:
            stmt = stmt.where(effective < limit)
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return int(row[0]), int(row[1]), str(row[2])

    async def roll_over(self, identity: str, today: str) -> bool:
        """Reset a daily counter keyed before *today* to zero under *today*."""
        result = await self._session.execute(
            update(UsageLedgerTable)
            .where(
                UsageLedgerTable.identity == identity,
                UsageLedgerTable.daily_date < today,
            )
            .values(daily_count=0, daily_date=today)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Row-level operations on ``subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, identity: str) -> SubscriptionTable | None:
        result = await self._session.execute(
            select(SubscriptionTable)
            .where(SubscriptionTable.identity == identity)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_status(self, identity: str) -> str | None:
        result = await self._session.execute(
            select(SubscriptionTable.status).where(SubscriptionTable.identity == identity)
        )
        return result.scalar_one_or_none()

    async def get_by_customer(self, external_customer_id: str) -> SubscriptionTable | None:
        result = await self._session.execute(
            select(SubscriptionTable)
            .where(SubscriptionTable.external_customer_id == external_customer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_if_absent(self, identity: str, external_customer_id: str | None = None) -> bool:
        """Insert an unsubscribed record for *identity*; no-op if one exists."""
        result = await _dialect_upsert_nothing(
            self._session,
            SubscriptionTable,
            values={
                "identity": identity,
                "external_customer_id": external_customer_id,
                "status": "none",
                "cancel_at_period_end": False,
            },
            index_elements=["identity"],
        )
        return bool(result.rowcount)

    async def set_customer_if_unset(self, identity: str, external_customer_id: str) -> bool:
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(
                SubscriptionTable.identity == identity,
                SubscriptionTable.external_customer_id.is_(None),
            )
            .values(external_customer_id=external_customer_id)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def apply_if_newer(self, identity: str, values: dict[str, Any], event_ts: datetime) -> bool:
        """Apply *values* unless the stored state is strictly newer than *event_ts*.

        The ordering check is part of the ``UPDATE`` so two deliveries racing
        on the same row cannot both pass it against a stale read.
        """
        stamp = literal(event_ts, UTCDateTime())
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(
                SubscriptionTable.identity == identity,
                or_(
                    SubscriptionTable.updated_at.is_(None),
                    SubscriptionTable.updated_at <= stamp,
                ),
            )
            .values(**values, updated_at=stamp)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def force_status(self, identity: str, status: str, event_ts: datetime) -> bool:
        """Set *status* regardless of ordering; ``updated_at`` never moves back."""
        stamp = literal(event_ts, UTCDateTime())
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(SubscriptionTable.identity == identity)
            .values(
                status=status,
                updated_at=case(
                    (
                        or_(
                            SubscriptionTable.updated_at.is_(None),
                            SubscriptionTable.updated_at < stamp,
                        ),
                        stamp,
                    ),
                    else_=SubscriptionTable.updated_at,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def overwrite(self, identity: str, values: dict[str, Any]) -> bool:
        """Unconditionally replace the cached provider state for *identity*."""
        result = await self._session.execute(
            update(SubscriptionTable)
            .where(SubscriptionTable.identity == identity)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


# ---------------------------------------------------------------------------
# ProviderEventRepository
# ---------------------------------------------------------------------------


class ProviderEventRepository:
    """Deduplication log for provider webhook deliveries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def claim(self, event_id: str, event_type: str) -> bool:
        """Record *event_id* as seen.

        Returns ``False`` when the id was already recorded, i.e. the event
        is a replay.  The claim is rolled back with the caller's
        transaction, so an event whose processing failed can be retried.
        """
        result = await _dialect_upsert_nothing(
            self._session,
            ProviderEventTable,
            values={"event_id": event_id, "event_type": event_type, "outcome": "pending"},
            index_elements=["event_id"],
        )
        return bool(result.rowcount)

    async def record_outcome(self, event_id: str, outcome: str, identity: str | None) -> None:
        await self._session.execute(
            update(ProviderEventTable)
            .where(ProviderEventTable.event_id == event_id)
            .values(outcome=outcome, identity=identity)
            .execution_options(synchronize_session=False)
        )


# ---------------------------------------------------------------------------
# StoryRepository
# ---------------------------------------------------------------------------


class StoryRepository:
    """Ingested stories, read newest first."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_page(self, offset: int, limit: int) -> list[StoryTable]:
        result = await self._session.execute(
            select(StoryTable)
            .order_by(StoryTable.published_at.desc(), StoryTable.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def add(self, story: StoryTable) -> StoryTable:
        """Insert *story*; used by ingestion and fixtures."""
        self._session.add(story)
        await self._session.flush()
        return story


# ---------------------------------------------------------------------------
# FavoriteRepository
# ---------------------------------------------------------------------------


class FavoriteRepository:
    """Saved story ids per identity."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_story_ids(self, identity: str) -> list[str]:
        """Return the saved ids for *identity*, oldest first."""
        result = await self._session.execute(
            select(FavoriteTable.story_id)
            .where(FavoriteTable.identity == identity)
            .order_by(FavoriteTable.created_at, FavoriteTable.story_id)
        )
        return list(result.scalars().all())

    async def add(self, identity: str, story_id: str, saved_at: datetime) -> bool:
        """Save *story_id*; returns ``False`` if it was already saved."""
        result = await _dialect_upsert_nothing(
            self._session,
            FavoriteTable,
            values={"identity": identity, "story_id": story_id, "created_at": saved_at},
            index_elements=["identity", "story_id"],
        )
        return bool(result.rowcount)

    async def remove(self, identity: str, story_id: str) -> bool:
        result = await self._session.execute(
            delete(FavoriteTable).where(
                FavoriteTable.identity == identity,
                FavoriteTable.story_id == story_id,
            )
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)
