"""Engine and session factory for the metered-access state store.

The ledger, the subscription cache and the content source each open short
sessions from one shared :func:`get_session_factory`.  The backend follows
the URL scheme:

  - ``postgresql+asyncpg://`` → pooled PostgreSQL, shared by every API
    process, which is what makes the ledger's conditional UPDATE a
    cross-process guarantee
  - ``sqlite+aiosqlite://``   → one local file for development and tests
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gate_core.state.tables import Base

logger = logging.getLogger(__name__)

# What the state store raises when it cannot serve a call.  asyncpg and
# aiosqlite let OSError (e.g. ConnectionRefusedError) out of connect without
# a SQLAlchemy wrapper.
STORE_ERRORS: tuple[type[Exception], ...] = (SQLAlchemyError, OSError)

# Server-side ceilings.  Gate calls are cut off much earlier by the gate's
# own timeout; these bound reconciliation writes and migrations.
_STATEMENT_TIMEOUT_MS = 15_000
_LOCK_TIMEOUT_MS = 5_000


def _sqlite_path(database_url: str) -> str:
    # sqlite+aiosqlite:///relative.db, sqlite+aiosqlite:////abs.db, or :memory:
    _, sep, path = database_url.partition("///")
    return path if sep and path else ":memory:"


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://`` or ``sqlite+aiosqlite://`` URL.
    pool_size, max_overflow:
        PostgreSQL pool sizing; ignored for SQLite.
    """
    if database_url.startswith("sqlite"):
        from gate_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_timeout=5,
        connect_args={
            "server_settings": {
                "statement_timeout": str(_STATEMENT_TIMEOUT_MS),
                "lock_timeout": str(_LOCK_TIMEOUT_MS),
                "application_name": "newsgate",
            }
        },
    )
    logger.info("Created PostgreSQL engine pool_size=%d max_overflow=%d", pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to *engine*.

    Sessions do not expire attributes on commit so that snapshots built
    from ORM rows stay readable after the transaction closes.
    """
    return async_sessionmaker(engine, expire_on_commit=False)


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create any missing tables.

    For development and SQLite only; deployed databases are migrated with
    Alembic.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("State tables ensured on %s", engine.url.render_as_string(hide_password=True))
