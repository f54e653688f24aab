"""SQLite backend for development and tests.

Uses the same ORM tables as PostgreSQL; only the engine differs.

* Writers are serialised by SQLite's database lock, so the ledger's
  conditional UPDATE is still atomic: each increment holds the write lock
  from its first statement to commit.
* ``:memory:`` databases live inside one connection.  The engine pins that
  connection with :class:`~sqlalchemy.pool.StaticPool` so the ledger, the
  subscription cache and the content source all see the same tables.
* Tables come from :func:`create_local_tables`, not Alembic.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

# Applied to every new DBAPI connection.
_PRAGMAS: tuple[tuple[str, str], ...] = (
    ("journal_mode", "WAL"),
    ("foreign_keys", "ON"),
    ("synchronous", "NORMAL"),
    # ms a writer waits on the database lock before "database is locked".
    ("busy_timeout", "5000"),
)


def get_local_engine(db_path: Path | str = ".newsgate/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    Parent directories of a file path are created.  ``":memory:"`` gives an
    ephemeral database shared by every session of the returned engine.
    """
    if str(db_path) == _MEMORY:
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{_MEMORY}",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{path}",
            connect_args={"check_same_thread": False},
        )

    @event.listens_for(engine.sync_engine, "connect")
    def _apply_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        for name, value in _PRAGMAS:
            cursor.execute(f"PRAGMA {name}={value}")
        cursor.close()

    logger.info("Created SQLite engine: %s", engine.url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables in the SQLite database.  Idempotent."""
    from gate_core.state.database import ensure_schema

    await ensure_schema(engine)
