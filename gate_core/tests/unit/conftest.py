"""Shared fixtures for gate_core unit tests.

Every test gets a fresh file-backed SQLite database (WAL mode) so that
concurrent sessions use separate connections, as they do in production.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gate_core.state.database import get_session_factory
from gate_core.state.sqlite_adapter import create_local_tables, get_local_engine


class ManualClock:
    """Settable clock; call the instance to read the current time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)

    def set(self, moment: datetime) -> None:
        self.now = moment


@pytest.fixture()
def clock() -> ManualClock:
    """A clock parked at 2024-01-01 09:00 UTC."""
    return ManualClock(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(engine)
