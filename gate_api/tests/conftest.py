"""Shared fixtures for gate API tests.

Routes run against real gate components on a file-backed SQLite store;
only the Stripe client is mocked.  Session tokens and webhook signatures
are produced with the same algorithms the service verifies.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import time
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set the session secret BEFORE importing application modules so the
# IdentityMiddleware verifies with a deterministic key.
TEST_SESSION_SECRET = "test-session-secret-for-newsgate"
os.environ["API_SESSION_SECRET"] = TEST_SESSION_SECRET

from gate_api.config import APISettings
from gate_api.dependencies import (
    get_content_source,
    get_db_session,
    get_favorites,
    get_gate,
    get_settings,
    get_subscription_cache,
)
from gate_api.main import create_app
from gate_api.security import SessionTokenVerifier
from gate_core.content import StoryContentSource
from gate_core.favorites import FavoritesStore
from gate_core.gate import AccessGate
from gate_core.ledger import UsageLedger
from gate_core.state.database import get_session_factory
from gate_core.state.sqlite_adapter import create_local_tables, get_local_engine
from gate_core.subscriptions import SubscriptionCache
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

WEBHOOK_SECRET = "whsec_test_newsgate"


def _make_settings(**overrides: Any) -> APISettings:
    """Return settings for tests; billing is off unless overridden."""
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite:///unused.db",
        "platform_env": "dev",
        "session_secret": TEST_SESSION_SECRET,
        "free_reads_per_day": 3,
        "anonymous_reads_per_day": 20,
        "gate_timeout_seconds": 5.0,
        "billing_enabled": False,
        "stripe_secret_key": "sk_test_xxx",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_price_id": "price_monthly",
        "site_url": "https://news.example.com",
    }
    values.update(overrides)
    return APISettings(**values)


def _auth_headers(email: str = "a@example.com", ttl_seconds: int = 3600) -> dict[str, str]:
    """Return an ``Authorization`` header carrying a valid session token."""
    token = SessionTokenVerifier(TEST_SESSION_SECRET).issue(email, ttl_seconds=ttl_seconds)
    return {"Authorization": f"Bearer {token}"}


def _stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Return a ``Stripe-Signature`` header value for *payload*."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def _stripe_event(
    event_type: str,
    obj: dict[str, Any],
    *,
    event_id: str = "evt_1",
    created: datetime | None = None,
) -> bytes:
    """Return a serialised Stripe event envelope."""
    stamp = created or datetime(2024, 1, 1, 12, tzinfo=UTC)
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(stamp.timestamp()),
            "data": {"object": obj},
        }
    ).encode("utf-8")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield get_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def subscriptions(session_factory: async_sessionmaker[AsyncSession]) -> SubscriptionCache:
    return SubscriptionCache(session_factory)


@pytest.fixture()
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> UsageLedger:
    return UsageLedger(session_factory)


@pytest.fixture()
def settings() -> APISettings:
    return _make_settings()


@pytest.fixture()
def build_app(
    session_factory: async_sessionmaker[AsyncSession],
    subscriptions: SubscriptionCache,
    ledger: UsageLedger,
) -> Callable[..., Any]:
    """Return a factory producing an app wired to the test store."""

    def _build(app_settings: APISettings | None = None) -> Any:
        app_settings = app_settings or _make_settings()
        app = create_app()
        gate = AccessGate(ledger, subscriptions, app_settings.gate_policy())

        async def _override_session() -> AsyncGenerator[AsyncSession, None]:
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_settings] = lambda: app_settings
        app.dependency_overrides[get_db_session] = _override_session
        app.dependency_overrides[get_gate] = lambda: gate
        app.dependency_overrides[get_subscription_cache] = lambda: subscriptions
        app.dependency_overrides[get_content_source] = lambda: StoryContentSource(session_factory)
        app.dependency_overrides[get_favorites] = lambda: FavoritesStore(session_factory)
        app.state.test_gate = gate
        return app

    return _build


@pytest_asyncio.fixture
async def client(build_app: Callable[..., Any], settings: APISettings) -> AsyncGenerator[AsyncClient, None]:
    app = build_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.test_gate.drain()


@pytest.fixture()
def make_settings() -> Callable[..., APISettings]:
    return _make_settings


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    return _auth_headers


@pytest.fixture()
def stripe_signature() -> Callable[..., str]:
    return _stripe_signature


@pytest.fixture()
def stripe_event() -> Callable[..., bytes]:
    return _stripe_event
