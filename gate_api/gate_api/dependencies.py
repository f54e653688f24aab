"""FastAPI dependency injection for settings, sessions, and the access gate."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from gate_core.content import ContentSource, StoryContentSource
from gate_core.favorites import FavoritesStore
from gate_core.gate import AccessGate
from gate_core.ledger import UsageLedger
from gate_core.state.database import get_engine
from gate_core.state.database import get_session_factory as make_session_factory
from gate_core.subscriptions import SubscriptionCache
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gate_api.config import APISettings, load_api_settings
from gate_api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for health probes.

    Gate components open their own sessions per operation; this dependency
    is only for endpoints that talk to the database directly.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


# ---------------------------------------------------------------------------
# Gate components
# ---------------------------------------------------------------------------

_gate: AccessGate | None = None
_subscriptions: SubscriptionCache | None = None
_content_source: ContentSource | None = None
_favorites: FavoritesStore | None = None


def init_gate(
    settings: APISettings,
    session_factory: async_sessionmaker[AsyncSession],
) -> AccessGate:
    """Create and cache the gate components and the favorites store.

    Raises
    ------
    ConfigurationError
        If the configured limits are invalid.
    """
    global _gate, _subscriptions, _content_source, _favorites  # noqa: PLW0603
    policy = settings.gate_policy()
    provider = BillingService(settings) if settings.billing_enabled else None
    _subscriptions = SubscriptionCache(
        session_factory,
        provider=provider,
        payment_failure_policy=settings.payment_failure_policy,
    )
    _gate = AccessGate(UsageLedger(session_factory), _subscriptions, policy)
    _content_source = StoryContentSource(session_factory)
    _favorites = FavoritesStore(session_factory)
    return _gate


async def dispose_gate() -> None:
    """Let in-flight read recordings finish, then drop the components."""
    global _gate, _subscriptions, _content_source, _favorites  # noqa: PLW0603
    if _gate is not None:
        await _gate.drain()
    _gate = None
    _subscriptions = None
    _content_source = None
    _favorites = None


def get_gate() -> AccessGate:
    """Return the cached :class:`AccessGate` singleton."""
    if _gate is None:
        raise RuntimeError("Access gate has not been initialised. Ensure init_gate() is called during startup.")
    return _gate


def get_subscription_cache() -> SubscriptionCache:
    """Return the cached :class:`SubscriptionCache` singleton."""
    if _subscriptions is None:
        raise RuntimeError("Subscription cache has not been initialised. Ensure init_gate() is called during startup.")
    return _subscriptions


def get_content_source() -> ContentSource:
    """Return the cached :class:`ContentSource` singleton."""
    if _content_source is None:
        raise RuntimeError("Content source has not been initialised. Ensure init_gate() is called during startup.")
    return _content_source


def get_favorites() -> FavoritesStore:
    """Return the cached :class:`FavoritesStore` singleton."""
    if _favorites is None:
        raise RuntimeError("Favorites store has not been initialised. Ensure init_gate() is called during startup.")
    return _favorites


GateDep = Annotated[AccessGate, Depends(get_gate)]
SubscriptionCacheDep = Annotated[SubscriptionCache, Depends(get_subscription_cache)]
ContentSourceDep = Annotated[ContentSource, Depends(get_content_source)]
FavoritesDep = Annotated[FavoritesStore, Depends(get_favorites)]

# ---------------------------------------------------------------------------
# Visitor identity (populated by IdentityMiddleware)
# ---------------------------------------------------------------------------


def get_identity(request: Request) -> str | None:
    """Return the visitor's identity key, or ``None`` if anonymous."""
    return getattr(request.state, "identity", None)


def require_identity(request: Request) -> str:
    """Return the visitor's identity key; anonymous visitors get 401."""
    identity = get_identity(request)
    if identity is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity


IdentityDep = Annotated[str | None, Depends(get_identity)]
AuthenticatedDep = Annotated[str, Depends(require_identity)]
