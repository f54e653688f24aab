"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from gate_core.state.database import get_engine, get_session_factory
from gate_core.state.repository import (
    FavoriteRepository,
    ProviderEventRepository,
    StoryRepository,
    SubscriptionRepository,
    UsageLedgerRepository,
)

__all__ = [
    "FavoriteRepository",
    "ProviderEventRepository",
    "StoryRepository",
    "SubscriptionRepository",
    "UsageLedgerRepository",
    "get_engine",
    "get_session_factory",
]
