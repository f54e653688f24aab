"""Saved stories for signed-in visitors.

Saving and removing are idempotent.  Favorites are not metered: listing or
changing them never touches the usage ledger.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gate_core.clock import Clock, utc_now
from gate_core.errors import FavoritesUnavailableError
from gate_core.identity import normalize_identity
from gate_core.state.database import STORE_ERRORS
from gate_core.state.repository import FavoriteRepository
from gate_core.state.tables import MAX_STORY_ID_LENGTH

logger = logging.getLogger(__name__)


def _identity_key(identity: str) -> str:
    key = normalize_identity(identity)
    if key is None:
        raise ValueError("Favorites require a signed-in identity")
    return key


def clean_story_id(story_id: str) -> str:
    """Return *story_id* stripped of surrounding whitespace.

    Raises
    ------
    ValueError
        If the id is blank or longer than :data:`MAX_STORY_ID_LENGTH`.
    """
    cleaned = story_id.strip()
    if not cleaned:
        raise ValueError("storyId cannot be empty")
    if len(cleaned) > MAX_STORY_ID_LENGTH:
        raise ValueError(f"storyId exceeds {MAX_STORY_ID_LENGTH} characters")
    return cleaned


class FavoritesStore:
    """Per-identity saved story ids backed by the state store.

    Parameters
    ----------
    session_factory:
        Factory for sessions against the state store.
    clock:
        Stamps ``created_at``, which orders the list.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def list_saved(self, identity: str) -> list[str]:
        """Return the story ids saved by *identity*, oldest first."""
        key = _identity_key(identity)
        try:
            async with self._session_factory() as session:
                return await FavoriteRepository(session).list_story_ids(key)
        except STORE_ERRORS as exc:
            raise FavoritesUnavailableError(f"Favorites unavailable: {exc}") from exc

    async def save(self, identity: str, story_id: str) -> bool:
        """Save *story_id* for *identity*.  Returns ``False`` if already saved."""
        key = _identity_key(identity)
        story = clean_story_id(story_id)
        try:
            async with self._session_factory() as session, session.begin():
                created = await FavoriteRepository(session).add(key, story, self._clock())
        except STORE_ERRORS as exc:
            logger.warning("Saving favorite failed for %s: %s", key, exc)
            raise FavoritesUnavailableError(f"Favorites unavailable: {exc}") from exc
        if created:
            logger.info("Saved favorite %s for %s", story, key)
        return created

    async def remove(self, identity: str, story_id: str) -> bool:
        """Remove *story_id* for *identity*.  Returns ``False`` if it was not saved."""
        key = _identity_key(identity)
        story = clean_story_id(story_id)
        try:
            async with self._session_factory() as session, session.begin():
                return await FavoriteRepository(session).remove(key, story)
        except STORE_ERRORS as exc:
            logger.warning("Removing favorite failed for %s: %s", key, exc)
            raise FavoritesUnavailableError(f"Favorites unavailable: {exc}") from exc
