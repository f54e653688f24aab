"""Content source boundary.

The serving layer asks a :class:`ContentSource` for one page of ranked
items after the gate has allowed the read.  Feed ingestion and
summarisation happen elsewhere; :class:`StoryContentSource` only pages
through the ``stories`` table they populate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gate_core.state.repository import StoryRepository

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


@dataclass(frozen=True)
class ContentItem:
    """One ranked story."""

    id: int
    title: str
    url: str
    published_at: datetime
    source: str | None = None
    summary: str | None = None


@dataclass(frozen=True)
class ContentPage:
    """A page of items and the opaque cursor for the next page, if any."""

    items: list[ContentItem] = field(default_factory=list)
    next_cursor: str | None = None


class ContentSource(Protocol):
    """Producer of ranked content pages."""

    async def fetch_page(self, cursor: str | None, page_size: int) -> ContentPage:
        """Return the page starting at *cursor* (``None`` for the first page)."""
        ...


def _parse_cursor(cursor: str | None) -> int:
    if cursor is None or cursor == "":
        return 0
    if not cursor.isdigit():
        raise ValueError(f"Invalid cursor: {cursor!r}")
    return int(cursor)


class StoryContentSource:
    """Newest-first pages over the ``stories`` table.

    The cursor is the decimal offset of the next item.

    Parameters
    ----------
    session_factory:
        Factory for sessions against the state store.
    max_page_size:
        Upper bound applied to the requested page size.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self._max_page_size = max_page_size

    async def fetch_page(self, cursor: str | None, page_size: int) -> ContentPage:
        """Return up to *page_size* stories starting at *cursor*.

        Raises
        ------
        ValueError
            If *cursor* is not a non-negative integer or *page_size* < 1.
        """
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        offset = _parse_cursor(cursor)
        size = min(page_size, self._max_page_size)

        async with self._session_factory() as session:
            # One extra row tells us whether another page exists.
            rows = await StoryRepository(session).list_page(offset, size + 1)

        items = [
            ContentItem(
                id=row.id,
                title=row.title,
                url=row.url,
                published_at=row.published_at,
                source=row.source,
                summary=row.summary,
            )
            for row in rows[:size]
        ]
        next_cursor = str(offset + size) if len(rows) > size else None
        return ContentPage(items=items, next_cursor=next_cursor)
