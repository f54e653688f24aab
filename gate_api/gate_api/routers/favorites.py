"""Saved stories for the signed-in visitor.

Favorites require a session but are not metered.
"""

from __future__ import annotations

from fastapi import APIRouter

from gate_api.dependencies import AuthenticatedDep, FavoritesDep
from gate_api.schemas import FavoriteAck, FavoriteItem, FavoriteRequest

router = APIRouter(prefix="/favorites", tags=["favorites"])


@router.get("", response_model=list[FavoriteItem])
async def list_favorites(identity: AuthenticatedDep, favorites: FavoritesDep) -> list[FavoriteItem]:
    """Return the visitor's saved story ids, oldest first."""
    return [FavoriteItem(id=story_id) for story_id in await favorites.list_saved(identity)]


@router.post("", response_model=FavoriteAck)
async def save_favorite(body: FavoriteRequest, identity: AuthenticatedDep, favorites: FavoritesDep) -> FavoriteAck:
    """Save a story.  Saving it again is a no-op."""
    return FavoriteAck(changed=await favorites.save(identity, body.story_id))


@router.delete("", response_model=FavoriteAck)
async def remove_favorite(body: FavoriteRequest, identity: AuthenticatedDep, favorites: FavoritesDep) -> FavoriteAck:
    """Remove a saved story.  Removing one that is not saved is a no-op."""
    return FavoriteAck(changed=await favorites.remove(identity, body.story_id))
