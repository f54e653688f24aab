"""Tests for gate_api/routers/favorites.py

Covers:
- Sign-in required for every method
- POST saves (idempotent), GET lists, DELETE removes
- 422 on a missing or blank storyId
- Favorites never consume quota
- Store outage -> 503
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from gate_api.dependencies import get_favorites
from gate_core.errors import FavoritesUnavailableError
from gate_core.favorites import FavoritesStore
from httpx import ASGITransport, AsyncClient

_URL = "/api/v1/favorites"


class TestAuthentication:
    """Anonymous visitors cannot read or change favorites."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "POST", "DELETE"])
    async def test_sign_in_required(self, client: AsyncClient, method: str) -> None:
        body = None if method == "GET" else {"storyId": "story-1"}
        resp = await client.request(method, _URL, json=body)
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Authentication required"


class TestFavorites:
    """Save, list and remove for the signed-in visitor."""

    @pytest.mark.asyncio
    async def test_save_list_remove(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers()

        saved = await client.post(_URL, json={"storyId": "story-1"}, headers=headers)
        assert saved.status_code == 200
        assert saved.json() == {"ok": True, "changed": True}

        listed = await client.get(_URL, headers=headers)
        assert listed.json() == [{"id": "story-1"}]

        removed = await client.request("DELETE", _URL, json={"storyId": "story-1"}, headers=headers)
        assert removed.json() == {"ok": True, "changed": True}
        assert (await client.get(_URL, headers=headers)).json() == []

    @pytest.mark.asyncio
    async def test_repeat_save_and_remove_are_noops(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers()
        await client.post(_URL, json={"storyId": "story-1"}, headers=headers)

        again = await client.post(_URL, json={"storyId": "story-1"}, headers=headers)
        assert again.json() == {"ok": True, "changed": False}

        missing = await client.request("DELETE", _URL, json={"storyId": "story-2"}, headers=headers)
        assert missing.status_code == 200
        assert missing.json()["changed"] is False

    @pytest.mark.asyncio
    async def test_snake_case_key_accepted(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers()
        await client.post(_URL, json={"story_id": " story-1 "}, headers=headers)
        assert (await client.get(_URL, headers=headers)).json() == [{"id": "story-1"}]

    @pytest.mark.asyncio
    async def test_scoped_to_identity(self, client: AsyncClient, auth_headers) -> None:
        await client.post(_URL, json={"storyId": "story-1"}, headers=auth_headers("a@example.com"))
        resp = await client.get(_URL, headers=auth_headers("b@example.com"))
        assert resp.json() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"storyId": ""}, {"storyId": "   "}, {"storyId": 7}])
    async def test_invalid_story_id(self, client: AsyncClient, auth_headers, body: dict) -> None:
        headers = auth_headers()
        resp = await client.post(_URL, json=body, headers=headers)
        assert resp.status_code == 422
        assert (await client.get(_URL, headers=headers)).json() == []

    @pytest.mark.asyncio
    async def test_does_not_consume_quota(self, client: AsyncClient, auth_headers) -> None:
        headers = auth_headers()
        for i in range(5):
            await client.post(_URL, json={"storyId": f"story-{i}"}, headers=headers)
        await client.get(_URL, headers=headers)

        access = await client.get("/api/v1/access", headers=headers)
        assert access.json()["remaining"] == 3


class TestOutage:
    """A failing store maps to 503."""

    @pytest.mark.asyncio
    async def test_store_unavailable(self, build_app, auth_headers) -> None:
        app = build_app()
        store = MagicMock(spec=FavoritesStore)
        store.list_saved = AsyncMock(side_effect=FavoritesUnavailableError("down"))
        app.dependency_overrides[get_favorites] = lambda: store

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get(_URL, headers=auth_headers())

        assert resp.status_code == 503
        assert resp.json() == {"detail": "Favorites unavailable"}
