"""API router modules for the gate service."""

from __future__ import annotations

from gate_api.routers import access, billing, favorites, health, news

__all__ = [
    "access",
    "billing",
    "favorites",
    "health",
    "news",
]
