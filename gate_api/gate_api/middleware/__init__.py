"""Middleware components for the gate API."""

from __future__ import annotations

from gate_api.middleware.identity import IdentityMiddleware
from gate_api.middleware.logging import RequestLoggingMiddleware, record_gate_outcome

__all__ = [
    "IdentityMiddleware",
    "RequestLoggingMiddleware",
    "record_gate_outcome",
]
