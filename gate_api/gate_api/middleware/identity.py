"""Identity middleware that resolves the visitor from a session token.

Reads ``Authorization: Bearer <token>``, verifies it with
:class:`SessionTokenVerifier`, and stores the normalised email on
``request.state.identity``.  Requests without the header are anonymous
(``request.state.identity is None``); the gate decides what anonymous
visitors may do.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from gate_api.security import ExpiredSessionToken, InvalidSessionToken, SessionTokenVerifier

logger = logging.getLogger(__name__)

# Paths that never carry a visitor identity.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks",
    }
)


class IdentityMiddleware(BaseHTTPMiddleware):
    """Populate ``request.state.identity`` from the session token.

    Returns 401 for malformed or forged tokens and 403 for expired ones.
    """

    def __init__(self, app: Any, verifier: SessionTokenVerifier) -> None:
        super().__init__(app)
        self._verifier = verifier

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.identity = None
        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return await call_next(request)

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._verifier.verify(parts[1])
        except ExpiredSessionToken:
            return JSONResponse(status_code=403, content={"detail": "Token has expired"})
        except InvalidSessionToken as exc:
            logger.info("Rejected session token on %s: %s", request.url.path, exc)
            return JSONResponse(status_code=401, content={"detail": "Invalid token"})

        request.state.identity = claims.email
        return await call_next(request)
