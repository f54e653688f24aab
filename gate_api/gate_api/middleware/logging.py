"""Access log for the news service.

One ``api.access`` record per request.  Besides method, path, status and
timing, each record names the visitor and, for metered endpoints, the gate
outcome, so paywall hits and fail-closed denials can be counted from logs.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

# Header names whose values must be masked in log output.
_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "stripe-signature"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"


def _safe_headers(request: Request) -> dict[str, str]:
    """Return a copy of the request headers with sensitive values masked."""
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def record_gate_outcome(request: Request, state: str, reason: str | None) -> None:
    """Attach the gate's verdict to *request* for the access log."""
    request.state.gate = {"state": state, "reason": reason}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration.

    Each request is tagged with a ``correlation_id`` (taken from the
    incoming ``X-Correlation-ID`` header or generated as a UUID-4), which is
    echoed as a response header.  ``identity`` comes from
    :class:`IdentityMiddleware`; ``gate`` is present when a router called
    :func:`record_gate_outcome`.

    Denied reads are 402 responses and therefore logged at WARNING.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "identity": getattr(request.state, "identity", None) or "anonymous",
                "headers": _safe_headers(request),
            }
            gate = getattr(request.state, "gate", None)
            if gate is not None:
                log_payload["gate"] = gate

            if status_code >= 500:
                level = logging.ERROR
            elif status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(level, "request completed", extra={"request": log_payload})
