"""Health-check and readiness probe endpoints.

The ``/health`` endpoint (liveness) is registered under the versioned API
prefix (``/api/v1/health``).  The ``/ready`` endpoint is a readiness probe
registered at the application root so that orchestrators and
load-balancers can gate traffic independently of the API version.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from gate_api import __version__
from gate_api.dependencies import SettingsDep, get_db_session

logger = logging.getLogger(__name__)

HealthSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: HealthSessionDep, settings: SettingsDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so that load-balancers see the service as alive; the
    ``db`` field reports whether the state store is reachable.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "billing_enabled": settings.billing_enabled,
    }
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result


# ---------------------------------------------------------------------------
# Readiness probe (outside API versioning)
# ---------------------------------------------------------------------------

readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: HealthSessionDep) -> JSONResponse:
    """Readiness probe.

    Returns HTTP 200 with ``"ready"`` or HTTP 503 with ``"not_ready"`` when
    the state store is unreachable.  Without the store every metered read
    would be denied.
    """
    checks: dict[str, str] = {"db": "ok"}
    overall = "ready"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.error("Readiness: DB check failed: %s", exc)
        checks["db"] = "unavailable"
        overall = "not_ready"

    return JSONResponse(
        status_code=200 if overall == "ready" else 503,
        content={"status": overall, "version": __version__, "checks": checks},
    )
