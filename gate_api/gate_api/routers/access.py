"""Quota display endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request

from gate_api.dependencies import GateDep, IdentityDep
from gate_api.middleware.logging import record_gate_outcome
from gate_api.schemas import AccessResponse

router = APIRouter(tags=["access"])


@router.get("/access", response_model=AccessResponse)
async def get_access(request: Request, gate: GateDep, identity: IdentityDep) -> AccessResponse:
    """Report whether the visitor may read now, without counting a read."""
    decision = await gate.evaluate(identity, consume=False)
    record_gate_outcome(request, decision.state.value, decision.reason)
    return AccessResponse.from_decision(decision)
