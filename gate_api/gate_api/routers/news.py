"""Metered news feed.

Each page delivered counts as one read.  The gate is consulted before the
content source; a denial returns the paywall payload with HTTP 402 and no
stories.
"""

from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from gate_core.content import MAX_PAGE_SIZE

from gate_api.dependencies import ContentSourceDep, GateDep, IdentityDep
from gate_api.middleware.logging import record_gate_outcome
from gate_api.schemas import AccessResponse, NewsPageResponse, PaywallResponse, StoryResponse

router = APIRouter(tags=["news"])


def _paywall_message(access: AccessResponse) -> str:
    if access.reason == "unavailable":
        return "Reading is temporarily unavailable. Please try again shortly."
    if access.state == "anonymous":
        return "Sign in to keep reading."
    return f"Free quota of {access.limit} reads per day reached."


@router.get(
    "/news",
    response_model=NewsPageResponse,
    responses={402: {"model": PaywallResponse}},
)
async def get_news(
    request: Request,
    gate: GateDep,
    content: ContentSourceDep,
    identity: IdentityDep,
    cursor: str | None = Query(None, pattern=r"^\d*$", max_length=12),
    page_size: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
) -> NewsPageResponse | JSONResponse:
    """Return one page of stories if the visitor may read."""
    decision = await gate.evaluate(identity, consume=True)
    record_gate_outcome(request, decision.state.value, decision.reason)
    access = AccessResponse.from_decision(decision)

    if not decision.allowed:
        paywall = PaywallResponse(message=_paywall_message(access), access=access)
        return JSONResponse(status_code=402, content=paywall.model_dump(mode="json"))

    page = await content.fetch_page(cursor, page_size)
    return NewsPageResponse(
        stories=[StoryResponse.from_item(item) for item in page.items],
        next_cursor=page.next_cursor,
        access=access,
    )
