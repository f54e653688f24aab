"""Shared Pydantic response models for API endpoints.

These schemas ensure that endpoint responses are validated and documented
in the OpenAPI specification.  Routers import from here to avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated

from gate_core.content import ContentItem
from gate_core.gate import GateDecision
from gate_core.state.tables import MAX_STORY_ID_LENGTH
from pydantic import BaseModel, ConfigDict, Field, StringConstraints

# ---------------------------------------------------------------------------
# Access
# ---------------------------------------------------------------------------


class AccessResponse(BaseModel):
    """Gate decision as seen by the visitor.

    ``remaining`` and ``limit`` are ``null`` for subscribers.
    """

    allowed: bool
    remaining: int | None = None
    limit: int | None = None
    entitled: bool
    state: str
    reason: str | None = None

    @classmethod
    def from_decision(cls, decision: GateDecision) -> AccessResponse:
        return cls(
            allowed=decision.allowed,
            remaining=decision.remaining,
            limit=decision.limit,
            entitled=decision.entitled,
            state=decision.state.value,
            reason=decision.reason,
        )


class PaywallResponse(BaseModel):
    """Body of a 402 response when a read is denied."""

    error: str = "quota_exceeded"
    message: str
    access: AccessResponse


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class StoryResponse(BaseModel):
    """One story on a news page."""

    id: int
    title: str
    url: str
    source: str | None = None
    summary: str | None = None
    published_at: datetime

    @classmethod
    def from_item(cls, item: ContentItem) -> StoryResponse:
        return cls(
            id=item.id,
            title=item.title,
            url=item.url,
            source=item.source,
            summary=item.summary,
            published_at=item.published_at,
        )


class NewsPageResponse(BaseModel):
    """A page of stories plus the visitor's quota after this read."""

    stories: list[StoryResponse] = Field(default_factory=list)
    next_cursor: str | None = None
    access: AccessResponse


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class SubscriptionResponse(BaseModel):
    """Subscription state for ``GET /billing/subscription``."""

    billing_enabled: bool
    status: str
    entitled: bool
    subscription_id: str | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None


class SessionUrlResponse(BaseModel):
    """Redirect target for a checkout or portal session."""

    url: str


class CancelSubscriptionRequest(BaseModel):
    """Request body for ``POST /billing/subscription/cancel``."""

    immediate: bool = Field(
        default=False,
        description="End the subscription now instead of at the end of the period.",
    )


class CancelSubscriptionResponse(BaseModel):
    """Result of a cancellation request."""

    subscription_id: str
    status: str | None = None
    immediate: bool
    cancel_at_period_end: bool
    ends_at: str | None = None


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------


class FavoriteRequest(BaseModel):
    """Body of ``POST`` and ``DELETE /favorites``.

    Accepts ``storyId`` (the web client's key) or ``story_id``.
    """

    model_config = ConfigDict(populate_by_name=True)

    story_id: Annotated[
        str,
        StringConstraints(strip_whitespace=True, min_length=1, max_length=MAX_STORY_ID_LENGTH),
    ] = Field(alias="storyId")


class FavoriteItem(BaseModel):
    """One saved story reference."""

    id: str


class FavoriteAck(BaseModel):
    """Acknowledgement of a save or remove."""

    ok: bool = True
    changed: bool
