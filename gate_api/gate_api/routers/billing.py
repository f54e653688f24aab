"""Billing endpoints: checkout, portal, subscription state, cancellation, webhooks."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from gate_core.errors import WebhookSignatureError

from gate_api.dependencies import AuthenticatedDep, SettingsDep, SubscriptionCacheDep
from gate_api.schemas import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    SessionUrlResponse,
    SubscriptionResponse,
)
from gate_api.services.billing_service import BillingService
from gate_api.services.webhook_adapter import StripeWebhookAdapter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


def _require_billing(enabled: bool) -> None:
    if not enabled:
        raise HTTPException(
            status_code=404,
            detail="Billing is not enabled for this installation.",
        )


@router.post("/checkout", response_model=SessionUrlResponse)
async def create_checkout_session(
    identity: AuthenticatedDep,
    settings: SettingsDep,
    subscriptions: SubscriptionCacheDep,
) -> dict[str, str]:
    """Create a Stripe Checkout session for a new subscription.

    Returns a ``url`` that the frontend should redirect the visitor to.
    """
    _require_billing(settings.billing_enabled)
    service = BillingService(settings, subscriptions)
    return await service.create_checkout_session(identity)


@router.post("/portal", response_model=SessionUrlResponse)
async def create_portal_session(
    identity: AuthenticatedDep,
    settings: SettingsDep,
    subscriptions: SubscriptionCacheDep,
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for subscription management."""
    _require_billing(settings.billing_enabled)
    service = BillingService(settings, subscriptions)
    result = await service.create_portal_session(identity)
    if result is None:
        raise HTTPException(status_code=404, detail="No billing account for this user.")
    return result


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    identity: AuthenticatedDep,
    settings: SettingsDep,
    subscriptions: SubscriptionCacheDep,
) -> SubscriptionResponse:
    """Return the visitor's subscription, refreshed from Stripe when billing is on."""
    if settings.billing_enabled:
        snapshot = await subscriptions.reconcile(identity)
    else:
        snapshot = await subscriptions.get(identity)

    if snapshot is None:
        return SubscriptionResponse(billing_enabled=settings.billing_enabled, status="none", entitled=False)
    return SubscriptionResponse(
        billing_enabled=settings.billing_enabled,
        status=snapshot.status.value,
        entitled=snapshot.entitled,
        subscription_id=snapshot.external_subscription_id,
        cancel_at_period_end=snapshot.cancel_at_period_end,
        current_period_end=snapshot.current_period_end,
    )


@router.post("/subscription/cancel", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    identity: AuthenticatedDep,
    settings: SettingsDep,
    subscriptions: SubscriptionCacheDep,
    body: CancelSubscriptionRequest | None = None,
) -> dict[str, Any]:
    """Cancel the visitor's subscription, by default at the end of the period.

    The cached status changes when Stripe delivers the resulting webhook.
    """
    _require_billing(settings.billing_enabled)
    immediate = body.immediate if body is not None else False
    service = BillingService(settings, subscriptions)
    result = await service.cancel_subscription(identity, immediate=immediate)
    if result is None:
        raise HTTPException(status_code=404, detail="No active or trialing subscription to cancel.")
    return result


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    settings: SettingsDep,
    subscriptions: SubscriptionCacheDep,
) -> dict[str, str]:
    """Handle incoming Stripe webhook events.

    Validates the webhook signature and applies the event to the
    subscription cache.  Verified events are always acknowledged with 200,
    including duplicates and event types that change nothing, so that Stripe
    stops redelivering them.
    """
    if not settings.billing_enabled:
        return {"status": "billing_disabled"}

    body = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    billing = BillingService(settings, subscriptions)
    adapter = StripeWebhookAdapter(
        settings.stripe_webhook_secret.get_secret_value(),
        subscriptions,
        billing,
    )
    try:
        event = adapter.verify(body, sig_header)
    except WebhookSignatureError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return await adapter.handle(event)
