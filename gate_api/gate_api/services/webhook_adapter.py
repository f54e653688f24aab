"""Stripe webhook adapter.

Verifies the ``Stripe-Signature`` header of incoming webhook deliveries and
translates the subscription-relevant event types into
:class:`~gate_core.subscriptions.ProviderEvent` objects for the
subscription cache.  Every verified event is acknowledged, including
types that carry nothing for the cache.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from gate_core.errors import WebhookSignatureError
from gate_core.subscriptions import (
    EventOutcome,
    ProviderEvent,
    ProviderEventKind,
    ProviderSubscription,
    SubscriptionCache,
    SubscriptionStatus,
)

from gate_api.services.billing_service import BillingService, map_stripe_status, period_end_of

logger = logging.getLogger(__name__)

_CHECKOUT_SUCCEEDED: frozenset[str] = frozenset(
    {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
)
_SUBSCRIPTION_CHANGED: frozenset[str] = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
    }
)
_PAYMENT_FAILED: frozenset[str] = frozenset(
    {
        "checkout.session.async_payment_failed",
        "invoice.payment_failed",
    }
)


def _metadata_email(obj: Any) -> str | None:
    metadata = obj.get("metadata") or {}
    return metadata.get("email")


def _occurred_at(event: Any) -> datetime:
    return datetime.fromtimestamp(int(event.get("created", 0)), tz=UTC)


class StripeWebhookAdapter:
    """Verify Stripe webhook deliveries and apply them to the cache.

    Parameters
    ----------
    webhook_secret:
        Signing secret of the webhook endpoint (``whsec_...``).
    subscriptions:
        Cache that receives the normalised events.
    billing:
        Used to look up the subscription behind a completed checkout.
    """

    def __init__(
        self,
        webhook_secret: str,
        subscriptions: SubscriptionCache,
        billing: BillingService,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._subscriptions = subscriptions
        self._billing = billing

    def verify(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Return the Stripe event carried by *payload* as a plain dict.

        Raises
        ------
        WebhookSignatureError
            If the header is missing, the payload is not JSON, or the
            signature does not match.
        """
        if not sig_header:
            raise WebhookSignatureError("Missing Stripe signature")

        import stripe

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=sig_header,
                secret=self._webhook_secret,
            )
        except ValueError as exc:
            raise WebhookSignatureError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookSignatureError("Signature verification failed") from exc
        return json.loads(payload)

    async def normalize(self, event: Any) -> ProviderEvent | None:
        """Translate *event* into a :class:`ProviderEvent`.

        Returns ``None`` for event types that do not affect entitlement.

        Raises
        ------
        ProviderUnavailableError
            If a completed checkout's subscription cannot be fetched.
        """
        event_type: str = event.get("type", "")
        data_object = event.get("data", {}).get("object", {})

        if event_type in _CHECKOUT_SUCCEEDED:
            return await self._from_checkout(event, data_object)
        if event_type in _SUBSCRIPTION_CHANGED:
            return self._from_subscription(event, data_object)
        if event_type in _PAYMENT_FAILED:
            return self._from_payment_failure(event, data_object)
        return None

    async def handle(self, event: Any) -> dict[str, str]:
        """Apply one verified event and return the acknowledgement body."""
        provider_event = await self.normalize(event)
        if provider_event is None:
            logger.debug("Unhandled Stripe event type: %s", event.get("type"))
            return {"status": "ignored"}

        outcome = await self._subscriptions.apply_provider_event(provider_event)
        if outcome is EventOutcome.UNKNOWN_IDENTITY:
            return {"status": "ignored", "reason": "unknown_identity"}
        return {"status": outcome.value}

    # ------------------------------------------------------------------
    # Per-type translation
    # ------------------------------------------------------------------

    async def _from_checkout(self, event: Any, session: Any) -> ProviderEvent:
        details = session.get("customer_details") or {}
        identity = _metadata_email(session) or session.get("client_reference_id") or details.get("email")

        subscription_id = session.get("subscription")
        remote: ProviderSubscription | None = None
        if isinstance(subscription_id, str) and subscription_id:
            remote = await self._billing.retrieve_subscription(subscription_id)

        return ProviderEvent(
            event_id=event["id"],
            event_type=event["type"],
            occurred_at=_occurred_at(event),
            external_customer_id=session.get("customer"),
            identity=identity,
            status=remote.status if remote else None,
            cancel_at_period_end=remote.cancel_at_period_end if remote else None,
            external_subscription_id=remote.subscription_id if remote else None,
            current_period_end=remote.current_period_end if remote else None,
        )

    @staticmethod
    def _from_subscription(event: Any, subscription: Any) -> ProviderEvent:
        if event["type"] == "customer.subscription.paused":
            status = SubscriptionStatus.CANCELED
        else:
            status = map_stripe_status(subscription.get("status"))
        return ProviderEvent(
            event_id=event["id"],
            event_type=event["type"],
            occurred_at=_occurred_at(event),
            external_customer_id=subscription.get("customer"),
            identity=_metadata_email(subscription),
            status=status,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end", False)),
            external_subscription_id=subscription.get("id"),
            current_period_end=period_end_of(subscription),
        )

    @staticmethod
    def _from_payment_failure(event: Any, obj: Any) -> ProviderEvent:
        identity = _metadata_email(obj) or obj.get("customer_email")
        return ProviderEvent(
            event_id=event["id"],
            event_type=event["type"],
            occurred_at=_occurred_at(event),
            kind=ProviderEventKind.PAYMENT_FAILED,
            external_customer_id=obj.get("customer"),
            identity=identity,
            status=SubscriptionStatus.PAST_DUE,
        )
