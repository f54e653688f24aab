"""Stripe billing integration service.

Provides checkout and portal session creation, subscription cancellation,
and the on-demand subscription lookup used to reconcile the local cache.
Local subscription state is only written through the
:class:`~gate_core.subscriptions.SubscriptionCache`; cancellation leaves
it to the resulting webhook.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from gate_core.errors import ConfigurationError, ProviderUnavailableError
from gate_core.subscriptions import ProviderSubscription, SubscriptionCache, SubscriptionStatus

from gate_api.config import APISettings

logger = logging.getLogger(__name__)

# Stripe subscription statuses mapped onto the cached statuses.
_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.NONE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
}

CANCELABLE_STATUSES: frozenset[str] = frozenset({"active", "trialing", "past_due", "unpaid"})


def map_stripe_status(status: str | None) -> SubscriptionStatus:
    """Return the cached status for a Stripe subscription *status*."""
    if status is None:
        return SubscriptionStatus.NONE
    mapped = _STATUS_MAP.get(status)
    if mapped is None:
        logger.warning("Unknown Stripe subscription status %r; treating as none", status)
        return SubscriptionStatus.NONE
    return mapped


def period_end_of(subscription: Any) -> datetime | None:
    """Return the current period end of a Stripe subscription object.

    Newer API versions report the period on the subscription items rather
    than on the subscription itself.
    """
    stamp = subscription.get("current_period_end")
    if stamp is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            stamp = items[0].get("current_period_end")
    return datetime.fromtimestamp(int(stamp), tz=UTC) if stamp else None


def _iso(stamp: int | None) -> str | None:
    return datetime.fromtimestamp(int(stamp), tz=UTC).isoformat() if stamp else None


class BillingService:
    """Stripe billing operations.

    Parameters
    ----------
    settings:
        API settings containing Stripe configuration.
    subscriptions:
        Cache used to find and link the visitor's Stripe customer.  Not
        needed when the service only serves as a subscription provider.
    """

    def __init__(
        self,
        settings: APISettings,
        subscriptions: SubscriptionCache | None = None,
    ) -> None:
        self._settings = settings
        self._subscriptions = subscriptions

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _call(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
        """Run a blocking Stripe client call off the event loop.

        Raises
        ------
        ProviderUnavailableError
            If Stripe returns an error or cannot be reached.
        """
        import stripe

        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe call failed: %s", exc)
            raise ProviderUnavailableError(f"Stripe request failed: {exc}") from exc

    def _require_subscriptions(self) -> SubscriptionCache:
        if self._subscriptions is None:
            raise RuntimeError("BillingService was constructed without a subscription cache")
        return self._subscriptions

    async def _customer_id(self, identity: str) -> str | None:
        snapshot = await self._require_subscriptions().get(identity)
        return snapshot.external_customer_id if snapshot is not None else None

    # ------------------------------------------------------------------
    # Checkout and portal
    # ------------------------------------------------------------------

    async def get_or_create_customer(self, identity: str) -> str:
        """Return the Stripe customer id for *identity*, creating one if needed.

        A newly created customer is linked to the identity before it is
        returned.

        Raises
        ------
        CustomerLinkConflictError
            If another request linked a different customer first.
        """
        customer_id = await self._customer_id(identity)
        if customer_id:
            return customer_id

        stripe = self._get_stripe()
        customer = await self._call(
            stripe.Customer.create,
            email=identity,
            metadata={"email": identity},
        )
        customer_id = customer["id"]
        await self._require_subscriptions().link_external_customer(identity, customer_id)
        logger.info("Created Stripe customer %s for %s", customer_id, identity)
        return customer_id

    async def resolve_price_id(self, price_id: str) -> str:
        """Return a price id for *price_id*, resolving product ids.

        A ``prod_...`` id resolves to the product's first active price.

        Raises
        ------
        ConfigurationError
            If no price is configured or the product has no active price.
        """
        if not price_id:
            raise ConfigurationError("stripe_price_id is not configured")
        if not price_id.startswith("prod_"):
            return price_id

        stripe = self._get_stripe()
        prices = await self._call(stripe.Price.list, product=price_id, active=True, limit=1)
        data = prices.get("data") or []
        if not data:
            raise ConfigurationError(f"Product {price_id} has no active price")
        resolved = data[0]["id"]
        logger.warning("Configured a product id; using first active price %s of %s", resolved, price_id)
        return resolved

    async def create_checkout_session(self, identity: str) -> dict[str, str]:
        """Create a Stripe Checkout session for a new subscription.

        Returns
        -------
        dict
            Contains ``url`` to redirect the visitor to.
        """
        customer_id = await self.get_or_create_customer(identity)
        price_id = await self.resolve_price_id(self._settings.stripe_price_id)
        site_url = self._settings.site_url.rstrip("/")

        stripe = self._get_stripe()
        checkout_session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{site_url}/dashboard?subscribe=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{site_url}/pricing",
            allow_promotion_codes=True,
            billing_address_collection="auto",
            client_reference_id=identity,
            metadata={"email": identity},
            subscription_data={"metadata": {"email": identity}},
        )
        return {"url": checkout_session["url"]}

    async def create_portal_session(self, identity: str) -> dict[str, str] | None:
        """Create a Stripe Customer Portal session.

        Returns ``None`` if *identity* has no Stripe customer yet.
        """
        customer_id = await self._customer_id(identity)
        if not customer_id:
            return None

        stripe = self._get_stripe()
        session = await self._call(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=self._settings.site_url,
        )
        return {"url": session["url"]}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def cancel_subscription(self, identity: str, *, immediate: bool = False) -> dict[str, Any] | None:
        """Cancel the visitor's first cancelable subscription.

        By default the subscription ends at the close of the current period;
        ``immediate=True`` ends it now.  Returns ``None`` if the visitor has
        no customer or nothing to cancel.
        """
        customer_id = await self._customer_id(identity)
        if not customer_id:
            return None

        stripe = self._get_stripe()
        listing = await self._call(stripe.Subscription.list, customer=customer_id, status="all", limit=10)
        cancelable = next(
            (
                sub
                for sub in listing.get("data") or []
                if sub.get("status") in CANCELABLE_STATUSES and not sub.get("cancel_at_period_end")
            ),
            None,
        )
        if cancelable is None:
            return None

        if immediate:
            canceled = await self._call(stripe.Subscription.cancel, cancelable["id"])
            logger.info("Canceled subscription %s for %s immediately", canceled["id"], identity)
            return {
                "subscription_id": canceled["id"],
                "status": canceled.get("status"),
                "immediate": True,
                "cancel_at_period_end": False,
                "ends_at": _iso(canceled.get("ended_at")),
            }

        updated = await self._call(stripe.Subscription.modify, cancelable["id"], cancel_at_period_end=True)
        period_end = period_end_of(updated)
        logger.info("Subscription %s for %s will cancel at period end", updated["id"], identity)
        return {
            "subscription_id": updated["id"],
            "status": updated.get("status"),
            "immediate": False,
            "cancel_at_period_end": True,
            "ends_at": period_end.isoformat() if period_end else None,
        }

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        """Return the current state of one Stripe subscription."""
        stripe = self._get_stripe()
        sub = await self._call(stripe.Subscription.retrieve, subscription_id)
        return self._to_provider_subscription(sub)

    async def fetch_subscription(self, external_customer_id: str) -> ProviderSubscription | None:
        """Return the customer's most recent subscription, or ``None``."""
        stripe = self._get_stripe()
        listing = await self._call(stripe.Subscription.list, customer=external_customer_id, status="all", limit=1)
        data = listing.get("data") or []
        if not data:
            return None
        return self._to_provider_subscription(data[0])

    @staticmethod
    def _to_provider_subscription(sub: Any) -> ProviderSubscription:
        return ProviderSubscription(
            subscription_id=sub["id"],
            status=map_stripe_status(sub.get("status")),
            cancel_at_period_end=bool(sub.get("cancel_at_period_end", False)),
            current_period_end=period_end_of(sub),
        )
