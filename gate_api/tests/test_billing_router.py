"""Tests for gate_api/routers/billing.py

Covers:
- Webhooks: billing disabled, missing/invalid signature -> 400, signed
  events applied and reflected by /access, duplicates and ignored types
  acknowledged with 200, completed checkout
- Checkout/portal/cancel: sign-in required, 404 when billing is off,
  Stripe calls mocked
- Subscription endpoint with and without reconciliation
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from gate_api.dependencies import get_subscription_cache
from gate_api.services.billing_service import BillingService
from gate_core.subscriptions import ProviderSubscription, SubscriptionCache, SubscriptionStatus
from httpx import ASGITransport, AsyncClient

_PERIOD_END = 1_706_745_600


def _subscription(status: str = "active", customer: str = "cus_1", email: str = "a@example.com") -> dict:
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_end": _PERIOD_END,
        "metadata": {"email": email},
    }


@pytest_asyncio.fixture
async def billing_client(build_app, make_settings) -> AsyncGenerator[AsyncClient, None]:
    app = build_app(make_settings(billing_enabled=True))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.test_gate.drain()


async def _post_event(client: AsyncClient, payload: bytes, signature: str) -> object:
    return await client.post(
        "/api/v1/billing/webhooks",
        content=payload,
        headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
    )


class TestWebhooks:
    """POST /api/v1/billing/webhooks"""

    @pytest.mark.asyncio
    async def test_billing_disabled(self, client: AsyncClient, stripe_event, stripe_signature) -> None:
        payload = stripe_event("customer.subscription.created", _subscription())
        resp = await _post_event(client, payload, stripe_signature(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "billing_disabled"}

    @pytest.mark.asyncio
    async def test_missing_signature(self, billing_client: AsyncClient, stripe_event) -> None:
        resp = await billing_client.post(
            "/api/v1/billing/webhooks",
            content=stripe_event("customer.subscription.created", _subscription()),
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing Stripe signature"

    @pytest.mark.asyncio
    async def test_bad_signature_changes_nothing(
        self, billing_client: AsyncClient, stripe_event, stripe_signature, subscriptions
    ) -> None:
        payload = stripe_event("customer.subscription.created", _subscription())
        resp = await _post_event(billing_client, payload, stripe_signature(payload, secret="whsec_wrong"))
        assert resp.status_code == 400
        assert await subscriptions.get("a@example.com") is None

    @pytest.mark.asyncio
    async def test_subscription_created_entitles(
        self, billing_client: AsyncClient, stripe_event, stripe_signature, auth_headers
    ) -> None:
        payload = stripe_event("customer.subscription.created", _subscription())
        resp = await _post_event(billing_client, payload, stripe_signature(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "applied"}

        access = await billing_client.get("/api/v1/access", headers=auth_headers())
        assert access.json()["entitled"] is True

        replay = await _post_event(billing_client, payload, stripe_signature(payload))
        assert replay.status_code == 200
        assert replay.json() == {"status": "duplicate"}

    @pytest.mark.asyncio
    async def test_cancellation_returns_to_metering(
        self, billing_client: AsyncClient, stripe_event, stripe_signature, auth_headers
    ) -> None:
        created = stripe_event(
            "customer.subscription.created",
            _subscription(),
            event_id="evt_1",
            created=datetime(2024, 1, 1, tzinfo=UTC),
        )
        deleted = stripe_event(
            "customer.subscription.deleted",
            _subscription(status="canceled"),
            event_id="evt_2",
            created=datetime(2024, 1, 2, tzinfo=UTC),
        )
        await _post_event(billing_client, created, stripe_signature(created))
        await _post_event(billing_client, deleted, stripe_signature(deleted))

        access = await billing_client.get("/api/v1/access", headers=auth_headers())
        assert access.json()["entitled"] is False
        assert access.json()["state"] == "free_with_quota_remaining"

    @pytest.mark.asyncio
    async def test_irrelevant_type_acknowledged(
        self, billing_client: AsyncClient, stripe_event, stripe_signature
    ) -> None:
        payload = stripe_event("customer.subscription.trial_will_end", _subscription())
        resp = await _post_event(billing_client, payload, stripe_signature(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}

    @pytest.mark.asyncio
    async def test_unknown_identity_acknowledged(
        self, billing_client: AsyncClient, stripe_event, stripe_signature
    ) -> None:
        obj = _subscription(customer="cus_unknown")
        obj["metadata"] = {}
        payload = stripe_event("customer.subscription.updated", obj)
        resp = await _post_event(billing_client, payload, stripe_signature(payload))
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "reason": "unknown_identity"}

    @pytest.mark.asyncio
    async def test_checkout_completed(
        self, billing_client: AsyncClient, stripe_event, stripe_signature, subscriptions
    ) -> None:
        session = {
            "id": "cs_1",
            "object": "checkout.session",
            "customer": "cus_1",
            "subscription": "sub_1",
            "client_reference_id": "a@example.com",
            "metadata": {"email": "a@example.com"},
        }
        payload = stripe_event("checkout.session.completed", session)
        remote = ProviderSubscription(subscription_id="sub_1", status=SubscriptionStatus.TRIALING)
        with patch.object(BillingService, "retrieve_subscription", AsyncMock(return_value=remote)):
            resp = await _post_event(billing_client, payload, stripe_signature(payload))

        assert resp.json() == {"status": "applied"}
        snapshot = await subscriptions.get("a@example.com")
        assert snapshot is not None
        assert snapshot.status is SubscriptionStatus.TRIALING
        assert snapshot.external_customer_id == "cus_1"


class TestCheckoutAndPortal:
    """POST /api/v1/billing/checkout and /portal"""

    @pytest.mark.asyncio
    async def test_checkout_requires_sign_in(self, billing_client: AsyncClient) -> None:
        resp = await billing_client.post("/api/v1/billing/checkout")
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_checkout_billing_disabled(self, client: AsyncClient, auth_headers) -> None:
        resp = await client.post("/api/v1/billing/checkout", headers=auth_headers())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_checkout_returns_url(self, billing_client: AsyncClient, auth_headers) -> None:
        mock_stripe = MagicMock()
        mock_stripe.Customer.create.return_value = {"id": "cus_new"}
        mock_stripe.checkout.Session.create.return_value = {"url": "https://checkout.stripe.com/c/cs_1"}
        with patch.object(BillingService, "_get_stripe", return_value=mock_stripe):
            resp = await billing_client.post("/api/v1/billing/checkout", headers=auth_headers())
        assert resp.status_code == 200
        assert resp.json() == {"url": "https://checkout.stripe.com/c/cs_1"}

    @pytest.mark.asyncio
    async def test_portal_without_customer(self, billing_client: AsyncClient, auth_headers) -> None:
        resp = await billing_client.post("/api/v1/billing/portal", headers=auth_headers())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_checkout_conflict(self, billing_client: AsyncClient, auth_headers, subscriptions) -> None:
        await subscriptions.link_external_customer("b@example.com", "cus_taken")
        mock_stripe = MagicMock()
        mock_stripe.Customer.create.return_value = {"id": "cus_taken"}
        with patch.object(BillingService, "_get_stripe", return_value=mock_stripe):
            resp = await billing_client.post("/api/v1/billing/checkout", headers=auth_headers())
        assert resp.status_code == 409


class TestSubscriptionEndpoint:
    """GET /api/v1/billing/subscription and POST /subscription/cancel"""

    @pytest.mark.asyncio
    async def test_none_without_billing(self, client: AsyncClient, auth_headers) -> None:
        resp = await client.get("/api/v1/billing/subscription", headers=auth_headers())
        assert resp.status_code == 200
        assert resp.json()["status"] == "none"
        assert resp.json()["entitled"] is False
        assert resp.json()["billing_enabled"] is False

    @pytest.mark.asyncio
    async def test_reconciles_with_provider(
        self, build_app, make_settings, session_factory, auth_headers
    ) -> None:
        provider = MagicMock()
        provider.fetch_subscription = AsyncMock(
            return_value=ProviderSubscription(
                subscription_id="sub_1",
                status=SubscriptionStatus.ACTIVE,
                current_period_end=datetime(2024, 2, 1, tzinfo=UTC),
            )
        )
        cache = SubscriptionCache(session_factory, provider=provider)
        await cache.link_external_customer("a@example.com", "cus_1")

        app = build_app(make_settings(billing_enabled=True))
        app.dependency_overrides[get_subscription_cache] = lambda: cache
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            resp = await ac.get("/api/v1/billing/subscription", headers=auth_headers())

        provider.fetch_subscription.assert_awaited_once_with("cus_1")
        body = resp.json()
        assert body["status"] == "active"
        assert body["entitled"] is True
        assert body["subscription_id"] == "sub_1"

    @pytest.mark.asyncio
    async def test_cancel_nothing_to_cancel(self, billing_client: AsyncClient, auth_headers) -> None:
        resp = await billing_client.post("/api/v1/billing/subscription/cancel", headers=auth_headers())
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_at_period_end(self, billing_client: AsyncClient, auth_headers, subscriptions) -> None:
        await subscriptions.link_external_customer("a@example.com", "cus_1")
        mock_stripe = MagicMock()
        mock_stripe.Subscription.list.return_value = {"data": [{"id": "sub_1", "status": "active"}]}
        mock_stripe.Subscription.modify.return_value = {
            "id": "sub_1",
            "status": "active",
            "current_period_end": _PERIOD_END,
        }
        with patch.object(BillingService, "_get_stripe", return_value=mock_stripe):
            resp = await billing_client.post(
                "/api/v1/billing/subscription/cancel",
                json={"immediate": False},
                headers=auth_headers(),
            )
        assert resp.status_code == 200
        assert resp.json()["cancel_at_period_end"] is True
        assert resp.json()["ends_at"] == "2024-02-01T00:00:00+00:00"
