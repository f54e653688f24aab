"""Subscription cache: local mirror of provider-owned subscription state.

The payment provider is the system of record.  This cache is updated by
signed webhook events (:meth:`SubscriptionCache.apply_provider_event`), by
the checkout flow (:meth:`SubscriptionCache.link_external_customer`) and by
explicit, user-initiated reconciliation (:meth:`SubscriptionCache.reconcile`).
The read path, :meth:`SubscriptionCache.is_entitled`, is a pure cache read
and never calls the provider.

Webhook deliveries may be duplicated or arrive out of order.  Each event is
applied at most once (deduplicated by event id) and only if it is not older
than the state already cached (guarded by ``updated_at``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gate_core.clock import Clock, as_utc, utc_now
from gate_core.errors import CustomerLinkConflictError, SubscriptionCacheUnavailableError
from gate_core.identity import normalize_identity
from gate_core.state.database import STORE_ERRORS
from gate_core.state.repository import ProviderEventRepository, SubscriptionRepository
from gate_core.state.retry import RetryConfig, async_retry_with_backoff
from gate_core.state.tables import SubscriptionTable

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    """Cached subscription status."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


ENTITLED_STATUSES: frozenset[SubscriptionStatus] = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class ProviderEventKind(str, Enum):
    """How an event is ordered against the cached state."""

    SUBSCRIPTION_CHANGED = "subscription_changed"
    PAYMENT_FAILED = "payment_failed"


class EventOutcome(str, Enum):
    """Result of applying one provider event."""

    APPLIED = "applied"
    STALE = "stale"
    DUPLICATE = "duplicate"
    UNKNOWN_IDENTITY = "unknown_identity"


class PaymentFailurePolicy(str, Enum):
    """Ordering policy for payment-failure events.

    ``ALWAYS_DOWNGRADE`` sets ``past_due`` even when the event is older
    than the cached state.  ``ORDERED`` treats it like any other event.
    """

    ALWAYS_DOWNGRADE = "always_downgrade"
    ORDERED = "ordered"


@dataclass(frozen=True)
class ProviderEvent:
    """A verified provider webhook event, normalised for the cache.

    ``None`` fields leave the cached value unchanged.
    """

    event_id: str
    event_type: str
    occurred_at: datetime
    kind: ProviderEventKind = ProviderEventKind.SUBSCRIPTION_CHANGED
    external_customer_id: str | None = None
    identity: str | None = None
    status: SubscriptionStatus | None = None
    cancel_at_period_end: bool | None = None
    external_subscription_id: str | None = None
    current_period_end: datetime | None = None


@dataclass(frozen=True)
class ProviderSubscription:
    """Subscription state as reported by a direct provider query."""

    subscription_id: str
    status: SubscriptionStatus
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None


class SubscriptionProvider(Protocol):
    """On-demand provider query used by :meth:`SubscriptionCache.reconcile`."""

    async def fetch_subscription(self, external_customer_id: str) -> ProviderSubscription | None:
        """Return the customer's most recent subscription, or ``None``.

        Implementations raise :class:`~gate_core.errors.ProviderUnavailableError`
        when the provider cannot answer.
        """
        ...


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Read-only view of one cached subscription record."""

    identity: str
    status: SubscriptionStatus
    external_customer_id: str | None
    external_subscription_id: str | None
    cancel_at_period_end: bool
    current_period_end: datetime | None
    updated_at: datetime | None

    @property
    def entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @classmethod
    def from_row(cls, row: SubscriptionTable) -> SubscriptionSnapshot:
        return cls(
            identity=row.identity,
            status=SubscriptionStatus(row.status),
            external_customer_id=row.external_customer_id,
            external_subscription_id=row.external_subscription_id,
            cancel_at_period_end=row.cancel_at_period_end,
            current_period_end=row.current_period_end,
            updated_at=row.updated_at,
        )


class SubscriptionCache:
    """Entitlement lookups and provider-event application.

    Parameters
    ----------
    session_factory:
        Factory for sessions against the state store.
    provider:
        Provider client for :meth:`reconcile`.  Without one, reconciliation
        returns the cached record unchanged.
    clock:
        Source of the current instant, stamped on reconciled records.
    payment_failure_policy:
        Ordering policy for :attr:`ProviderEventKind.PAYMENT_FAILED` events.
    retry_config:
        Backoff for the reconciliation write.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        provider: SubscriptionProvider | None = None,
        clock: Clock = utc_now,
        payment_failure_policy: PaymentFailurePolicy = PaymentFailurePolicy.ALWAYS_DOWNGRADE,
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._clock = clock
        self._payment_failure_policy = payment_failure_policy
        self._retry_config = retry_config or RetryConfig()

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def is_entitled(self, identity: str | None) -> bool:
        """Return ``True`` iff the cached status grants unlimited access.

        Anonymous visitors are never entitled.

        Raises
        ------
        SubscriptionCacheUnavailableError
            If the state store cannot be read.
        """
        if identity is None:
            return False
        try:
            async with self._session_factory() as session:
                status = await SubscriptionRepository(session).get_status(identity)
        except STORE_ERRORS as exc:
            raise SubscriptionCacheUnavailableError(f"Subscription cache unavailable: {exc}") from exc
        return status is not None and SubscriptionStatus(status) in ENTITLED_STATUSES

    async def get(self, identity: str) -> SubscriptionSnapshot | None:
        """Return the cached record for *identity*, if any."""
        try:
            async with self._session_factory() as session:
                row = await SubscriptionRepository(session).get(identity)
                return SubscriptionSnapshot.from_row(row) if row is not None else None
        except STORE_ERRORS as exc:
            raise SubscriptionCacheUnavailableError(f"Subscription cache unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    async def apply_provider_event(self, event: ProviderEvent) -> EventOutcome:
        """Apply one verified provider event to the cache.

        The event id is recorded in the same transaction as the state
        change, so a replay after success is a no-op and a failure leaves
        the event eligible for redelivery.

        Returns
        -------
        EventOutcome
            ``DUPLICATE`` for a replayed event id, ``UNKNOWN_IDENTITY`` when
            neither the customer id nor the event's identity resolves to a
            visitor, ``STALE`` when the cached state is newer, otherwise
            ``APPLIED``.
        """
        event_ts = as_utc(event.occurred_at)
        async with self._session_factory() as session, session.begin():
            events = ProviderEventRepository(session)
            if not await events.claim(event.event_id, event.event_type):
                logger.info("Ignoring replayed provider event %s (%s)", event.event_id, event.event_type)
                return EventOutcome.DUPLICATE

            subs = SubscriptionRepository(session)
            identity = await self._resolve_identity(subs, event)
            if identity is None:
                logger.warning(
                    "Provider event %s type=%s has no resolvable identity (customer=%s); skipping.",
                    event.event_id,
                    event.event_type,
                    event.external_customer_id,
                )
                await events.record_outcome(event.event_id, EventOutcome.UNKNOWN_IDENTITY.value, None)
                return EventOutcome.UNKNOWN_IDENTITY

            if (
                event.kind is ProviderEventKind.PAYMENT_FAILED
                and self._payment_failure_policy is PaymentFailurePolicy.ALWAYS_DOWNGRADE
            ):
                await subs.force_status(identity, SubscriptionStatus.PAST_DUE.value, event_ts)
                outcome = EventOutcome.APPLIED
            else:
                applied = await subs.apply_if_newer(identity, self._event_values(event), event_ts)
                outcome = EventOutcome.APPLIED if applied else EventOutcome.STALE

            await events.record_outcome(event.event_id, outcome.value, identity)

        logger.info(
            "Provider event %s type=%s identity=%s outcome=%s",
            event.event_id,
            event.event_type,
            identity,
            outcome.value,
        )
        return outcome

    async def _resolve_identity(self, subs: SubscriptionRepository, event: ProviderEvent) -> str | None:
        """Map *event* to an identity, creating the record on first sight.

        The customer-id mapping takes precedence over identity metadata
        carried in the event.
        """
        if event.external_customer_id:
            row = await subs.get_by_customer(event.external_customer_id)
            if row is not None:
                return row.identity

        identity = normalize_identity(event.identity)
        if identity is None:
            return None

        await subs.create_if_absent(identity)
        if event.external_customer_id:
            if not await subs.set_customer_if_unset(identity, event.external_customer_id):
                row = await subs.get(identity)
                if row is not None and row.external_customer_id != event.external_customer_id:
                    logger.warning(
                        "Provider event %s names customer %s but %s is linked to %s",
                        event.event_id,
                        event.external_customer_id,
                        identity,
                        row.external_customer_id,
                    )
        return identity

    @staticmethod
    def _event_values(event: ProviderEvent) -> dict[str, Any]:
        values: dict[str, Any] = {}
        if event.status is not None:
            values["status"] = event.status.value
        if event.cancel_at_period_end is not None:
            values["cancel_at_period_end"] = event.cancel_at_period_end
        if event.external_subscription_id is not None:
            values["external_subscription_id"] = event.external_subscription_id
        if event.current_period_end is not None:
            values["current_period_end"] = as_utc(event.current_period_end)
        if event.kind is ProviderEventKind.PAYMENT_FAILED:
            values["status"] = SubscriptionStatus.PAST_DUE.value
        return values

    # ------------------------------------------------------------------
    # Checkout linkage
    # ------------------------------------------------------------------

    async def link_external_customer(self, identity: str, external_customer_id: str) -> SubscriptionSnapshot:
        """Associate *identity* with a provider customer id.

        Creates the record (status ``none``) if absent.  Idempotent for the
        same customer id.

        Raises
        ------
        CustomerLinkConflictError
            If the identity is linked to a different customer, or the
            customer is linked to a different identity.
        SubscriptionCacheUnavailableError
            If the record cannot be read back after it was written.
        """
        async with self._session_factory() as session, session.begin():
            subs = SubscriptionRepository(session)
            owner = await subs.get_by_customer(external_customer_id)
            if owner is not None and owner.identity != identity:
                raise CustomerLinkConflictError(
                    f"Customer {external_customer_id!r} is already linked to another identity"
                )

            await subs.create_if_absent(identity, external_customer_id)
            await subs.set_customer_if_unset(identity, external_customer_id)
            row = await subs.get(identity)
            if row is None:
                raise SubscriptionCacheUnavailableError(
                    f"Subscription record for {identity!r} vanished while linking"
                )
            if row.external_customer_id != external_customer_id:
                raise CustomerLinkConflictError(
                    f"Identity {identity!r} is linked to customer {row.external_customer_id!r}, "
                    f"not {external_customer_id!r}"
                )
            snapshot = SubscriptionSnapshot.from_row(row)

        logger.info("Linked %s to provider customer %s", identity, external_customer_id)
        return snapshot

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, identity: str) -> SubscriptionSnapshot | None:
        """Refresh the cached record for *identity* from the provider.

        Used only by user-initiated billing flows; never on the content
        path.  The provider's answer overwrites the cached state and stamps
        ``updated_at`` with the current instant.

        Raises
        ------
        ProviderUnavailableError
            If the provider query fails.  The cache is left unchanged.
        """
        current = await self.get(identity)
        if current is None or current.external_customer_id is None or self._provider is None:
            return current

        remote = await self._provider.fetch_subscription(current.external_customer_id)
        now = self._clock()
        if remote is None:
            values: dict[str, Any] = {
                "status": SubscriptionStatus.NONE.value,
                "cancel_at_period_end": False,
                "external_subscription_id": None,
                "current_period_end": None,
                "updated_at": now,
            }
        else:
            values = {
                "status": remote.status.value,
                "cancel_at_period_end": remote.cancel_at_period_end,
                "external_subscription_id": remote.subscription_id,
                "current_period_end": remote.current_period_end,
                "updated_at": now,
            }

        async def _write() -> SubscriptionSnapshot | None:
            async with self._session_factory() as session, session.begin():
                subs = SubscriptionRepository(session)
                await subs.overwrite(identity, values)
                row = await subs.get(identity)
                return SubscriptionSnapshot.from_row(row) if row is not None else None

        snapshot = await async_retry_with_backoff(_write, self._retry_config, (OperationalError,))
        logger.info(
            "Reconciled %s with provider: status=%s",
            identity,
            snapshot.status.value if snapshot else None,
        )
        return snapshot
