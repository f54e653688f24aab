"""Access gate: the single allow/deny decision point for content reads.

Decision order for :meth:`AccessGate.evaluate`:

1. Anonymous visitors get a fixed allowance and never touch the ledger.
2. Entitled subscribers are always allowed.  A consuming read is still
   recorded in the ledger, in the background; a recording failure never
   blocks or denies the read.
3. Everyone else is metered against the daily limit via the ledger.

Failure policy: any ledger error or timeout denies the read (fail closed).
Any subscription-cache error falls through to metering, so a cache outage
never grants unlimited access.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from gate_core.errors import ConfigurationError, LedgerUnavailableError, SubscriptionCacheUnavailableError
from gate_core.ledger import UsageLedger
from gate_core.subscriptions import SubscriptionCache

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 0.25

REASON_QUOTA_EXHAUSTED = "quota_exhausted"
REASON_UNAVAILABLE = "unavailable"
REASON_ANONYMOUS_DISABLED = "anonymous_disabled"


class AccessState(str, Enum):
    """Externally visible metering state of a visitor after a decision."""

    ANONYMOUS = "anonymous"
    ENTITLED = "entitled"
    FREE_WITH_QUOTA_REMAINING = "free_with_quota_remaining"
    FREE_EXHAUSTED = "free_exhausted"


@dataclass(frozen=True)
class GatePolicy:
    """Metering limits, validated on construction.

    Parameters
    ----------
    daily_limit:
        Free reads per identity per UTC day.
    anonymous_allowance:
        Reads reported to anonymous visitors; ``0`` blocks anonymous reads.
    timeout_seconds:
        Upper bound on each cache or ledger call made while evaluating.

    Raises
    ------
    ConfigurationError
        If a limit is negative or not an integer, or the timeout is not
        positive.
    """

    daily_limit: int
    anonymous_allowance: int = 0
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        for name in ("daily_limit", "anonymous_allowance"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {value}")
        if not self.timeout_seconds > 0:
            raise ConfigurationError(f"timeout_seconds must be > 0, got {self.timeout_seconds!r}")


@dataclass(frozen=True)
class GateDecision:
    """Result of one gate evaluation.

    ``remaining`` and ``limit`` are ``None`` for entitled visitors, whose
    access is unbounded.
    """

    allowed: bool
    remaining: int | None
    limit: int | None
    entitled: bool
    state: AccessState
    daily_count: int | None = None
    total_count: int | None = None
    reason: str | None = None


class AccessGate:
    """Combine subscription entitlement and daily metering into one decision.

    Parameters
    ----------
    ledger:
        Usage ledger holding per-identity counters.
    subscriptions:
        Subscription cache consulted for entitlement.
    policy:
        Limits and timeouts.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        subscriptions: SubscriptionCache,
        policy: GatePolicy,
    ) -> None:
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._policy = policy
        self._recordings: set[asyncio.Task[object]] = set()

    @property
    def policy(self) -> GatePolicy:
        return self._policy

    @property
    def pending_recordings(self) -> int:
        """Number of entitled-read recordings still in flight."""
        return len(self._recordings)

    async def evaluate(self, identity: str | None, *, consume: bool) -> GateDecision:
        """Decide whether *identity* may read content now.

        Parameters
        ----------
        identity:
            Canonical identity key, or ``None`` for an anonymous visitor.
        consume:
            ``True`` when a content page is about to be delivered; the read
            is counted.  ``False`` only reports the current quota.
        """
        if identity is None:
            return self._anonymous_decision()

        if await self._is_entitled(identity):
            if consume:
                self._record_entitled_read(identity)
            return GateDecision(
                allowed=True,
                remaining=None,
                limit=None,
                entitled=True,
                state=AccessState.ENTITLED,
            )

        return await self._metered_decision(identity, consume)

    async def drain(self) -> None:
        """Wait for outstanding entitled-read recordings to finish."""
        while self._recordings:
            await asyncio.gather(*list(self._recordings), return_exceptions=True)

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _anonymous_decision(self) -> GateDecision:
        allowance = self._policy.anonymous_allowance
        return GateDecision(
            allowed=allowance > 0,
            remaining=allowance,
            limit=allowance,
            entitled=False,
            state=AccessState.ANONYMOUS,
            reason=None if allowance > 0 else REASON_ANONYMOUS_DISABLED,
        )

    async def _is_entitled(self, identity: str) -> bool:
        try:
            return await asyncio.wait_for(
                self._subscriptions.is_entitled(identity),
                timeout=self._policy.timeout_seconds,
            )
        except (TimeoutError, SubscriptionCacheUnavailableError) as exc:
            logger.warning(
                "Subscription cache read failed for %s, metering instead: %s",
                identity,
                str(exc) or type(exc).__name__,
            )
            return False
        except Exception:
            logger.exception("Unexpected subscription cache error for %s, metering instead", identity)
            return False

    async def _metered_decision(self, identity: str, consume: bool) -> GateDecision:
        limit = self._policy.daily_limit
        try:
            if consume:
                result = await asyncio.wait_for(
                    self._ledger.increment_if_allowed(identity, limit),
                    timeout=self._policy.timeout_seconds,
                )
                allowed = result.allowed
                daily_count, total_count = result.daily_count, result.total_count
            else:
                snapshot = await asyncio.wait_for(
                    self._ledger.peek(identity),
                    timeout=self._policy.timeout_seconds,
                )
                allowed = snapshot.daily_count < limit
                daily_count, total_count = snapshot.daily_count, snapshot.total_count
        except (TimeoutError, LedgerUnavailableError) as exc:
            logger.warning(
                "Denying read for %s, usage ledger unavailable: %s",
                identity,
                str(exc) or type(exc).__name__,
            )
            return self._unavailable_decision(limit)
        except Exception:
            logger.exception("Denying read for %s, unexpected usage ledger error", identity)
            return self._unavailable_decision(limit)

        remaining = max(limit - daily_count, 0)
        return GateDecision(
            allowed=allowed,
            remaining=remaining,
            limit=limit,
            entitled=False,
            state=AccessState.FREE_WITH_QUOTA_REMAINING if remaining > 0 else AccessState.FREE_EXHAUSTED,
            daily_count=daily_count,
            total_count=total_count,
            reason=None if allowed else REASON_QUOTA_EXHAUSTED,
        )

    @staticmethod
    def _unavailable_decision(limit: int) -> GateDecision:
        return GateDecision(
            allowed=False,
            remaining=0,
            limit=limit,
            entitled=False,
            state=AccessState.FREE_EXHAUSTED,
            reason=REASON_UNAVAILABLE,
        )

    # ------------------------------------------------------------------
    # Entitled-read recording
    # ------------------------------------------------------------------

    def _record_entitled_read(self, identity: str) -> None:
        task: asyncio.Task[object] = asyncio.get_running_loop().create_task(
            self._ledger.increment_if_allowed(identity, None),
            name=f"record-read:{identity}",
        )
        self._recordings.add(task)
        task.add_done_callback(self._recording_done)

    def _recording_done(self, task: asyncio.Task[object]) -> None:
        self._recordings.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Failed to record entitled read (%s): %s", task.get_name(), exc, exc_info=exc)
