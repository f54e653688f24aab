"""Retry with exponential backoff for off-path storage writes.

The access gate never retries: a failed ledger call is a denial.  This
helper is for work that may take longer, such as persisting a provider
reconciliation after a transient database error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=2,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=0.1,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def async_retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> T:
    """Await *fn* with retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument coroutine function.  Each attempt calls it afresh,
        so it must open its own transaction.
    config:
        Retry parameters (see :class:`RetryConfig`).
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
        All other exceptions propagate immediately.

    Returns
    -------
    T
        The return value of *fn* on the first successful call.

    Raises
    ------
    Exception
        The last exception raised by *fn* after all retry attempts are
        exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = _compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.2fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
