"""UTC day buckets.

A *day key* is the ``YYYY-MM-DD`` calendar date of a moment in UTC.  Keys
compare lexicographically in the same order as the days they name, so the
ledger can store and compare them as plain strings.  Nothing here depends
on the process's local timezone.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """Return *moment* converted to UTC; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def day_key(moment: datetime) -> str:
    """Return the UTC calendar date of *moment* as ``YYYY-MM-DD``."""
    return as_utc(moment).date().isoformat()


def today_key(clock: Clock = utc_now) -> str:
    """Return the day key for the current instant reported by *clock*."""
    return day_key(clock())


def day_key_from_epoch_ms(epoch_ms: int) -> str:
    """Return the day key for a millisecond Unix timestamp.

    Rows written by the previous counter schema stored the last reset as
    milliseconds since the epoch at UTC midnight.
    """
    return day_key(datetime.fromtimestamp(epoch_ms / 1000, tz=UTC))
