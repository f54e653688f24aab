"""Usage ledger: per-identity daily and lifetime read counters.

The ledger is the only writer of ``usage_ledger``.  Its one mutating
entry point, :meth:`UsageLedger.increment_if_allowed`, checks the daily
limit and counts the read in a single conditional ``UPDATE`` so that
concurrent requests for the same identity, from any number of workers,
never push the day's count past the limit.

Day rollover is lazy: a record whose ``daily_date`` is older than today's
key is read as zero reads today, and the refreshed key is persisted by the
next mutating call for that identity.  ``daily_date`` never moves backwards,
so a worker whose clock lags midnight cannot reopen a day that is over.

Records written by the previous counter schema (``legacy_reads_today`` /
``legacy_last_reset_ms``, no ``daily_date``) are normalised on read and
rewritten to the canonical shape on the next mutating call.  Callers only
ever see canonical values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gate_core.clock import Clock, day_key, day_key_from_epoch_ms, utc_now
from gate_core.errors import LedgerUnavailableError
from gate_core.state.database import STORE_ERRORS
from gate_core.state.repository import UsageLedgerRepository
from gate_core.state.tables import UsageLedgerTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Counters for one identity as of today."""

    daily_count: int
    total_count: int
    daily_date: str


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of :meth:`UsageLedger.increment_if_allowed`."""

    allowed: bool
    daily_count: int
    total_count: int
    daily_date: str


def _canonical_day(record: UsageLedgerTable) -> tuple[int, str | None]:
    """Return ``(daily_count, daily_date)`` for *record* in canonical form.

    Legacy rows carry the reset instant as epoch milliseconds; a legacy row
    with no reset instant has no usable day and yields ``(0, None)``.
    """
    if record.daily_date is not None:
        return record.daily_count, record.daily_date
    if record.legacy_last_reset_ms is None:
        return 0, None
    return record.legacy_reads_today or 0, day_key_from_epoch_ms(record.legacy_last_reset_ms)


def _snapshot(record: UsageLedgerTable | None, today: str) -> LedgerSnapshot:
    if record is None:
        return LedgerSnapshot(daily_count=0, total_count=0, daily_date=today)
    daily_count, daily_date = _canonical_day(record)
    if daily_date is None or daily_date < today:
        return LedgerSnapshot(daily_count=0, total_count=record.total_count, daily_date=today)
    # A key ahead of today comes from a worker whose clock is ahead of ours.
    return LedgerSnapshot(daily_count=daily_count, total_count=record.total_count, daily_date=daily_date)


class UsageLedger:
    """Daily read quota bookkeeping backed by the shared state store.

    Each call runs in its own transaction on a fresh session, so a failure
    part-way through leaves the record exactly as it was before the call.

    Parameters
    ----------
    session_factory:
        Factory for sessions against the state store.
    clock:
        Source of the current instant; day keys are derived from it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def peek(self, identity: str) -> LedgerSnapshot:
        """Return today's counters for *identity* without modifying anything.

        A missing record reads as zero; a stale record reads as zero reads
        today with its lifetime total intact.

        Raises
        ------
        LedgerUnavailableError
            If the state store cannot be read.
        """
        today = day_key(self._clock())
        try:
            async with self._session_factory() as session:
                record = await UsageLedgerRepository(session).get(identity)
                return _snapshot(record, today)
        except STORE_ERRORS as exc:
            logger.warning("Ledger peek failed for %s: %s", identity, exc)
            raise LedgerUnavailableError(f"Usage ledger unavailable: {exc}") from exc

    async def increment_if_allowed(self, identity: str, limit: int | None) -> LedgerResult:
        """Count one read for *identity* if today's count is below *limit*.

        Parameters
        ----------
        identity:
            Canonical identity key.
        limit:
            Daily read limit.  ``None`` counts the read unconditionally,
            which the gate uses to record reads by subscribers.

        Returns
        -------
        LedgerResult
            ``allowed`` with the post-increment counters, or a denial with
            the current (rolled-over) counters.

        Raises
        ------
        ValueError
            If *limit* is negative.
        LedgerUnavailableError
            If the state store cannot be written; nothing was changed.
        """
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")

        now = self._clock()
        today = day_key(now)
        try:
            async with self._session_factory() as session, session.begin():
                repo = UsageLedgerRepository(session)
                # The insert takes the row (and, on SQLite, the database)
                # write lock before anything is read.
                created = await repo.ensure(identity, today)
                if not created:
                    await self._adopt_legacy_shape(repo, identity)

                counted = await repo.increment_below(identity, today, limit, now)
                if counted is not None:
                    daily_count, total_count, daily_date = counted
                    return LedgerResult(
                        allowed=True,
                        daily_count=daily_count,
                        total_count=total_count,
                        daily_date=daily_date,
                    )

                await repo.roll_over(identity, today)
                record = await repo.get(identity)
                snapshot = _snapshot(record, today)
        except STORE_ERRORS as exc:
            logger.warning("Ledger increment failed for %s: %s", identity, exc)
            raise LedgerUnavailableError(f"Usage ledger unavailable: {exc}") from exc

        logger.info(
            "Daily limit reached: identity=%s count=%d limit=%s",
            identity,
            snapshot.daily_count,
            limit,
        )
        return LedgerResult(
            allowed=False,
            daily_count=snapshot.daily_count,
            total_count=snapshot.total_count,
            daily_date=snapshot.daily_date,
        )

    @staticmethod
    async def _adopt_legacy_shape(repo: UsageLedgerRepository, identity: str) -> None:
        record = await repo.get(identity)
        if record is None or record.daily_date is not None:
            return
        daily_count, daily_date = _canonical_day(record)
        if daily_date is None:
            # No reset instant recorded; the stale branch of the increment
            # resets the count, so any past key will do.
            daily_date = "1970-01-01"
        if await repo.adopt_legacy(identity, daily_count, daily_date):
            logger.info("Migrated legacy usage record for %s", identity)
