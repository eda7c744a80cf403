"""
Rate Limiter.

Per-identifier failure counter with progressive backoff and temporary
lockout, persisted in the ``rate_limits`` table so that restarting the
process does not reset a lockout.

State machine per identifier (the normalised email)::

    CLEAR ──failure──▶ WARNING(n) ──n reaches max──▶ LOCKED
      ▲                    │                           │
      └──────success───────┴──────────success──────────┘

- ``WARNING(n)``: attempts are allowed but the caller should wait
  ``delay_for(n)`` before retrying (client-side throttle).
- ``LOCKED``: attempts are refused until ``lockout_until``.  Once the
  lockout expires, attempts are allowed again but the count is kept:
  the next failure re-locks immediately.  Only a success (or the stale
  sweep) resets the counter.

Concurrency: identifiers map onto a fixed pool of ``threading.Lock``
stripes, so memory stays bounded however many identifiers are tried.
The read-modify-write of one identifier runs under its stripe and inside
a single SQLite transaction, so two racing failures can never both
observe ``n = max - 1`` and skip the lockout.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from fitguard.config import AppConfig
from fitguard.database import DatabaseManager
from fitguard.errors import StorageFailure
from fitguard.logger import StructuredLogger
from fitguard.models.auth_models import (
    FailureOutcome,
    RateLimitDecision,
    RateLimitState,
    RateLimitStats,
)
from fitguard.models.enums import RateLimitPhase
from fitguard.utils.general import (
    format_duration,
    from_db_timestamp,
    normalize_identifier,
    to_db_timestamp,
    utc_now,
)

# Fixed pool of per-identifier locks; the pool never grows with the
# number of identifiers seen.
_LOCK_STRIPES: int = 64


def _remaining_ms(until: datetime, now: datetime) -> int:
    """Milliseconds from *now* to *until*, rounded up, never negative."""
    delta = until - now
    micros = delta.days * 86_400_000_000 + delta.seconds * 1_000_000 + delta.microseconds
    return max(0, -(-micros // 1000))


class RateLimiter:
    """Throttles repeated authentication failures per identifier.

    Parameters
    ----------
    db:
        Initialised database manager.
    logger:
        Structured logger.
    config:
        Supplies threshold, lockout duration and the delay schedule.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        db: DatabaseManager,
        logger: StructuredLogger,
        config: AppConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db: DatabaseManager = db
        self._logger: StructuredLogger = logger
        self._clock: Callable[[], datetime] = clock
        self._max_failures: int = config.RATE_LIMIT_MAX_FAILURES
        self._lockout: timedelta = timedelta(seconds=config.RATE_LIMIT_LOCKOUT_S)
        self._initial_delay_ms: int = config.RATE_LIMIT_INITIAL_DELAY_MS
        self._max_delay_ms: int = config.RATE_LIMIT_MAX_DELAY_MS

        self._locks: tuple[threading.Lock, ...] = tuple(
            threading.Lock() for _ in range(_LOCK_STRIPES)
        )

    @property
    def max_failures(self) -> int:
        return self._max_failures

    # ==================================================================
    # Schedule
    # ==================================================================

    def delay_for(self, failure_count: int) -> int:
        """Progressive client-side delay in milliseconds.

        ``0`` for one failure or none, then doubling from the initial
        delay and capped: with the defaults 1 s, 2 s, 4 s, 8 s, 8 s ...
        """
        if failure_count <= 1:
            return 0
        # Cap the exponent before shifting; counts can grow unbounded.
        exponent = min(failure_count - 2, 30)
        return min(self._initial_delay_ms * (2 ** exponent), self._max_delay_ms)

    # ==================================================================
    # State machine
    # ==================================================================

    def check(self, identifier: str) -> RateLimitDecision:
        """Report whether an attempt for *identifier* may proceed.

        Never mutates state.

        Returns
        -------
        RateLimitDecision
            ``allowed=False, locked=True`` during an active lockout, with
            ``wait_ms`` the remaining lockout.  Otherwise ``allowed=True``
            and ``wait_ms`` the part of the progressive delay that has
            not yet elapsed since the last failure.
        """
        key: str = normalize_identifier(identifier)
        now: datetime = self._clock()
        with self._lock_for(key):
            state = self._load(key)

        if state is None or state.failure_count == 0:
            return RateLimitDecision(allowed=True, phase=RateLimitPhase.CLEAR)

        if state.lockout_until is not None and now < state.lockout_until:
            remaining = _remaining_ms(state.lockout_until, now)
            return RateLimitDecision(
                allowed=False,
                wait_ms=remaining,
                locked=True,
                phase=RateLimitPhase.LOCKED,
                failure_count=state.failure_count,
                message=f"Account locked. Try again in {format_duration(remaining)}.",
            )

        wait_ms: int = self.delay_for(state.failure_count)
        if wait_ms and state.last_failure_at is not None:
            elapsed = _remaining_ms(now, state.last_failure_at)
            wait_ms = max(0, wait_ms - elapsed)

        remaining_attempts = max(0, self._max_failures - state.failure_count)
        return RateLimitDecision(
            allowed=True,
            wait_ms=wait_ms,
            phase=RateLimitPhase.WARNING,
            failure_count=state.failure_count,
            message=f"{remaining_attempts} attempt(s) remaining.",
        )

    def record_failure(self, identifier: str) -> FailureOutcome:
        """Count one failure for *identifier*; lock when the threshold is hit.

        While a lockout is active the counter is not incremented and the
        lockout is not extended.

        Raises
        ------
        StorageFailure
            If the state cannot be persisted.
        """
        key: str = normalize_identifier(identifier)
        now: datetime = self._clock()

        with self._lock_for(key):
            try:
                with self._db.batch_write():
                    state = self._load(key) or RateLimitState(identifier=key)

                    if state.lockout_until is not None and now < state.lockout_until:
                        remaining = _remaining_ms(state.lockout_until, now)
                        return FailureOutcome(
                            is_locked=True,
                            delay_ms=remaining,
                            failure_count=state.failure_count,
                            message=f"Account locked. Try again in {format_duration(remaining)}.",
                        )

                    state.failure_count += 1
                    state.last_failure_at = now
                    state.delay_index = max(0, state.failure_count - 1)
                    newly_locked: bool = state.failure_count >= self._max_failures
                    if newly_locked:
                        state.lockout_until = now + self._lockout
                    self._save(state)
            except sqlite3.Error as exc:
                raise StorageFailure(
                    "Could not persist rate-limit state.", original_error=exc,
                ) from exc

        if newly_locked:
            lockout_ms = int(self._lockout.total_seconds() * 1000)
            self._logger.warning(
                "Rate limit engaged for %s: %d failed attempts. Locked for %ds.",
                key,
                state.failure_count,
                int(self._lockout.total_seconds()),
                extra={"event": "LOCKOUT_TRIGGERED"},
            )
            return FailureOutcome(
                is_locked=True,
                newly_locked=True,
                delay_ms=lockout_ms,
                failure_count=state.failure_count,
                message=(
                    "Too many failed attempts. Account locked for "
                    f"{format_duration(lockout_ms)}."
                ),
            )

        remaining_attempts = self._max_failures - state.failure_count
        return FailureOutcome(
            is_locked=False,
            delay_ms=self.delay_for(state.failure_count),
            failure_count=state.failure_count,
            remaining_attempts=remaining_attempts,
            message=f"{remaining_attempts} attempt(s) remaining.",
        )

    def record_success(self, identifier: str) -> None:
        """Reset the counter and clear any lockout for *identifier*.

        Raises
        ------
        StorageFailure
            If the state cannot be persisted.
        """
        key: str = normalize_identifier(identifier)
        with self._lock_for(key):
            try:
                with self._db.batch_write():
                    self._db.sqlite.execute(
                        "DELETE FROM rate_limits WHERE identifier = ?", (key,),
                    )
            except sqlite3.Error as exc:
                raise StorageFailure(
                    "Could not reset rate-limit state.", original_error=exc,
                ) from exc

    def get_state(self, identifier: str) -> Optional[RateLimitState]:
        """Return the persisted state for *identifier*, if any."""
        key: str = normalize_identifier(identifier)
        with self._lock_for(key):
            return self._load(key)

    # ==================================================================
    # Maintenance
    # ==================================================================

    def sweep_stale(self) -> int:
        """Drop entries that are not locked and whose last failure is
        older than the lockout horizon.  Returns the number removed."""
        now: datetime = self._clock()
        cutoff: str = to_db_timestamp(now - self._lockout)
        now_text: str = to_db_timestamp(now)
        with self._db.batch_write():
            cursor = self._db.sqlite.execute(
                """
                DELETE FROM rate_limits
                WHERE (last_failure_at IS NULL OR last_failure_at < ?)
                  AND (lockout_until IS NULL OR lockout_until <= ?)
                """,
                (cutoff, now_text),
            )
        removed: int = max(cursor.rowcount, 0)
        if removed:
            self._logger.info(
                "Removed %d stale rate-limit entr%s.",
                removed, "y" if removed == 1 else "ies",
                extra={"event": "RATE_LIMIT_SWEEP"},
            )
        return removed

    def stats(self) -> RateLimitStats:
        now_text: str = to_db_timestamp(self._clock())
        with self._db.write_lock:
            row = self._db.sqlite.execute(
                """
                SELECT COUNT(*) AS tracked,
                       SUM(CASE WHEN lockout_until > ? THEN 1 ELSE 0 END) AS locked
                FROM rate_limits
                """,
                (now_text,),
            ).fetchone()
        return RateLimitStats(
            tracked_identifiers=int(row["tracked"] or 0),
            locked_identifiers=int(row["locked"] or 0),
            max_failures=self._max_failures,
            lockout_seconds=int(self._lockout.total_seconds()),
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _lock_for(self, key: str) -> threading.Lock:
        """Striped lock for *key*: one identifier always maps to the same lock."""
        return self._locks[hash(key) % _LOCK_STRIPES]

    def _load(self, key: str) -> Optional[RateLimitState]:
        try:
            with self._db.write_lock:
                row = self._db.sqlite.execute(
                    "SELECT identifier, failure_count, last_failure_at, lockout_until, "
                    "delay_index FROM rate_limits WHERE identifier = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageFailure(
                "Could not read rate-limit state.", original_error=exc,
            ) from exc
        if row is None:
            return None
        return RateLimitState(
            identifier=row["identifier"],
            failure_count=int(row["failure_count"]),
            last_failure_at=from_db_timestamp(row["last_failure_at"]),
            lockout_until=from_db_timestamp(row["lockout_until"]),
            delay_index=int(row["delay_index"]),
        )

    def _save(self, state: RateLimitState) -> None:
        """Upsert *state*.  Caller holds the identifier lock and a batch."""
        self._db.sqlite.execute(
            """
            INSERT INTO rate_limits
                (identifier, failure_count, last_failure_at, lockout_until, delay_index)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(identifier) DO UPDATE SET
                failure_count = excluded.failure_count,
                last_failure_at = excluded.last_failure_at,
                lockout_until = excluded.lockout_until,
                delay_index = excluded.delay_index
            """,
            (
                state.identifier,
                state.failure_count,
                to_db_timestamp(state.last_failure_at) if state.last_failure_at else None,
                to_db_timestamp(state.lockout_until) if state.lockout_until else None,
                state.delay_index,
            ),
        )
