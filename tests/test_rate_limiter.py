"""Tests for the per-identifier rate limiter state machine."""

from __future__ import annotations

import threading

import pytest

from fitguard.database import DatabaseManager
from fitguard.models.enums import RateLimitPhase
from fitguard.services.rate_limiter import RateLimiter

EMAIL = "bob@x.com"


def fail(limiter: RateLimiter, times: int, identifier: str = EMAIL) -> None:
    for _ in range(times):
        limiter.record_failure(identifier)


class TestLockoutThreshold:
    @pytest.mark.parametrize("failures", [0, 1, 2, 3, 4])
    def test_not_locked_before_threshold(self, rate_limiter, failures) -> None:
        fail(rate_limiter, failures)
        decision = rate_limiter.check(EMAIL)
        assert decision.locked is False
        assert decision.allowed is True

    def test_fifth_failure_locks(self, rate_limiter) -> None:
        fail(rate_limiter, 4)
        outcome = rate_limiter.record_failure(EMAIL)
        assert outcome.is_locked is True
        assert outcome.newly_locked is True
        assert outcome.delay_ms == 15 * 60 * 1000
        assert "15 minutes" in outcome.message

        decision = rate_limiter.check(EMAIL)
        assert decision.locked is True
        assert decision.allowed is False
        assert decision.phase == RateLimitPhase.LOCKED
        assert decision.wait_ms == 15 * 60 * 1000

    def test_failures_while_locked_do_not_extend(self, rate_limiter, clock) -> None:
        fail(rate_limiter, 5)
        clock.advance(minutes=5)
        outcome = rate_limiter.record_failure(EMAIL)
        assert outcome.is_locked is True
        assert outcome.newly_locked is False
        assert rate_limiter.get_state(EMAIL).failure_count == 5
        assert rate_limiter.check(EMAIL).wait_ms == 10 * 60 * 1000

    def test_remaining_attempts_reported(self, rate_limiter) -> None:
        outcome = rate_limiter.record_failure(EMAIL)
        assert outcome.remaining_attempts == 4
        assert outcome.message == "4 attempt(s) remaining."


class TestBackoffSchedule:
    def test_documented_schedule(self, rate_limiter) -> None:
        assert [rate_limiter.delay_for(n) for n in range(8)] == [
            0, 0, 1000, 2000, 4000, 8000, 8000, 8000,
        ]

    def test_huge_counts_stay_capped(self, rate_limiter) -> None:
        assert rate_limiter.delay_for(10_000) == 8000

    def test_wait_shrinks_as_time_passes(self, rate_limiter, clock) -> None:
        fail(rate_limiter, 3)
        assert rate_limiter.check(EMAIL).wait_ms == 2000
        clock.advance(milliseconds=500)
        assert rate_limiter.check(EMAIL).wait_ms == 1500
        clock.advance(seconds=5)
        decision = rate_limiter.check(EMAIL)
        assert decision.wait_ms == 0
        assert decision.phase == RateLimitPhase.WARNING


class TestReset:
    @pytest.mark.parametrize("failures", [0, 1, 3, 5, 7])
    def test_success_clears_every_state(self, rate_limiter, failures) -> None:
        fail(rate_limiter, failures)
        rate_limiter.record_success(EMAIL)
        assert rate_limiter.get_state(EMAIL) is None
        decision = rate_limiter.check(EMAIL)
        assert decision.phase == RateLimitPhase.CLEAR
        assert decision.allowed is True
        assert decision.wait_ms == 0

    def test_expired_lockout_allows_but_keeps_count(self, rate_limiter, clock) -> None:
        fail(rate_limiter, 5)
        clock.advance(minutes=15, seconds=1)

        decision = rate_limiter.check(EMAIL)
        assert decision.allowed is True
        assert decision.locked is False
        assert decision.failure_count == 5

        outcome = rate_limiter.record_failure(EMAIL)
        assert outcome.newly_locked is True
        assert rate_limiter.check(EMAIL).locked is True


class TestIdentifierNormalisation:
    def test_case_and_whitespace_share_one_counter(self, rate_limiter) -> None:
        for variant in ["bob@x.com", "BOB@X.COM", "  Bob@X.com ", "bOb@x.CoM", "bob@x.com"]:
            rate_limiter.record_failure(variant)
        assert rate_limiter.check("Bob@x.com").locked is True

    def test_identifiers_are_independent(self, rate_limiter) -> None:
        fail(rate_limiter, 5, "alice@x.com")
        assert rate_limiter.check("alice@x.com").locked is True
        assert rate_limiter.check(EMAIL).locked is False


class TestPersistence:
    def test_lockout_survives_restart(self, db, db_path, logger, config, clock) -> None:
        fail(RateLimiter(db, logger, config, clock=clock), 5)
        db.close()

        reopened = DatabaseManager(sqlite_path=db_path, logger=logger)
        try:
            restarted = RateLimiter(reopened, logger, config, clock=clock)
            decision = restarted.check(EMAIL)
            assert decision.locked is True
            assert decision.wait_ms > 0
        finally:
            reopened.close()


class TestConcurrency:
    def test_parallel_failures_lock_exactly_once(self, rate_limiter) -> None:
        outcomes = []
        outcomes_lock = threading.Lock()
        start = threading.Barrier(12)

        def attempt() -> None:
            start.wait()
            outcome = rate_limiter.record_failure(EMAIL)
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for o in outcomes if o.newly_locked) == 1
        assert rate_limiter.get_state(EMAIL).failure_count == 5
        assert rate_limiter.check(EMAIL).locked is True

    def test_parallel_identifiers_do_not_interfere(self, rate_limiter) -> None:
        identifiers = [f"user{i}@x.com" for i in range(6)]

        def hammer(identifier: str) -> None:
            fail(rate_limiter, 3, identifier)

        threads = [threading.Thread(target=hammer, args=(i,)) for i in identifiers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for identifier in identifiers:
            assert rate_limiter.get_state(identifier).failure_count == 3

    def test_lock_pool_stays_bounded(self, rate_limiter) -> None:
        pool = rate_limiter._locks
        for i in range(5000):
            rate_limiter.check(f"spray{i}@x.com")
        rate_limiter.sweep_stale()

        assert rate_limiter._locks is pool
        assert len(pool) == 64
        assert rate_limiter._lock_for("bob@x.com") is rate_limiter._lock_for("bob@x.com")


class TestMaintenance:
    def test_sweep_stale_keeps_recent_entries(self, rate_limiter, clock) -> None:
        rate_limiter.record_failure("old@x.com")
        clock.advance(minutes=10)
        fail(rate_limiter, 5, "locked@x.com")
        clock.advance(minutes=6)

        assert rate_limiter.sweep_stale() == 1
        assert rate_limiter.get_state("old@x.com") is None
        assert rate_limiter.get_state("locked@x.com") is not None

    def test_stats(self, rate_limiter) -> None:
        rate_limiter.record_failure("a@x.com")
        fail(rate_limiter, 5, "b@x.com")
        stats = rate_limiter.stats()
        assert stats.tracked_identifiers == 2
        assert stats.locked_identifiers == 1
        assert stats.max_failures == 5
        assert stats.lockout_seconds == 900
