"""
Unit tests for the account lockout guard.
"""

import pytest
from unittest.mock import AsyncMock

from prometheus_client import CollectorRegistry

from service_admission.app.lockout import LockoutGuard
from service_admission.app.store import InMemoryBucketStore
from shared.errors import StoreUnavailableError
from shared.metrics import MetricsCollector


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestLockoutGuard:
    """Test cases for LockoutGuard."""

    @pytest.fixture
    def clock(self):
        """Hand-driven clock shared by guard and store."""
        return FakeClock()

    @pytest.fixture
    def store(self, clock):
        """In-memory store on the fake clock."""
        return InMemoryBucketStore(clock=clock)

    @pytest.fixture
    def guard(self, store, clock):
        """Create LockoutGuard instance with default thresholds."""
        return LockoutGuard(store, clock=clock)

    @pytest.mark.asyncio
    async def test_locks_after_max_attempts(self, guard):
        """Test the fifth failure inside the window locks the identifier."""
        results = [await guard.record_failed_attempt("alice@example.com") for _ in range(5)]

        assert [r.attempts_left for r in results] == [4, 3, 2, 1, 0]
        assert [r.locked for r in results] == [False, False, False, False, True]
        assert results[-1].locked_until is not None

        status = await guard.is_account_locked("alice@example.com")
        assert status.locked is True
        assert status.time_remaining == 900

    @pytest.mark.asyncio
    async def test_identifier_normalized(self, guard):
        """Test case and surrounding whitespace share one counter."""
        await guard.record_failed_attempt("Alice@Example.com ")
        await guard.record_failed_attempt("alice@example.com")

        assert await guard.get_attempt_count("ALICE@EXAMPLE.COM") == 2

    @pytest.mark.asyncio
    async def test_counter_restarts_after_window(self, guard, clock):
        """Test failures spread beyond the window never lock."""
        for _ in range(3):
            await guard.record_failed_attempt("alice@example.com")

        clock.now += 301
        result = await guard.record_failed_attempt("alice@example.com")

        assert result.locked is False
        assert result.attempts_left == 4

    @pytest.mark.asyncio
    async def test_lock_expires(self, guard, clock):
        """Test locks clear themselves after the lockout duration."""
        for _ in range(5):
            await guard.record_failed_attempt("alice@example.com")

        clock.now += 600
        assert (await guard.is_account_locked("alice@example.com")).time_remaining == 300

        clock.now += 300
        assert (await guard.is_account_locked("alice@example.com")).locked is False

    @pytest.mark.asyncio
    async def test_missing_window_ttl_restored(self, guard, store):
        """Test an attempt counter without expiry gets the window back."""
        await store.set("lockout:alice@example.com", "2")

        result = await guard.record_failed_attempt("alice@example.com")

        assert result.attempts_left == 2
        assert await store.ttl("lockout:alice@example.com") == 300

    @pytest.mark.asyncio
    async def test_clear_failed_attempts(self, guard):
        """Test a successful login resets the counter."""
        for _ in range(3):
            await guard.record_failed_attempt("alice@example.com")

        await guard.clear_failed_attempts("alice@example.com")

        assert await guard.get_attempt_count("alice@example.com") == 0

    @pytest.mark.asyncio
    async def test_unlock_account(self, guard):
        """Test the administrative override."""
        for _ in range(5):
            await guard.record_failed_attempt("alice@example.com")

        await guard.unlock_account("alice@example.com")

        assert (await guard.is_account_locked("alice@example.com")).locked is False
        assert await guard.get_attempt_count("alice@example.com") == 0

    @pytest.mark.asyncio
    async def test_unknown_identifier_not_locked(self, guard):
        """Test identifiers never seen are not locked."""
        status = await guard.is_account_locked("nobody@example.com")

        assert status.locked is False
        assert status.time_remaining is None

    @pytest.mark.asyncio
    async def test_custom_thresholds(self, store, clock):
        """Test configured attempt and lock limits."""
        guard = LockoutGuard(store, max_attempts=2, lockout_duration_seconds=60, clock=clock)

        await guard.record_failed_attempt("bob")
        result = await guard.record_failed_attempt("bob")

        assert result.locked is True
        assert (await guard.is_account_locked("bob")).time_remaining == 60

    @pytest.mark.asyncio
    async def test_fails_open_when_store_unavailable(self, clock):
        """Test a store outage neither locks nor blocks."""
        store = AsyncMock()
        store.incr.side_effect = StoreUnavailableError()
        store.ttl.side_effect = StoreUnavailableError()
        store.get.side_effect = StoreUnavailableError()
        store.delete.side_effect = StoreUnavailableError()
        registry = CollectorRegistry()
        guard = LockoutGuard(store, clock=clock, metrics=MetricsCollector("test", registry))

        attempt = await guard.record_failed_attempt("alice@example.com")
        status = await guard.is_account_locked("alice@example.com")
        await guard.clear_failed_attempts("alice@example.com")

        assert attempt.locked is False
        assert attempt.store_available is False
        assert status.locked is False
        assert status.store_available is False
        assert await guard.get_attempt_count("alice@example.com") == 0
        assert registry.get_sample_value(
            "admission_store_failures_total", {"gate": "lockout"}
        ) == 4.0
