"""
Account lockout guard.

Counts failed authentications per identifier in a short attempt window
and sets a timed lock flag once the threshold is reached. Both keys
carry TTLs, so locks clear themselves without an unlock write.

Every operation fails open when the shared store is unreachable: login
availability is preferred over this defense-in-depth control. Results
report ``store_available=False`` in that case.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.errors import StoreUnavailableError
from ..store.base import BucketStore

MAX_ATTEMPTS = 5
ATTEMPT_WINDOW_SECONDS = 300
LOCKOUT_DURATION_SECONDS = 900


@dataclass(frozen=True)
class FailedAttemptResult:
    locked: bool
    attempts_left: int
    locked_until: Optional[datetime] = None
    store_available: bool = True


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    locked_until: Optional[datetime] = None
    time_remaining: Optional[int] = None
    store_available: bool = True


class LockoutGuard:
    """Tracks failed attempts and timed locks in the bucket store."""

    ATTEMPTS_PREFIX = "lockout:"
    LOCK_PREFIX = "lock:"

    def __init__(
        self,
        store: BucketStore,
        max_attempts: int = MAX_ATTEMPTS,
        attempt_window_seconds: int = ATTEMPT_WINDOW_SECONDS,
        lockout_duration_seconds: int = LOCKOUT_DURATION_SECONDS,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.attempt_window_seconds = attempt_window_seconds
        self.lockout_duration_seconds = lockout_duration_seconds
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("admission.lockout")

    @staticmethod
    def _normalize(identifier: str) -> str:
        return identifier.strip().lower()

    def _attempts_key(self, identifier: str) -> str:
        return f"{self.ATTEMPTS_PREFIX}{self._normalize(identifier)}"

    def _lock_key(self, identifier: str) -> str:
        return f"{self.LOCK_PREFIX}{self._normalize(identifier)}"

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _store_failed(self, operation: str, identifier: str, error: Exception):
        self.logger.error(
            "Lockout store unavailable, failing open",
            operation=operation,
            identifier=self._normalize(identifier),
            error=str(error)
        )
        if self.metrics:
            self.metrics.record_store_failure("lockout")

    async def record_failed_attempt(self, identifier: str) -> FailedAttemptResult:
        """Count one failed authentication and lock once the threshold is hit."""
        key = self._attempts_key(identifier)

        try:
            attempts = await self.store.incr(key)
            if attempts == 1:
                await self.store.expire(key, self.attempt_window_seconds)
            elif await self.store.ttl(key) == -1:
                # Counter without expiry would never reset; restore the window.
                await self.store.expire(key, self.attempt_window_seconds)

            if attempts >= self.max_attempts:
                await self.store.setex(self._lock_key(identifier), self.lockout_duration_seconds, "1")
        except StoreUnavailableError as e:
            self._store_failed("record_failed_attempt", identifier, e)
            return FailedAttemptResult(locked=False, attempts_left=self.max_attempts, store_available=False)

        if attempts >= self.max_attempts:
            locked_until = self._now() + timedelta(seconds=self.lockout_duration_seconds)
            self.logger.warning(
                "Account locked due to too many failed attempts",
                identifier=self._normalize(identifier),
                attempts=attempts,
                locked_until=locked_until.isoformat()
            )
            if self.metrics:
                self.metrics.record_decision("lockout", "locked")
            return FailedAttemptResult(locked=True, attempts_left=0, locked_until=locked_until)

        return FailedAttemptResult(locked=False, attempts_left=self.max_attempts - attempts)

    async def is_account_locked(self, identifier: str) -> LockStatus:
        """Lock state derived from the lock flag's remaining TTL."""
        try:
            ttl = await self.store.ttl(self._lock_key(identifier))
        except StoreUnavailableError as e:
            self._store_failed("is_account_locked", identifier, e)
            return LockStatus(locked=False, store_available=False)

        if ttl > 0:
            return LockStatus(
                locked=True,
                locked_until=self._now() + timedelta(seconds=ttl),
                time_remaining=ttl,
            )
        return LockStatus(locked=False)

    async def clear_failed_attempts(self, identifier: str) -> None:
        """Reset the identifier after a successful authentication."""
        try:
            await self.store.delete(self._attempts_key(identifier), self._lock_key(identifier))
        except StoreUnavailableError as e:
            self._store_failed("clear_failed_attempts", identifier, e)
            return

        self.logger.info("Cleared failed login attempts", identifier=self._normalize(identifier))

    async def unlock_account(self, identifier: str) -> None:
        """Administrative override: drop the lock and the attempt counter."""
        try:
            await self.store.delete(self._lock_key(identifier), self._attempts_key(identifier))
        except StoreUnavailableError as e:
            self._store_failed("unlock_account", identifier, e)
            return

        self.logger.info("Account manually unlocked", identifier=self._normalize(identifier))

    async def get_attempt_count(self, identifier: str) -> int:
        try:
            value = await self.store.get(self._attempts_key(identifier))
        except StoreUnavailableError as e:
            self._store_failed("get_attempt_count", identifier, e)
            return 0
        return int(value) if value else 0
