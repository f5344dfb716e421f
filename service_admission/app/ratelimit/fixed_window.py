"""
Store-backed fixed window rate limiter.

Counts admissions per key in a TTL-bounded slice of the shared store so
every service instance sees the same counter. Window edges are not
aligned across keys, and a caller can be admitted up to ``2 * limit``
times across a boundary: the tail of one window plus the head of the
next.
"""

import math
import time
from typing import Callable, Optional

from shared.logging import get_logger
from shared.errors import StoreUnavailableError
from ..store.base import BucketStore
from .base import RateLimiter, RateLimitOptions, RateLimitResult


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter(RateLimiter):
    """Distributed fixed window limiter using INCR + EXPIRE."""

    KEY_PREFIX = "rate_limit:"

    def __init__(
        self,
        store: BucketStore,
        default_options: RateLimitOptions,
        clock: Callable[[], int] = _now_ms
    ):
        super().__init__(default_options)
        self.store = store
        self.clock = clock
        self.logger = get_logger("admission.ratelimit.fixed_window")

    def _make_key(self, key: str) -> str:
        """Generate rate limit key."""
        return f"{self.KEY_PREFIX}{key}"

    @staticmethod
    def _window_seconds(opts: RateLimitOptions) -> int:
        return max(1, math.ceil(opts.window_ms / 1000))

    def _fail_open(self, key: str, opts: RateLimitOptions, error: Exception) -> RateLimitResult:
        self.logger.error("Rate limit check error, failing open", key=key, error=str(error))
        return RateLimitResult(
            ok=True,
            limit=opts.limit,
            remaining=opts.limit,
            reset_at=self.clock() + opts.window_ms,
            retry_after_ms=0,
            store_available=False,
        )

    async def _remaining_ttl(self, store_key: str, window_s: int) -> int:
        ttl = await self.store.ttl(store_key)
        if ttl == -1:
            # Counter lost its expiry (e.g. crash between INCR and EXPIRE).
            await self.store.expire(store_key, window_s)
            self.logger.warning("Re-applied missing window TTL", key=store_key)
            return window_s
        if ttl < 0:
            return window_s
        return ttl

    async def consume(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        opts = opts or self.default_options
        store_key = self._make_key(key)
        window_s = self._window_seconds(opts)
        now = self.clock()

        try:
            count = await self.store.incr(store_key)
            if count == 1:
                await self.store.expire(store_key, window_s)
                ttl = window_s
            else:
                ttl = await self._remaining_ttl(store_key, window_s)
        except StoreUnavailableError as e:
            return self._fail_open(key, opts, e)

        if count > opts.limit:
            retry_after_ms = ttl * 1000
            self.logger.warning(
                "Rate limit exceeded",
                key=key,
                current_count=count,
                limit=opts.limit
            )
            return RateLimitResult(
                ok=False,
                limit=opts.limit,
                remaining=0,
                reset_at=now + retry_after_ms,
                retry_after_ms=retry_after_ms,
            )

        return RateLimitResult(
            ok=True,
            limit=opts.limit,
            remaining=opts.limit - count,
            reset_at=now + ttl * 1000,
            retry_after_ms=0,
        )

    async def status(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        opts = opts or self.default_options
        store_key = self._make_key(key)
        now = self.clock()

        try:
            value = await self.store.get(store_key)
            count = int(value) if value else 0
            ttl = await self._remaining_ttl(store_key, self._window_seconds(opts)) if count else 0
        except StoreUnavailableError as e:
            return self._fail_open(key, opts, e)

        exhausted = count >= opts.limit
        return RateLimitResult(
            ok=not exhausted,
            limit=opts.limit,
            remaining=max(0, opts.limit - count),
            reset_at=now + ttl * 1000,
            retry_after_ms=ttl * 1000 if exhausted else 0,
        )

    async def reset(self, key: str) -> bool:
        """Reset rate limit for a key."""
        try:
            removed = await self.store.delete(self._make_key(key))
        except StoreUnavailableError as e:
            self.logger.error("Rate limit reset error", key=key, error=str(e))
            return False

        self.logger.info("Rate limit reset", key=key)
        return removed > 0
