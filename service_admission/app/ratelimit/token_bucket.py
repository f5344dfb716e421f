"""
In-process token bucket rate limiter.

Each key owns a bucket that refills continuously at ``limit / window_ms``
tokens per millisecond up to its capacity (``burst`` or ``limit``) and
spends one token per admitted unit. State lives in this process only, so
the limiter enforces per-instance backpressure rather than a global
ceiling.
"""

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

from shared.logging import get_logger
from .base import RateLimiter, RateLimitOptions, RateLimitResult


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BucketState:
    """Snapshot of one key's bucket."""

    tokens: float
    last_refill_at_ms: int
    limit: int
    burst: int
    window_ms: int

    @property
    def rate_per_ms(self) -> float:
        return self.limit / self.window_ms

    @classmethod
    def full(cls, opts: RateLimitOptions, now_ms: int) -> "BucketState":
        return cls(
            tokens=float(opts.capacity),
            last_refill_at_ms=now_ms,
            limit=opts.limit,
            burst=opts.capacity,
            window_ms=opts.window_ms,
        )


def refill(state: BucketState, now_ms: int) -> BucketState:
    """Credit the tokens accrued since the last refill, capped at capacity."""
    elapsed = max(0, now_ms - state.last_refill_at_ms)
    tokens = min(float(state.burst), state.tokens + elapsed * state.rate_per_ms)
    return replace(state, tokens=tokens, last_refill_at_ms=max(now_ms, state.last_refill_at_ms))


def take(state: Optional[BucketState], opts: RateLimitOptions, now_ms: int) -> Tuple[BucketState, RateLimitResult]:
    """Pure token-bucket step: returns the next state and the decision.

    Identical ``(state, opts, now_ms)`` always yield the identical result.
    """
    if state is None:
        state = BucketState.full(opts, now_ms)
    elif (state.limit, state.burst, state.window_ms) != (opts.limit, opts.capacity, opts.window_ms):
        state = replace(
            state,
            limit=opts.limit,
            burst=opts.capacity,
            window_ms=opts.window_ms,
            tokens=min(state.tokens, float(opts.capacity)),
        )

    state = refill(state, now_ms)
    rate = state.rate_per_ms

    if state.tokens < 1:
        retry_after_ms = math.ceil((1 - state.tokens) / rate)
        return state, RateLimitResult(
            ok=False,
            limit=state.limit,
            remaining=0,
            reset_at=now_ms + retry_after_ms,
            retry_after_ms=retry_after_ms,
        )

    state = replace(state, tokens=state.tokens - 1)
    wait_ms = math.ceil((1 - state.tokens) / rate) if state.tokens < 1 else 0
    return state, RateLimitResult(
        ok=True,
        limit=state.limit,
        remaining=int(math.floor(state.tokens)),
        reset_at=now_ms + wait_ms,
        retry_after_ms=0,
    )


class TokenBucketRateLimiter(RateLimiter):
    """Token bucket limiter keeping buckets in process memory.

    At most ``max_buckets`` buckets are held. Past the cap, buckets that
    have refilled to capacity are dropped first (at most once per
    ``sweep_interval_ms``), then the least recently refilled ones.
    """

    def __init__(
        self,
        default_options: RateLimitOptions,
        clock: Callable[[], int] = _now_ms,
        max_buckets: int = 10000,
        sweep_interval_ms: int = 1000
    ):
        super().__init__(default_options)
        if max_buckets < 1:
            raise ValueError("max_buckets must be at least 1")
        self.clock = clock
        self.max_buckets = max_buckets
        self.sweep_interval_ms = sweep_interval_ms
        self.logger = get_logger("admission.ratelimit.token_bucket")
        self._buckets: "OrderedDict[str, BucketState]" = OrderedDict()
        self._last_sweep_ms: Optional[int] = None
        self._lock = threading.Lock()

    async def consume(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        opts = opts or self.default_options
        now = self.clock()

        with self._lock:
            state, result = take(self._buckets.get(key), opts, now)
            self._buckets[key] = state
            self._buckets.move_to_end(key)
            if len(self._buckets) > self.max_buckets:
                self._enforce_cap(now)

        if not result.ok:
            self.logger.warning(
                "Rate limit exceeded",
                key=key,
                limit=result.limit,
                retry_after_ms=result.retry_after_ms
            )
        return result

    async def status(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        opts = opts or self.default_options
        now = self.clock()

        with self._lock:
            state = self._buckets.get(key)

        state = refill(state, now) if state is not None else BucketState.full(opts, now)
        wait_ms = math.ceil((1 - state.tokens) / state.rate_per_ms) if state.tokens < 1 else 0
        return RateLimitResult(
            ok=state.tokens >= 1,
            limit=state.limit,
            remaining=int(math.floor(state.tokens)),
            reset_at=now + wait_ms,
            retry_after_ms=wait_ms,
        )

    async def reset(self, key: str) -> bool:
        with self._lock:
            existed = self._buckets.pop(key, None) is not None
        self.logger.info("Rate limit reset", key=key)
        return existed

    def evict_idle(self) -> int:
        """Drop buckets that have refilled to capacity; returns how many."""
        with self._lock:
            return self._evict_full(self.clock())

    def _enforce_cap(self, now_ms: int):
        if self._last_sweep_ms is None or now_ms - self._last_sweep_ms >= self.sweep_interval_ms:
            self._last_sweep_ms = now_ms
            self._evict_full(now_ms)

        evicted = 0
        while len(self._buckets) > self.max_buckets:
            self._buckets.popitem(last=False)
            evicted += 1
        if evicted:
            self.logger.debug("Bucket limit reached, evicted least recent", count=evicted)

    def _evict_full(self, now_ms: int) -> int:
        # A bucket that would be full now is indistinguishable from a new one.
        idle = [
            key for key, state in self._buckets.items()
            if refill(state, now_ms).tokens >= state.burst
        ]
        for key in idle:
            del self._buckets[key]
        if idle:
            self.logger.debug("Evicted idle buckets", count=len(idle))
        return len(idle)

    def __len__(self) -> int:
        return len(self._buckets)
