"""
Rate limiting package.

Two interchangeable strategies behind ``RateLimiter.consume``: an
in-process token bucket and a store-backed fixed window. Callers pick
one through configuration via ``create_rate_limiter``.
"""

from shared.config import BaseConfig
from ..store.base import BucketStore
from .base import RateLimiter, RateLimitOptions, RateLimitResult
from .fixed_window import FixedWindowRateLimiter
from .token_bucket import TokenBucketRateLimiter

__all__ = [
    "RateLimiter",
    "RateLimitOptions",
    "RateLimitResult",
    "FixedWindowRateLimiter",
    "TokenBucketRateLimiter",
    "create_rate_limiter",
]


def create_rate_limiter(config: BaseConfig, store: BucketStore) -> RateLimiter:
    """Build the configured rate limiter backend."""
    default_options = RateLimitOptions(
        limit=config.rate_limit_default_limit,
        window_ms=config.rate_limit_default_window_ms,
        burst=config.rate_limit_default_burst,
    )

    if config.rate_limit_backend == "token_bucket":
        return TokenBucketRateLimiter(default_options, max_buckets=config.rate_limit_max_buckets)
    if config.rate_limit_backend == "fixed_window":
        return FixedWindowRateLimiter(store, default_options)
    raise ValueError(f"Unknown rate limit backend: {config.rate_limit_backend}")
