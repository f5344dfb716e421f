"""
Rate limiter interface and result types.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RateLimitOptions:
    """Admission budget for one key: ``limit`` units per ``window_ms``."""

    limit: int
    window_ms: int
    burst: Optional[int] = None

    def __post_init__(self):
        if self.limit <= 0:
            raise ValueError("limit must be positive")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")

    @property
    def capacity(self) -> int:
        return max(1, self.burst if self.burst is not None else self.limit)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one ``consume`` call.

    ``reset_at`` is an epoch timestamp in milliseconds. ``store_available``
    is False when the decision is a fail-open default rather than a
    real count.
    """

    ok: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_ms: int
    store_available: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def headers(self) -> Dict[str, str]:
        """Standard RateLimit-* response headers."""
        headers = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(math.ceil(self.reset_at / 1000)),
        }
        if not self.ok:
            headers["Retry-After"] = str(max(1, math.ceil(self.retry_after_ms / 1000)))
        return headers


class RateLimiter(ABC):
    """A strategy that admits or rejects one unit of work for a key.

    ``consume`` never waits on rate policy; it only suspends on store I/O.
    """

    def __init__(self, default_options: RateLimitOptions):
        self.default_options = default_options

    @abstractmethod
    async def consume(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        """Spend one unit for ``key``."""

    @abstractmethod
    async def status(self, key: str, opts: Optional[RateLimitOptions] = None) -> RateLimitResult:
        """Report the current budget for ``key`` without spending."""

    @abstractmethod
    async def reset(self, key: str) -> bool:
        """Forget all state for ``key``."""

    async def start(self):
        """Start backing resources. No-op by default."""

    async def stop(self):
        """Release backing resources. No-op by default."""
