"""
Bucket store interface.
"""

from typing import List, Optional, Protocol, runtime_checkable


@runtime_checkable
class BucketStore(Protocol):
    """Narrow async key-value interface with per-key expiry.

    Implementations raise ``shared.errors.StoreUnavailableError`` when the
    backing store cannot be reached. ``ttl`` follows Redis semantics:
    -2 when the key is absent, -1 when it has no expiry.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def setex(self, key: str, seconds: int, value: str) -> None: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> List[str]: ...

    async def scard(self, key: str) -> int: ...

    async def ping(self) -> bool: ...
