"""
In-process bucket store with Redis-compatible TTL semantics.

Used for single-instance deployments (``store_backend=memory``) and as the
store behind the test suite. Every operation completes without awaiting,
so each call is atomic with respect to other tasks on the event loop.
"""

import math
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from shared.logging import get_logger

_Value = Union[str, Set[str]]


class InMemoryBucketStore:
    """Dictionary-backed store with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[_Value, Optional[float]]] = {}
        self._lock = threading.Lock()
        self.logger = get_logger("admission.store.memory")

    async def start(self):
        self.logger.info("In-memory bucket store started")

    async def stop(self):
        with self._lock:
            self._data.clear()

    def _live(self, key: str) -> Optional[Tuple[_Value, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _set_members(self, key: str) -> Set[str]:
        entry = self._live(key)
        if entry is None:
            return set()
        if not isinstance(entry[0], set):
            raise TypeError(f"Key {key} does not hold a set")
        return entry[0]

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            if isinstance(entry[0], set):
                raise TypeError(f"Key {key} holds a set")
            return entry[0]

    async def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = (str(value), None)

    async def setex(self, key: str, seconds: int, value: str) -> None:
        with self._lock:
            self._data[key] = (str(value), self._clock() + seconds)

    async def incr(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                count, expires_at = 1, None
            else:
                count, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(count), expires_at)
            return count

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._clock() + seconds)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return math.ceil(entry[1] - self._clock())

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            entry = self._live(key)
            current = self._set_members(key)
            added = len(set(members) - current)
            expires_at = entry[1] if entry is not None else None
            self._data[key] = (current | set(members), expires_at)
            return added

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            current = self._set_members(key)
            removed = len(current & set(members))
            remaining = current - set(members)
            if remaining:
                self._data[key] = (remaining, entry[1])
            else:
                del self._data[key]
            return removed

    async def smembers(self, key: str) -> List[str]:
        with self._lock:
            return sorted(self._set_members(key))

    async def scard(self, key: str) -> int:
        with self._lock:
            return len(self._set_members(key))

    async def ping(self) -> bool:
        return True
