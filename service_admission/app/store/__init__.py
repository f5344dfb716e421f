"""
Shared key-value store used by the admission gates.

All gates talk to the store through the narrow ``BucketStore`` interface
so a Redis deployment and the in-memory store are interchangeable.
"""

from .base import BucketStore
from .memory_store import InMemoryBucketStore
from .redis_store import RedisBucketStore

__all__ = ["BucketStore", "InMemoryBucketStore", "RedisBucketStore"]
