"""
Dispatch Engine Record Stores
"""

from .base import ChangeSet, DispatchStore
from .memory import InMemoryDispatchStore
from .redis_store import RedisConnectionManager, RedisDispatchStore

__all__ = [
    "ChangeSet",
    "DispatchStore",
    "InMemoryDispatchStore",
    "RedisConnectionManager",
    "RedisDispatchStore",
]
