"""Key-value store adapters.

This package provides a small abstraction layer so locks and rate limits can
run against an in-process store during tests and single-worker deployments,
and against Redis wherever several processes must coordinate.
"""

from keyguard.adapters.store.base import (
    TTL_ABSENT,
    TTL_NO_EXPIRY,
    AbstractKeyValueStore,
    AtomicScript,
)
from keyguard.adapters.store.factory import create_store, get_store, set_store
from keyguard.adapters.store.in_memory import InMemoryKeyValueStore
from keyguard.adapters.store.redis_store import RedisKeyValueStore

__all__ = [
    "TTL_ABSENT",
    "TTL_NO_EXPIRY",
    "AbstractKeyValueStore",
    "AtomicScript",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "create_store",
    "get_store",
    "set_store",
]
