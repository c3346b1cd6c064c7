"""In-memory key-value store.

Notes:
- Per-process only: locks and counters are not shared between workers.
- Thread-safe: one re-entrant lock serializes every operation, which is what
  makes `eval_atomic` indivisible (the same guarantee Redis gets from running
  commands on a single thread).
- Expiry is lazy: expired entries are purged when touched.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from keyguard.adapters.store.base import (
    TTL_ABSENT,
    TTL_NO_EXPIRY,
    AbstractKeyValueStore,
    AtomicScript,
    validate_ttl,
)


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class _LockedView:
    """ScriptContext over a store whose lock is already held."""

    def __init__(self, store: "InMemoryKeyValueStore") -> None:
        self._store = store

    def get(self, key: str) -> str | None:
        entry = self._store._live_entry(key)
        return entry.value if entry else None

    def incr(self, key: str, amount: int = 1) -> int:
        # Like Redis INCRBY: a missing key starts at 0 with no expiry, an
        # existing key keeps its expiry
        entry = self._store._live_entry(key)
        if entry is None:
            entry = _Entry(value="0", expires_at=None)
            self._store._entries[key] = entry
        entry.value = str(int(entry.value) + amount)
        return int(entry.value)

    def delete(self, key: str) -> bool:
        return self._store._delete_locked(key)

    def expire(self, key: str, ttl_seconds: float) -> bool:
        return self._store._expire_locked(key, ttl_seconds)

    def get_ttl(self, key: str) -> float:
        return self._store._ttl_locked(key)


class InMemoryKeyValueStore(AbstractKeyValueStore):
    """Single-process store with TTL support and atomic script execution.

    Important:
        This store is per-process only. Run the redis backend whenever more
        than one worker must share locks and counters.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the store.

        Args:
            clock: Monotonic time source in seconds (injectable for tests).
        """
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: dict[str, _Entry] = {}

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"InMemoryKeyValueStore(size={len(self._entries)})"

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        validate_ttl(ttl_seconds)
        with self._lock:
            if self._live_entry(key) is not None:
                return False
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._delete_locked(key)

    def expire(self, key: str, ttl_seconds: float) -> bool:
        validate_ttl(ttl_seconds)
        with self._lock:
            return self._expire_locked(key, ttl_seconds)

    def get_ttl(self, key: str) -> float:
        with self._lock:
            return self._ttl_locked(key)

    def eval_atomic(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        str_args = [str(arg) for arg in args]
        with self._lock:
            return script.local(_LockedView(self), list(keys), str_args)

    def clear(self) -> None:
        """Remove every entry."""

        with self._lock:
            self._entries.clear()

    def _live_entry(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def _delete_locked(self, key: str) -> bool:
        if self._live_entry(key) is None:
            return False
        del self._entries[key]
        return True

    def _expire_locked(self, key: str, ttl_seconds: float) -> bool:
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + ttl_seconds
        return True

    def _ttl_locked(self, key: str) -> float:
        entry = self._live_entry(key)
        if entry is None:
            return TTL_ABSENT
        if entry.expires_at is None:
            return TTL_NO_EXPIRY
        return entry.expires_at - self._clock()
