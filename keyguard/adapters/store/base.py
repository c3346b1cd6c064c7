"""Key-value store interfaces.

Services depend on this abstraction (not on Redis directly) so the same lock
and rate limit protocols run against a real shared store in production and an
in-process store in tests or single-worker deployments.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Protocol, Sequence

from keyguard.core.errors import ValidationAppError

# Redis conventions for TTL queries
TTL_NO_EXPIRY = -1
TTL_ABSENT = -2


class ScriptContext(Protocol):
    """Store view handed to the Python rendition of an atomic script.

    Calls made through it are already serialized by the store, so a script
    body may read and write freely without further coordination.
    """

    def get(self, key: str) -> str | None: ...

    def incr(self, key: str, amount: int = 1) -> int: ...

    def delete(self, key: str) -> bool: ...

    def expire(self, key: str, ttl_seconds: float) -> bool: ...

    def get_ttl(self, key: str) -> float: ...


@dataclass(frozen=True)
class AtomicScript:
    """A read-check-write sequence the store executes indivisibly.

    Attributes:
        name: Short name used in logs and errors.
        lua: Lua source run server-side by Redis (KEYS/ARGV convention).
        local: Equivalent Python routine run by in-process stores.
    """

    name: str
    lua: str
    local: Callable[[ScriptContext, Sequence[str], Sequence[str]], Any]


class AbstractKeyValueStore(ABC):
    """Interface for the shared store backing locks and rate limit counters.

    TTLs are expressed in seconds (int or float).
    """

    @abstractmethod
    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Create key with value and TTL only if it does not exist.

        Returns:
            True if this call created the key.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def expire(self, key: str, ttl_seconds: float) -> bool:
        """Reset the TTL of an existing key. Returns False if the key is absent."""
        raise NotImplementedError

    @abstractmethod
    def get_ttl(self, key: str) -> float:
        """Return remaining seconds, TTL_NO_EXPIRY or TTL_ABSENT."""
        raise NotImplementedError

    @abstractmethod
    def eval_atomic(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        """Execute script as one indivisible step.

        Args:
            script: Script to run.
            keys: Keys the script touches (KEYS).
            args: Extra arguments (ARGV); converted to strings.

        Returns:
            Whatever the script returns.
        """
        raise NotImplementedError


def to_milliseconds(ttl_seconds: float) -> int:
    """Convert a TTL in seconds to whole milliseconds (at least 1)."""
    return max(1, int(round(ttl_seconds * 1000)))


def validate_ttl(ttl_seconds: float) -> None:
    """Reject non-positive TTLs before they reach the store."""
    if ttl_seconds <= 0:
        raise ValidationAppError(
            code="invalid_ttl",
            message="TTL must be a positive number of seconds",
            details={"context": {"ttl_seconds": ttl_seconds}},
        )
