"""Redis key-value store adapter.

Uses the official redis-py client. Atomic scripts are registered once per
adapter (EVALSHA with transparent reload on NOSCRIPT) and every Redis error
is translated into StoreAppError so callers never depend on redis-py types.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Sequence

import redis
from redis.commands.core import Script

from keyguard.adapters.store.base import (
    TTL_ABSENT,
    TTL_NO_EXPIRY,
    AbstractKeyValueStore,
    AtomicScript,
    to_milliseconds,
    validate_ttl,
)
from keyguard.core.errors import StoreAppError

logger = logging.getLogger(__name__)


class RedisKeyValueStore(AbstractKeyValueStore):
    """Store backed by a Redis server shared by every process instance."""

    def __init__(self, client: redis.Redis) -> None:
        """Initialize the adapter.

        Args:
            client: redis-py client created with decode_responses=True.
        """
        self._client = client
        self._scripts: dict[str, Script] = {}

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0) -> "RedisKeyValueStore":
        """Build an adapter from a Redis URL."""
        client = redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            decode_responses=True,
        )
        return cls(client)

    @contextmanager
    def _translate_errors(self, operation: str, key: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as exc:
            raise StoreAppError(
                code="store_unavailable",
                message=f"Redis {operation} failed: {exc}",
                details={
                    "key": key,
                    "backend": "redis",
                    "error_type": type(exc).__name__,
                },
            ) from exc

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        validate_ttl(ttl_seconds)
        with self._translate_errors("SET NX", key):
            return bool(self._client.set(key, value, nx=True, px=to_milliseconds(ttl_seconds)))

    def get(self, key: str) -> str | None:
        with self._translate_errors("GET", key):
            return self._client.get(key)

    def delete(self, key: str) -> bool:
        with self._translate_errors("DEL", key):
            return self._client.delete(key) > 0

    def expire(self, key: str, ttl_seconds: float) -> bool:
        validate_ttl(ttl_seconds)
        with self._translate_errors("PEXPIRE", key):
            return bool(self._client.pexpire(key, to_milliseconds(ttl_seconds)))

    def get_ttl(self, key: str) -> float:
        with self._translate_errors("PTTL", key):
            pttl = self._client.pttl(key)
        if pttl == -2:
            return TTL_ABSENT
        if pttl == -1:
            return TTL_NO_EXPIRY
        return pttl / 1000.0

    def eval_atomic(self, script: AtomicScript, keys: Sequence[str], args: Sequence[Any]) -> Any:
        registered = self._scripts.get(script.name)
        if registered is None:
            registered = self._client.register_script(script.lua)
            self._scripts[script.name] = registered
            logger.debug("store.script_registered", extra={"script": script.name})
        with self._translate_errors(f"EVALSHA {script.name}", keys[0] if keys else ""):
            return registered(keys=list(keys), args=[str(arg) for arg in args])
