"""Fixed-window rate limiter on the shared store.

Notes:
- One counter per (caller identity, operation) pair.
- Check and increment happen in a single atomic script, so N concurrent
  callers racing on a fresh key admit exactly min(N, limit) calls.
- The window expiry is set only by the increment that creates the key and
  is never extended afterwards; the window resets when the key expires.
- Store failures fail closed: the call is denied and the error is logged.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from keyguard.adapters.store.base import AbstractKeyValueStore, AtomicScript, ScriptContext
from keyguard.core.config import RateLimitSettings, settings
from keyguard.core.errors import ValidationAppError
from keyguard.core.logging import hash_identity

logger = logging.getLogger(__name__)


_FIXED_WINDOW_LUA = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local current = tonumber(redis.call('get', key) or '0')
if current + 1 > limit then
  return {0, current, redis.call('pttl', key)}
end
local count = redis.call('incrby', key, 1)
if count == 1 then
  redis.call('expire', key, window)
end
return {1, count, redis.call('pttl', key)}
"""


def _fixed_window(store: ScriptContext, keys: Sequence[str], args: Sequence[str]) -> list[int]:
    key = keys[0]
    limit, window = int(args[0]), int(args[1])
    current = int(store.get(key) or "0")
    if current + 1 > limit:
        return [0, current, _pttl(store, key)]
    count = store.incr(key, 1)
    if count == 1:
        store.expire(key, window)
    return [1, count, _pttl(store, key)]


def _pttl(store: ScriptContext, key: str) -> int:
    ttl = store.get_ttl(key)
    return int(ttl) if ttl < 0 else int(ttl * 1000)


FIXED_WINDOW = AtomicScript(
    name="rate_limit_fixed_window",
    lua=_FIXED_WINDOW_LUA,
    local=_fixed_window,
)


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit consume operation.

    Attributes:
        allowed: Whether the call is allowed to proceed.
        limit: Max calls per window.
        remaining: Remaining calls in the current window (0 when blocked).
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None


class FixedWindowRateLimiter:
    """Rate limiter counting calls per caller and operation in fixed windows."""

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        rate_limit_settings: RateLimitSettings | None = None,
        key_prefix: str | None = None,
    ) -> None:
        cfg = rate_limit_settings or settings.rate_limit
        self._store = store
        self.key_prefix = cfg.key_prefix if key_prefix is None else key_prefix

    def build_key(self, identity: str, operation_key: str) -> str:
        """Build the counter key for a caller and operation."""
        return f"{self.key_prefix}{identity}:{operation_key}"

    def consume(
        self,
        identity: str,
        operation_key: str,
        limit: int,
        window_seconds: int,
    ) -> RateLimitResult:
        """Consume one unit of the caller's budget for an operation.

        Args:
            identity: Caller identity scoping the counter.
            operation_key: Stable operation identifier.
            limit: Maximum calls allowed per window.
            window_seconds: Window size in seconds.

        Returns:
            RateLimitResult describing whether the call was admitted. A store
            failure yields a denied result.

        Raises:
            ValidationAppError: If limit or window_seconds are invalid.
        """
        if limit < 1:
            raise ValidationAppError(code="invalid_rate_limit", message="limit must be >= 1")
        if window_seconds < 1:
            raise ValidationAppError(code="invalid_rate_limit", message="window_seconds must be >= 1")

        key = self.build_key(identity, operation_key)
        try:
            allowed, count, pttl = self._store.eval_atomic(FIXED_WINDOW, [key], [limit, window_seconds])
        except Exception:
            logger.exception(
                "rate_limit.store_error",
                extra={"identity_hash": hash_identity(identity), "operation": operation_key},
            )
            return RateLimitResult(allowed=False, limit=limit, remaining=0, retry_after_seconds=None)

        remaining = max(0, limit - int(count))
        if int(allowed) == 1:
            return RateLimitResult(allowed=True, limit=limit, remaining=remaining, retry_after_seconds=None)

        retry_after = max(0, math.ceil(int(pttl) / 1000)) if int(pttl) > 0 else 0
        return RateLimitResult(allowed=False, limit=limit, remaining=remaining, retry_after_seconds=retry_after)

    def is_allowed(self, identity: str, operation_key: str, limit: int, window_seconds: int) -> bool:
        """Return True if the call is admitted within the current window."""
        return self.consume(identity, operation_key, limit, window_seconds).allowed

    def remaining_wait_seconds(self, identity: str, operation_key: str) -> int:
        """Seconds until the caller's window for an operation resets.

        Returns 0 when the counter is absent, has no expiry, or the store
        cannot be reached.
        """
        key = self.build_key(identity, operation_key)
        try:
            ttl = self._store.get_ttl(key)
        except Exception:
            logger.exception(
                "rate_limit.store_error",
                extra={"identity_hash": hash_identity(identity), "operation": operation_key},
            )
            return 0
        if ttl <= 0:
            return 0
        return math.ceil(ttl)
