"""Distributed lock service.

Owns the lease protocol for a named resource on the shared store:

- acquire: a single SET-if-absent with TTL; exactly one concurrent caller wins.
- renew: compare-and-extend script; only the token owner can extend.
- release: compare-and-delete script; only the token owner can delete.

Renew and release run as atomic scripts so a lease that expires and is
re-acquired by another token between a read and a write can never be
extended or deleted by the previous owner.
"""

from __future__ import annotations

import logging
from typing import Sequence

from keyguard.adapters.store.base import (
    AbstractKeyValueStore,
    AtomicScript,
    ScriptContext,
    to_milliseconds,
    validate_ttl,
)
from keyguard.core.config import LockSettings, settings
from keyguard.core.errors import StoreAppError

logger = logging.getLogger(__name__)


_COMPARE_AND_EXTEND_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

_COMPARE_AND_DELETE_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


def _compare_and_extend(store: ScriptContext, keys: Sequence[str], args: Sequence[str]) -> int:
    key = keys[0]
    token, ttl_ms = args
    if store.get(key) != token:
        return 0
    return int(store.expire(key, int(ttl_ms) / 1000.0))


def _compare_and_delete(store: ScriptContext, keys: Sequence[str], args: Sequence[str]) -> int:
    key = keys[0]
    if store.get(key) != args[0]:
        return 0
    return int(store.delete(key))


COMPARE_AND_EXTEND = AtomicScript(
    name="lock_compare_and_extend",
    lua=_COMPARE_AND_EXTEND_LUA,
    local=_compare_and_extend,
)

COMPARE_AND_DELETE = AtomicScript(
    name="lock_compare_and_delete",
    lua=_COMPARE_AND_DELETE_LUA,
    local=_compare_and_delete,
)


class DistributedLockService:
    """Lease acquisition, renewal and release for resource keys.

    Attributes:
        key_prefix: Namespace prepended to every lock key.
        lease_seconds: Default lease duration.
    """

    def __init__(
        self,
        store: AbstractKeyValueStore,
        *,
        lock_settings: LockSettings | None = None,
        key_prefix: str | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        cfg = lock_settings or settings.lock
        self._store = store
        self.key_prefix = cfg.key_prefix if key_prefix is None else key_prefix
        self.lease_seconds = cfg.lease_seconds if lease_seconds is None else lease_seconds

    def _lease(self, lease_seconds: float | None) -> float:
        if lease_seconds is None:
            return self.lease_seconds
        validate_ttl(lease_seconds)
        return lease_seconds

    def build_key(self, resource_id: str, sub_resource_id: str = "") -> str:
        """Build the deterministic lock key for a resource."""
        return f"{self.key_prefix}{resource_id}:{sub_resource_id}"

    def try_acquire(
        self,
        resource_id: str,
        sub_resource_id: str,
        token: str,
        *,
        lease_seconds: float | None = None,
    ) -> bool:
        """Try to create the lease for a resource.

        Args:
            resource_id: Primary resource identifier.
            sub_resource_id: Secondary identifier (may be empty).
            token: Ownership token unique to this acquisition attempt.
            lease_seconds: Lease override; defaults to the service lease.

        Returns:
            True if this call created the lease, False if another token holds it.

        Raises:
            StoreAppError: If the store cannot be reached. The lock state is
                unknown, so the caller must not proceed.
            ValidationAppError: If lease_seconds is not positive.
        """
        key = self.build_key(resource_id, sub_resource_id)
        lease = self._lease(lease_seconds)
        acquired = self._store.set_if_absent_with_ttl(key, token, lease)
        logger.debug(
            "lock.try_acquire",
            extra={"lock_key": key, "token": token, "acquired": acquired, "lease_s": lease},
        )
        return acquired

    def renew(
        self,
        resource_id: str,
        sub_resource_id: str,
        token: str,
        *,
        lease_seconds: float | None = None,
    ) -> bool:
        """Reset the lease TTL if token still owns it.

        Returns:
            True if the lease was extended; False if ownership was lost or the
            store could not confirm it.

        Raises:
            ValidationAppError: If lease_seconds is not positive.
        """
        key = self.build_key(resource_id, sub_resource_id)
        lease = self._lease(lease_seconds)
        try:
            renewed = bool(
                self._store.eval_atomic(COMPARE_AND_EXTEND, [key], [token, to_milliseconds(lease)])
            )
        except StoreAppError:
            logger.exception("lock.renew_error", extra={"lock_key": key, "token": token})
            return False

        if renewed:
            logger.debug("lock.renewed", extra={"lock_key": key, "token": token, "lease_s": lease})
        else:
            logger.warning(
                "lock.renew_rejected",
                extra={"lock_key": key, "token": token, "reason": "not_owner_or_expired"},
            )
        return renewed

    def release(self, resource_id: str, sub_resource_id: str, token: str) -> bool:
        """Delete the lease if token owns it. Never raises.

        Returns:
            True if the lease was deleted by this call.
        """
        key = self.build_key(resource_id, sub_resource_id)
        try:
            released = bool(self._store.eval_atomic(COMPARE_AND_DELETE, [key], [token]))
        except Exception:
            logger.exception("lock.release_error", extra={"lock_key": key, "token": token})
            return False

        if released:
            logger.debug("lock.released", extra={"lock_key": key, "token": token})
        else:
            logger.warning(
                "lock.release_mismatch",
                extra={"lock_key": key, "token": token, "reason": "not_owner_or_expired"},
            )
        return released

    def current_owner(self, resource_id: str, sub_resource_id: str = "") -> str | None:
        """Return the token currently holding the lease, if any."""
        return self._store.get(self.build_key(resource_id, sub_resource_id))
