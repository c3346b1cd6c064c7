"""Distributed lock guard.

Wraps an operation with acquire -> optional background renewal -> invoke ->
release. The guard is fail-fast: if another caller already holds the lease the
operation is not run and a Rejection is produced instead of waiting.

Usage:
    @distributed_lock("order_id")
    def process_order(order_id: str) -> Receipt:
        ...

    @distributed_lock("request.user_id", "request.product_id", token="request.request_id")
    async def purchase(request: PurchaseRequest) -> Receipt:
        ...
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from keyguard.adapters.store.factory import get_store
from keyguard.core.config import LockSettings, settings
from keyguard.core.errors import ValidationAppError
from keyguard.core.invocation import Invocation
from keyguard.core.keys import KeyResolver, TokenResolver, from_arguments, normalize_lock_key, token_from_argument
from keyguard.guards.base import RejectionHandler, return_rejection, run_blocking, wrap
from keyguard.schemas.results import Rejection, RejectionCode
from keyguard.services.lock_service import DistributedLockService

logger = logging.getLogger(__name__)

IN_PROGRESS_MESSAGE = "Operation is already in progress, do not submit it again"


class LeaseRenewer:
    """Periodically renews one lease on a daemon thread.

    The renewer belongs to a single guarded invocation. `cancel()` only signals
    the thread and returns immediately; an in-flight renewal may still finish,
    but renewal is compare-and-extend, so it can never re-create a released
    lease.
    """

    def __init__(
        self,
        renew: Callable[[], bool],
        interval_seconds: float,
        *,
        timeout_seconds: float | None = None,
        name: str = "lock-renewal",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._renew = renew
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.renewals = 0
        self.failures = 0

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def _run(self) -> None:
        deadline = None if self._timeout is None else self._clock() + self._timeout
        while not self._stop.wait(self._interval):
            if deadline is not None and self._clock() >= deadline:
                logger.warning(
                    "lock.renew_timeout",
                    extra={"renewer": self._thread.name, "timeout_s": self._timeout},
                )
                return
            try:
                renewed = self._renew()
            except Exception:
                self.failures += 1
                logger.exception("lock.renew_error", extra={"renewer": self._thread.name})
                continue
            if renewed:
                self.renewals += 1
            else:
                self.failures += 1


@dataclass
class _HeldLock:
    operation_id: str
    resource_id: str
    sub_resource_id: str
    token: str
    started: float
    renewer: LeaseRenewer | None = None

    @property
    def log_fields(self) -> dict[str, Any]:
        return {
            "operation": self.operation_id,
            "resource_id": self.resource_id,
            "sub_resource_id": self.sub_resource_id,
            "token": self.token,
        }


class LockGuard:
    """Fail-fast, at-most-one-concurrent-execution guard for an operation.

    Attributes:
        lease_seconds: Lease duration requested on acquire and renew.
        auto_renew: Whether a LeaseRenewer runs while the operation executes.
        renew_interval_seconds: Renewal period (strictly shorter than the lease).
        operation_timeout_seconds: Renewal stops after this long.
    """

    def __init__(
        self,
        keys: KeyResolver,
        *,
        lock_service: DistributedLockService | None = None,
        token: TokenResolver | None = None,
        lease_seconds: float | None = None,
        auto_renew: bool | None = None,
        renew_interval_seconds: float | None = None,
        operation_timeout_seconds: float | None = None,
        on_reject: RejectionHandler = return_rejection,
        lock_settings: LockSettings | None = None,
    ) -> None:
        cfg = lock_settings or settings.lock
        self._keys = keys
        self._token = token
        self._lock_service = lock_service
        self._lock_settings = cfg
        self._on_reject = on_reject
        self.lease_seconds = cfg.lease_seconds if lease_seconds is None else lease_seconds
        self.auto_renew = cfg.auto_renew if auto_renew is None else auto_renew
        self.renew_interval_seconds = (
            cfg.renew_interval_seconds if renew_interval_seconds is None else renew_interval_seconds
        )
        self.operation_timeout_seconds = (
            cfg.operation_timeout_seconds if operation_timeout_seconds is None else operation_timeout_seconds
        )

        if self.lease_seconds <= 0:
            raise ValidationAppError(code="invalid_lock_config", message="lease_seconds must be > 0")
        if self.auto_renew and not 0 < self.renew_interval_seconds < self.lease_seconds:
            raise ValidationAppError(
                code="invalid_lock_config",
                message="renew_interval_seconds must be > 0 and shorter than lease_seconds",
                details={
                    "context": {
                        "lease_seconds": self.lease_seconds,
                        "renew_interval_seconds": self.renew_interval_seconds,
                    }
                },
            )

    @property
    def lock_service(self) -> DistributedLockService:
        # Resolved lazily so decorating at import time never opens a store connection
        if self._lock_service is None:
            self._lock_service = DistributedLockService(get_store(), lock_settings=self._lock_settings)
        return self._lock_service

    def __call__(self, func):
        return wrap(self, func)

    def execute(self, invocation: Invocation) -> Any:
        """Run a sync invocation under the lock."""
        held = self._acquire(invocation)
        if isinstance(held, Rejection):
            return self._on_reject(held)

        try:
            result = invocation.proceed()
        except BaseException as exc:
            self._release(held, error=exc)
            raise
        self._release(held)
        return result

    async def execute_async(self, invocation: Invocation) -> Any:
        """Run an async invocation under the lock.

        Store round trips run in a worker thread so the event loop keeps
        serving other tasks while acquire and release wait on the network.
        """
        acquiring = asyncio.ensure_future(asyncio.to_thread(self._acquire, invocation))
        try:
            held = await asyncio.shield(acquiring)
        except asyncio.CancelledError as exc:
            # The acquire may still succeed in its thread; never leave that lease behind
            held = await acquiring
            if isinstance(held, _HeldLock):
                await run_blocking(self._release, held, exc)
            raise
        if isinstance(held, Rejection):
            return self._on_reject(held)

        try:
            result = await invocation.proceed()
        except BaseException as exc:
            await run_blocking(self._release, held, exc)
            raise
        await run_blocking(self._release, held)
        return result

    def _resolve_token(self, invocation: Invocation) -> str:
        if self._token is None:
            return str(uuid.uuid4())

        value = self._token(invocation.operation_id, invocation.arguments)
        if value is None or not str(value).strip():
            logger.error(
                "lock.token_empty",
                extra={"operation": invocation.operation_id, "fallback": "uuid4"},
            )
            return str(uuid.uuid4())
        return str(value)

    def _acquire(self, invocation: Invocation) -> _HeldLock | Rejection:
        components = self._keys(invocation.operation_id, invocation.arguments)
        resource_id, sub_resource_id = normalize_lock_key(invocation.operation_id, components)
        token = self._resolve_token(invocation)
        service = self.lock_service

        logger.debug(
            "lock.acquiring",
            extra={
                "operation": invocation.operation_id,
                "resource_id": resource_id,
                "sub_resource_id": sub_resource_id,
                "lease_s": self.lease_seconds,
                "auto_renew": self.auto_renew,
                "renew_interval_s": self.renew_interval_seconds,
                "operation_timeout_s": self.operation_timeout_seconds,
            },
        )

        if not service.try_acquire(resource_id, sub_resource_id, token, lease_seconds=self.lease_seconds):
            logger.warning(
                "lock.rejected",
                extra={
                    "operation": invocation.operation_id,
                    "resource_id": resource_id,
                    "sub_resource_id": sub_resource_id,
                },
            )
            return Rejection(
                code=RejectionCode.OPERATION_IN_PROGRESS,
                message=IN_PROGRESS_MESSAGE,
                operation=invocation.operation_id,
                keys=[resource_id, sub_resource_id] if sub_resource_id else [resource_id],
            )

        held = _HeldLock(
            operation_id=invocation.operation_id,
            resource_id=resource_id,
            sub_resource_id=sub_resource_id,
            token=token,
            started=time.perf_counter(),
        )
        logger.info("lock.acquired", extra=held.log_fields)

        if self.auto_renew:
            held.renewer = LeaseRenewer(
                lambda: service.renew(resource_id, sub_resource_id, token, lease_seconds=self.lease_seconds),
                self.renew_interval_seconds,
                timeout_seconds=self.operation_timeout_seconds,
                name=f"lock-renewal-{token}",
            )
            held.renewer.start()
        return held

    def _release(self, held: _HeldLock, error: BaseException | None = None) -> None:
        if held.renewer is not None:
            held.renewer.cancel()

        released = self.lock_service.release(held.resource_id, held.sub_resource_id, held.token)
        hold_seconds = time.perf_counter() - held.started
        fields = {**held.log_fields, "released": released, "hold_s": round(hold_seconds, 3)}
        if error is None:
            logger.info("lock.released", extra=fields)
        else:
            logger.info("lock.released_on_error", extra={**fields, "error_type": type(error).__name__})


def distributed_lock(
    *key_paths: str,
    keys: KeyResolver | None = None,
    token: str | TokenResolver | None = None,
    lease_seconds: float | None = None,
    auto_renew: bool | None = None,
    renew_interval_seconds: float | None = None,
    operation_timeout_seconds: float | None = None,
    on_reject: RejectionHandler = return_rejection,
    lock_service: DistributedLockService | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator guarding a function with a distributed lock.

    Args:
        *key_paths: Argument paths forming the lock key (resource id first,
            optional sub-resource id second).
        keys: Custom key resolver; replaces key_paths.
        token: Argument path or resolver for the ownership token; a random
            UUID is used when omitted or when it resolves to nothing.
        lease_seconds: Lease override.
        auto_renew: Auto-renewal override.
        renew_interval_seconds: Renewal interval override.
        operation_timeout_seconds: Stop renewing after this long.
        on_reject: What to do when the lock is already held.
        lock_service: Service override (defaults to the global store).

    Returns:
        Decorator producing a sync or async wrapper matching the function.
    """
    if keys is None:
        keys = from_arguments(*key_paths)
    token_resolver = token_from_argument(token) if isinstance(token, str) else token

    guard = LockGuard(
        keys,
        lock_service=lock_service,
        token=token_resolver,
        lease_seconds=lease_seconds,
        auto_renew=auto_renew,
        renew_interval_seconds=renew_interval_seconds,
        operation_timeout_seconds=operation_timeout_seconds,
        on_reject=on_reject,
    )

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        wrapped = wrap(guard, func)
        wrapped.lock_guard = guard  # type: ignore[attr-defined]
        return wrapped

    return decorator
