"""Rate limit guard.

Wraps an operation with an admin bypass check, a fixed-window limiter check
and a rejection carrying the remaining wait time.

The caller is passed explicitly: either as a `CallerContext` argument of the
guarded function (parameter named `caller` by default) or directly to
`RateLimitGuard.execute`. Calls without a caller context are counted under
the anonymous identity.

Usage:
    @rate_limit(limit=3, window_seconds=60, summary="Checkout")
    def checkout(cart_id: str, caller: CallerContext) -> Order:
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from keyguard.adapters.store.factory import get_store
from keyguard.core.config import RateLimitSettings, settings
from keyguard.core.context import CallerContext
from keyguard.core.errors import ValidationAppError
from keyguard.core.invocation import Invocation
from keyguard.core.logging import hash_identity
from keyguard.guards.base import RejectionHandler, return_rejection, run_blocking, wrap
from keyguard.schemas.results import Rejection, RejectionCode
from keyguard.services.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger(__name__)


def too_many_requests_message(operation: str, wait_seconds: int) -> str:
    return f"Operation '{operation}': too many requests, retry in {wait_seconds} seconds"


class RateLimitGuard:
    """Per-caller, per-operation fixed-window limit for an operation."""

    def __init__(
        self,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        limit: int | None = None,
        window_seconds: int | None = None,
        operation_key: str | None = None,
        summary: str | None = None,
        caller_arg: str = "caller",
        on_reject: RejectionHandler = return_rejection,
        rate_limit_settings: RateLimitSettings | None = None,
    ) -> None:
        cfg = rate_limit_settings or settings.rate_limit
        self._rate_limiter = rate_limiter
        self._settings = cfg
        self._on_reject = on_reject
        self.limit = cfg.default_limit if limit is None else limit
        self.window_seconds = cfg.default_window_seconds if window_seconds is None else window_seconds
        self.operation_key = operation_key
        self.summary = summary
        self.caller_arg = caller_arg

        if self.limit < 1 or self.window_seconds < 1:
            raise ValidationAppError(
                code="invalid_rate_limit",
                message="limit and window_seconds must be >= 1",
                details={"context": {"limit": self.limit, "window_seconds": self.window_seconds}},
            )

    @property
    def rate_limiter(self) -> FixedWindowRateLimiter:
        if self._rate_limiter is None:
            self._rate_limiter = FixedWindowRateLimiter(get_store(), rate_limit_settings=self._settings)
        return self._rate_limiter

    def __call__(self, func):
        return wrap(self, func)

    def check(self, invocation: Invocation, caller: CallerContext | None = None) -> Rejection | None:
        """Decide whether the invocation may run.

        Returns:
            None when the call is admitted (or bypassed), else the Rejection.
        """
        caller = caller or self._caller_for(invocation)
        operation_key = self.operation_key or invocation.operation_id
        identity = caller.identity or self._settings.anonymous_identity

        if not self._settings.enabled:
            return None

        if caller.has_role(self._settings.admin_role):
            logger.info(
                "rate_limit.bypassed",
                extra={"operation": operation_key, "identity_hash": hash_identity(identity)},
            )
            return None

        outcome = self.rate_limiter.consume(identity, operation_key, self.limit, self.window_seconds)
        if outcome.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "operation": operation_key,
                    "identity_hash": hash_identity(identity),
                    "limit": self.limit,
                    "window_s": self.window_seconds,
                    "remaining": outcome.remaining,
                },
            )
            return None

        wait_seconds = outcome.retry_after_seconds or 0
        name = self.summary or operation_key
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "operation": operation_key,
                "identity_hash": hash_identity(identity),
                "limit": self.limit,
                "window_s": self.window_seconds,
                "retry_after_s": wait_seconds,
            },
        )
        return Rejection(
            code=RejectionCode.TOO_MANY_REQUESTS,
            message=too_many_requests_message(name, wait_seconds),
            operation=name,
            retry_after_seconds=wait_seconds,
        )

    def execute(self, invocation: Invocation, caller: CallerContext | None = None) -> Any:
        """Run a sync invocation if the caller is within its limit."""
        rejection = self.check(invocation, caller)
        if rejection is not None:
            return self._on_reject(rejection)
        return invocation.proceed()

    async def execute_async(self, invocation: Invocation, caller: CallerContext | None = None) -> Any:
        """Run an async invocation if the caller is within its limit."""
        rejection = await run_blocking(self.check, invocation, caller)
        if rejection is not None:
            return self._on_reject(rejection)
        return await invocation.proceed()

    def _caller_for(self, invocation: Invocation) -> CallerContext:
        candidate = invocation.arguments.get(self.caller_arg)
        if isinstance(candidate, CallerContext):
            return candidate
        return CallerContext()


def rate_limit(
    limit: int | None = None,
    window_seconds: int | None = None,
    *,
    summary: str | None = None,
    operation_key: str | None = None,
    caller_arg: str = "caller",
    on_reject: RejectionHandler = return_rejection,
    rate_limiter: FixedWindowRateLimiter | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator limiting how often each caller may run a function.

    Args:
        limit: Calls allowed per window (defaults to settings).
        window_seconds: Window size (defaults to settings).
        summary: Human-readable operation name used in rejections.
        operation_key: Counter key override (defaults to module.QualName).
        caller_arg: Name of the CallerContext parameter of the function.
        on_reject: What to do when the caller is over the limit.
        rate_limiter: Limiter override (defaults to the global store).

    Returns:
        Decorator producing a sync or async wrapper matching the function.
    """
    guard = RateLimitGuard(
        rate_limiter=rate_limiter,
        limit=limit,
        window_seconds=window_seconds,
        operation_key=operation_key,
        summary=summary,
        caller_arg=caller_arg,
        on_reject=on_reject,
    )

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        wrapped = wrap(guard, func)
        wrapped.rate_limit_guard = guard  # type: ignore[attr-defined]
        return wrapped

    return decorator
