"""Shared plumbing for guards: rejection handlers and function wrapping."""

from __future__ import annotations

import asyncio
import functools
import inspect
from typing import Any, Awaitable, Callable, NoReturn, Protocol, TypeVar

from keyguard.core.invocation import Invocation, operation_id_for
from keyguard.schemas.results import Rejection

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

RejectionHandler = Callable[[Rejection], Any]


def return_rejection(rejection: Rejection) -> Rejection:
    """Default handler: hand the rejection back to the caller as the result."""
    return rejection


def raise_rejection(rejection: Rejection) -> NoReturn:
    """Handler raising OperationInProgressAppError / RateLimitAppError."""
    raise rejection.to_error()


def result_rejection(rejection: Rejection) -> Any:
    """Handler returning the uniform Result envelope."""
    return rejection.to_result()


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking store call in a worker thread.

    Cancelling the awaiting task does not abandon the call: it is awaited to
    completion before the cancellation propagates.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await task
        raise


class Guard(Protocol):
    def execute(self, invocation: Invocation) -> Any: ...

    def execute_async(self, invocation: Invocation) -> Awaitable[Any]: ...


def wrap(guard: Guard, func: F, operation_id: str | None = None) -> F:
    """Wrap a sync or async callable so every call goes through guard."""
    op_id = operation_id or operation_id_for(func)

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            return await guard.execute_async(Invocation(func, args, kwargs, op_id))

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return guard.execute(Invocation(func, args, kwargs, op_id))

    return wrapper  # type: ignore[return-value]
