"""Interception point for guarded calls.

An Invocation captures one call of a wrapped function: its stable operation
id, the raw positional/keyword arguments, the arguments bound to parameter
names (for key resolution) and a hook to proceed with the real call.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Callable, Mapping


def operation_id_for(func: Callable[..., Any]) -> str:
    """Return the stable operation id of a callable (module.QualName)."""
    return f"{func.__module__}.{func.__qualname__}"


@dataclass
class Invocation:
    """A single intercepted call."""

    func: Callable[..., Any]
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    operation_id: str = ""

    def __post_init__(self) -> None:
        if not self.operation_id:
            self.operation_id = operation_id_for(self.func)

    @cached_property
    def arguments(self) -> Mapping[str, Any]:
        """Call arguments keyed by parameter name, defaults applied."""
        try:
            bound = inspect.signature(self.func).bind_partial(*self.args, **self.kwargs)
        except (TypeError, ValueError):
            return dict(self.kwargs)
        bound.apply_defaults()
        return dict(bound.arguments)

    @property
    def is_coroutine(self) -> bool:
        return inspect.iscoroutinefunction(self.func)

    def proceed(self) -> Any:
        """Invoke the wrapped function (returns an awaitable for coroutines)."""
        return self.func(*self.args, **self.kwargs)
