"""Key resolution strategies for guarded calls.

A key resolver maps (operation id, call arguments) to the key components of a
lock or counter. Resolvers are plain callables, so callers can inject any
strategy; `from_arguments` covers the common case of reading named arguments
or dotted attribute paths on them (e.g. "order.id").
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Sequence

from keyguard.core.errors import ValidationAppError

KeyResolver = Callable[[str, Mapping[str, Any]], Sequence[Any]]
TokenResolver = Callable[[str, Mapping[str, Any]], Any]

_MISSING = object()


def resolve_path(arguments: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path against call arguments.

    The first segment names an argument; later segments are looked up as
    mapping items first, then attributes.

    Raises:
        ValidationAppError: If the argument or an intermediate segment is missing.
    """
    head, *rest = path.split(".")
    value = arguments.get(head, _MISSING)
    if value is _MISSING:
        raise ValidationAppError(
            code="key_path_unresolvable",
            message=f"Argument '{head}' not found for key path '{path}'",
            details={"hint": "Key paths must start with a parameter name of the guarded function"},
        )

    for segment in rest:
        if value is None:
            return None
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
            continue
        value = getattr(value, segment, _MISSING)
        if value is _MISSING:
            raise ValidationAppError(
                code="key_path_unresolvable",
                message=f"Segment '{segment}' not found for key path '{path}'",
            )
    return value


def from_arguments(*paths: str) -> KeyResolver:
    """Build a resolver returning the values at the given argument paths."""
    if not paths:
        raise ValidationAppError(code="key_paths_empty", message="At least one key path is required")

    def _resolve(operation_id: str, arguments: Mapping[str, Any]) -> list[Any]:
        return [resolve_path(arguments, path) for path in paths]

    return _resolve


def token_from_argument(path: str) -> TokenResolver:
    """Build a token resolver reading an ownership token from the call arguments."""

    def _resolve(operation_id: str, arguments: Mapping[str, Any]) -> Any:
        return resolve_path(arguments, path)

    return _resolve


def normalize_lock_key(operation_id: str, components: Sequence[Any]) -> tuple[str, str]:
    """Turn resolved key components into (resource_id, sub_resource_id).

    Extra components beyond the second are joined onto the sub-resource id.

    Raises:
        ValidationAppError: If no component was resolved or one is None/blank.
    """
    if not components:
        raise ValidationAppError(
            code="lock_key_empty",
            message="Lock key must have at least one component",
            details={"operation": operation_id},
        )

    values: list[str] = []
    for index, component in enumerate(components):
        text = "" if component is None else str(component)
        if not text.strip():
            raise ValidationAppError(
                code="lock_key_empty",
                message="Lock key component must not be empty",
                details={"operation": operation_id, "context": {"index": index}},
            )
        values.append(text)

    return values[0], ":".join(values[1:])
