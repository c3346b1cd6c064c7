"""Library-level exception types.

This module defines the errors raised across adapters, services and guards,
enabling consistent handling, logging and (optionally) HTTP responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    code: str
    message: str
    hint: str
    key: str
    operation: str
    backend: str
    error_type: str
    retry_after: float
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for library failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class StoreAppError(AppError):
    """Raised when the shared key-value store cannot be reached or errors."""


class OperationInProgressAppError(AppError):
    """Raised (on request) when a guarded operation is already running elsewhere."""


class RateLimitAppError(AppError):
    """Raised (on request) when a caller exceeded the rate limit of an operation."""
