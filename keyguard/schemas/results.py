"""Pydantic schemas for guard outcomes.

Rejections are values, not exceptions: a guard that short-circuits returns a
Rejection so callers can tell "try again later" apart from a genuine failure
raised by the operation itself.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from keyguard.core.errors import AppError, OperationInProgressAppError, RateLimitAppError


class RejectionCode(str, Enum):
    """Machine-readable reasons a guard refused to run an operation."""

    OPERATION_IN_PROGRESS = "operation_in_progress"
    TOO_MANY_REQUESTS = "too_many_requests"


class Result(BaseModel):
    """Uniform result envelope (HTTP-like status code, message, payload)."""

    code: int = Field(..., description="HTTP-like status code (200 on success).")
    msg: str = Field("", description="Human-readable message.")
    data: Any = Field(default=None, description="Payload returned by the operation.")

    @classmethod
    def success(cls, data: Any = None, msg: str = "OK") -> "Result":
        return cls(code=200, msg=msg, data=data)

    @classmethod
    def error(cls, msg: str = "Bad Request", code: int = 400) -> "Result":
        return cls(code=code, msg=msg)


class Rejection(BaseModel):
    """A guard refused to invoke an operation."""

    code: RejectionCode = Field(..., description="Why the operation was refused.")
    message: str = Field(..., description="Human-readable explanation.")
    operation: str = Field(..., description="Operation name (summary or operation id).")
    retry_after_seconds: int | None = Field(
        default=None,
        description="Seconds to wait before retrying (rate limit rejections only).",
    )
    keys: list[str] = Field(
        default_factory=list,
        description="Resolved lock key components (lock rejections only).",
    )

    @property
    def status_code(self) -> int:
        if self.code is RejectionCode.TOO_MANY_REQUESTS:
            return 429
        return 409

    def to_error(self) -> AppError:
        """Convert to the matching AppError subclass."""
        details: dict[str, Any] = {"operation": self.operation}
        if self.retry_after_seconds is not None:
            details["retry_after"] = self.retry_after_seconds
        if self.code is RejectionCode.TOO_MANY_REQUESTS:
            return RateLimitAppError(code=self.code.value, message=self.message, details=details)
        return OperationInProgressAppError(code=self.code.value, message=self.message, details=details)

    def to_result(self) -> Result:
        """Convert to the uniform result envelope."""
        return Result.error(msg=self.message, code=self.status_code)
