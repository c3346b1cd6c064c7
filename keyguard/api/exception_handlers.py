"""Exception handlers mapping guard errors to HTTP responses.

Design:
- OperationInProgressAppError -> 409 Conflict (duplicate submission)
- RateLimitAppError -> 429 Too Many Requests with Retry-After
- StoreAppError -> 503 Service Unavailable (lock state unknown)
- Other AppError -> 400 Bad Request
- Unexpected Exception -> generic 500 (safety net)
- All responses include request_id for tracing
"""

from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from keyguard.core.errors import (
    AppError,
    OperationInProgressAppError,
    RateLimitAppError,
    StoreAppError,
)
from keyguard.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, OperationInProgressAppError):
        return 409
    if isinstance(exc, RateLimitAppError):
        return 429
    if isinstance(exc, StoreAppError):
        return 503
    return 400


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle library errors with a consistent JSON format.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with appropriate status code and error details.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }
    if exc.details:
        error_content["details"] = exc.details

    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitAppError) and exc.details and "retry_after" in exc.details:
        headers["Retry-After"] = str(int(exc.details["retry_after"]))

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
        headers=headers or None,
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (no implementation details leaked)."""
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Register all exception handlers with a FastAPI app.

    Example:
        >>> from fastapi import FastAPI
        >>> app = FastAPI()
        >>> setup_exception_handlers(app)
    """
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
