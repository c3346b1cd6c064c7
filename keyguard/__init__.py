"""keyguard: distributed locks and rate limits on a shared key-value store."""

from keyguard.core.context import CallerContext
from keyguard.core.errors import (
    AppError,
    OperationInProgressAppError,
    RateLimitAppError,
    StoreAppError,
    ValidationAppError,
)
from keyguard.guards.base import raise_rejection, result_rejection, return_rejection
from keyguard.guards.lock import LeaseRenewer, LockGuard, distributed_lock
from keyguard.guards.rate_limit import RateLimitGuard, rate_limit
from keyguard.schemas.results import Rejection, RejectionCode, Result
from keyguard.services.lock_service import DistributedLockService
from keyguard.services.rate_limiter import FixedWindowRateLimiter, RateLimitResult

__version__ = "0.1.0"

__all__ = [
    "AppError",
    "CallerContext",
    "DistributedLockService",
    "FixedWindowRateLimiter",
    "LeaseRenewer",
    "LockGuard",
    "OperationInProgressAppError",
    "RateLimitAppError",
    "RateLimitGuard",
    "RateLimitResult",
    "Rejection",
    "RejectionCode",
    "Result",
    "StoreAppError",
    "ValidationAppError",
    "distributed_lock",
    "raise_rejection",
    "rate_limit",
    "result_rejection",
    "return_rejection",
]
