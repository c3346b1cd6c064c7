"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
It pins APP_ENV to testing before keyguard settings are imported.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest  # noqa: E402

from keyguard.adapters.store.factory import set_store  # noqa: E402
from keyguard.adapters.store.in_memory import InMemoryKeyValueStore  # noqa: E402
from keyguard.services.lock_service import DistributedLockService  # noqa: E402
from keyguard.services.rate_limiter import FixedWindowRateLimiter  # noqa: E402


class FakeClock:
    """Deterministic clock used to test expiration logic."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryKeyValueStore:
    """In-memory store driven by the fake clock."""
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def real_time_store() -> InMemoryKeyValueStore:
    """In-memory store on the monotonic clock (for renewal timing tests)."""
    return InMemoryKeyValueStore()


@pytest.fixture
def lock_service(store: InMemoryKeyValueStore) -> DistributedLockService:
    return DistributedLockService(store, key_prefix="lock:", lease_seconds=30)


@pytest.fixture
def rate_limiter(store: InMemoryKeyValueStore) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(store, key_prefix="rate:")


@pytest.fixture(autouse=True)
def isolated_global_store():
    """Give every test a fresh process-wide store."""
    set_store(InMemoryKeyValueStore())
    yield
    set_store(None)
