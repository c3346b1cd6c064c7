"""Tests for the distributed lock guard and lease renewer."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from unittest.mock import MagicMock

import pytest

from keyguard.adapters.store.base import AbstractKeyValueStore
from keyguard.adapters.store.in_memory import InMemoryKeyValueStore
from keyguard.core.config import LockSettings
from keyguard.core.errors import OperationInProgressAppError, StoreAppError, ValidationAppError
from keyguard.core.keys import from_arguments
from keyguard.guards.base import raise_rejection, result_rejection
from keyguard.guards.lock import LeaseRenewer, LockGuard, distributed_lock
from keyguard.schemas.results import Rejection, RejectionCode, Result
from keyguard.services.lock_service import DistributedLockService


@dataclass
class OrderRequest:
    order_id: str
    request_id: str | None = None


class SlowAcquireStore(InMemoryKeyValueStore):
    """Store whose acquire takes a noticeable network-like delay."""

    def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: float) -> bool:
        time.sleep(0.2)
        return super().set_if_absent_with_ttl(key, value, ttl_seconds)


def _renewal_threads(token: str) -> list[threading.Thread]:
    return [t for t in threading.enumerate() if t.name == f"lock-renewal-{token}"]


@pytest.fixture
def service(real_time_store) -> DistributedLockService:
    return DistributedLockService(real_time_store, key_prefix="lock:", lease_seconds=30)


class TestLockGuard:
    """Acquire -> invoke -> release behavior of the guard."""

    def test_runs_operation_and_releases_lock(self, service) -> None:
        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        def process(order_id: str) -> str:
            assert service.current_owner(order_id) is not None
            return f"processed {order_id}"

        assert process("order-1") == "processed order-1"
        assert service.current_owner("order-1") is None

    def test_rejects_when_lock_already_held(self, service) -> None:
        calls = MagicMock()

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        def process(order_id: str) -> None:
            calls()

        service.try_acquire("order-1", "", "A")
        result = process("order-1")

        assert isinstance(result, Rejection)
        assert result.code is RejectionCode.OPERATION_IN_PROGRESS
        assert result.keys == ["order-1"]
        assert result.operation.endswith("process")
        calls.assert_not_called()
        assert service.current_owner("order-1") == "A"

    def test_raise_rejection_handler(self, service) -> None:
        @distributed_lock("order_id", auto_renew=False, on_reject=raise_rejection, lock_service=service)
        def process(order_id: str) -> None:
            pass

        service.try_acquire("order-1", "", "A")

        with pytest.raises(OperationInProgressAppError) as exc_info:
            process("order-1")
        assert exc_info.value.code == "operation_in_progress"

    def test_result_rejection_handler(self, service) -> None:
        @distributed_lock("order_id", auto_renew=False, on_reject=result_rejection, lock_service=service)
        def process(order_id: str) -> None:
            pass

        service.try_acquire("order-1", "", "A")
        result = process("order-1")

        assert isinstance(result, Result)
        assert result.code == 409

    def test_releases_and_reraises_on_error(self, service) -> None:
        seen_threads: list[threading.Thread] = []

        @distributed_lock(
            "order_id",
            token="request_id",
            renew_interval_seconds=0.05,
            lease_seconds=1,
            lock_service=service,
        )
        def process(order_id: str, request_id: str) -> None:
            seen_threads.extend(_renewal_threads(request_id))
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            process("order-1", "req-error")

        assert service.current_owner("order-1") is None
        assert seen_threads
        for thread in seen_threads:
            thread.join(timeout=1)
            assert not thread.is_alive()

    def test_token_resolved_from_arguments(self, service) -> None:
        owners: list[str | None] = []

        @distributed_lock("request.order_id", token="request.request_id", auto_renew=False, lock_service=service)
        def process(request: OrderRequest) -> None:
            owners.append(service.current_owner(request.order_id))

        process(OrderRequest(order_id="order-1", request_id="req-42"))

        assert owners == ["req-42"]

    def test_blank_token_falls_back_to_uuid(self, service) -> None:
        owners: list[str | None] = []

        @distributed_lock("request.order_id", token="request.request_id", auto_renew=False, lock_service=service)
        def process(request: OrderRequest) -> None:
            owners.append(service.current_owner(request.order_id))

        process(OrderRequest(order_id="order-1", request_id=None))

        assert owners[0] is not None
        assert len(owners[0]) == 36

    def test_two_and_more_key_components(self, service) -> None:
        keys_seen: list[str | None] = []

        @distributed_lock("user_id", "product_id", auto_renew=False, lock_service=service)
        def purchase(user_id: str, product_id: str) -> None:
            keys_seen.append(service.current_owner(user_id, product_id))

        @distributed_lock(keys=lambda op, args: ["a", "b", "c"], auto_renew=False, lock_service=service)
        def triple() -> None:
            keys_seen.append(service.current_owner("a", "b:c"))

        purchase("u-1", "p-9")
        triple()

        assert all(owner is not None for owner in keys_seen)

    @pytest.mark.parametrize("order_id", [None, "", "   "])
    def test_empty_key_is_rejected_before_store_access(self, order_id) -> None:
        store = MagicMock(spec=AbstractKeyValueStore)
        service = DistributedLockService(store, key_prefix="lock:", lease_seconds=30)
        calls = MagicMock()

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        def process(order_id) -> None:
            calls()

        with pytest.raises(ValidationAppError) as exc_info:
            process(order_id)

        assert exc_info.value.code == "lock_key_empty"
        calls.assert_not_called()
        store.set_if_absent_with_ttl.assert_not_called()

    def test_store_failure_on_acquire_propagates(self) -> None:
        store = MagicMock(spec=AbstractKeyValueStore)
        store.set_if_absent_with_ttl.side_effect = StoreAppError(code="store_unavailable", message="down")
        service = DistributedLockService(store, key_prefix="lock:", lease_seconds=30)
        calls = MagicMock()

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        def process(order_id: str) -> None:
            calls()

        with pytest.raises(StoreAppError):
            process("order-1")
        calls.assert_not_called()

    def test_concurrent_calls_only_one_runs(self, service) -> None:
        entered = threading.Event()
        proceed = threading.Event()
        results: list[object] = []

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        def process(order_id: str) -> str:
            entered.set()
            proceed.wait(timeout=5)
            return "done"

        first = threading.Thread(target=lambda: results.append(process("order-1")))
        first.start()
        assert entered.wait(timeout=5)

        second_result = process("order-1")
        proceed.set()
        first.join(timeout=5)

        assert isinstance(second_result, Rejection)
        assert results == ["done"]
        assert service.current_owner("order-1") is None

    def test_invalid_renew_interval_is_rejected(self) -> None:
        with pytest.raises(ValidationAppError):
            LockGuard(from_arguments("order_id"), lease_seconds=10, renew_interval_seconds=10)

    def test_renew_interval_irrelevant_without_auto_renew(self) -> None:
        guard = LockGuard(
            from_arguments("order_id"),
            lease_seconds=10,
            renew_interval_seconds=20,
            auto_renew=False,
        )
        assert guard.auto_renew is False

    def test_defaults_follow_settings(self) -> None:
        cfg = LockSettings(lease_seconds=40, renew_interval_seconds=15, auto_renew=True)

        guard = LockGuard(from_arguments("order_id"), lock_settings=cfg)

        assert guard.lease_seconds == 40
        assert guard.renew_interval_seconds == 15
        assert guard.auto_renew is True

    def test_uses_global_store_when_no_service_given(self) -> None:
        @distributed_lock("order_id", auto_renew=False)
        def process(order_id: str) -> str:
            return "ok"

        assert process("order-1") == "ok"
        assert process.lock_guard.lock_service.current_owner("order-1") is None


class TestAutoRenewal:
    """Background renewal keeps the lease alive while the operation runs."""

    def test_lease_survives_operation_longer_than_ttl(self, service) -> None:
        owners: list[str | None] = []

        @distributed_lock(
            "order_id",
            token="request_id",
            lease_seconds=0.3,
            renew_interval_seconds=0.1,
            lock_service=service,
        )
        def slow(order_id: str, request_id: str) -> None:
            time.sleep(0.8)
            owners.append(service.current_owner(order_id))

        slow("order-1", "req-1")

        assert owners == ["req-1"]
        assert service.current_owner("order-1") is None

    def test_lease_lapses_without_auto_renew(self, service) -> None:
        owners: list[str | None] = []

        @distributed_lock("order_id", lease_seconds=0.2, auto_renew=False, lock_service=service)
        def slow(order_id: str) -> None:
            time.sleep(0.4)
            owners.append(service.current_owner(order_id))

        slow("order-1")

        assert owners == [None]

    def test_renewal_stops_after_operation_finishes(self, service) -> None:
        seen_threads: list[threading.Thread] = []

        @distributed_lock(
            "order_id",
            token="request_id",
            lease_seconds=1,
            renew_interval_seconds=0.05,
            lock_service=service,
        )
        def process(order_id: str, request_id: str) -> None:
            time.sleep(0.12)
            seen_threads.extend(_renewal_threads(request_id))

        process("order-1", "req-finish")

        assert len(seen_threads) == 1
        seen_threads[0].join(timeout=1)
        assert not seen_threads[0].is_alive()
        assert service.current_owner("order-1") is None


class TestLeaseRenewer:
    """Unit tests for the renewal thread itself."""

    def test_renews_periodically_until_cancelled(self) -> None:
        renew = MagicMock(return_value=True)
        renewer = LeaseRenewer(renew, 0.02, name="lock-renewal-test")

        renewer.start()
        time.sleep(0.15)
        renewer.cancel()
        renewer.join(timeout=1)

        assert not renewer.is_alive
        assert renewer.cancelled
        assert renew.call_count >= 2
        assert renewer.renewals == renew.call_count

    def test_cancel_does_not_wait_for_in_flight_renewal(self) -> None:
        started = threading.Event()
        unblock = threading.Event()

        def _slow_renew() -> bool:
            started.set()
            unblock.wait(timeout=5)
            return True

        renewer = LeaseRenewer(_slow_renew, 0.01, name="lock-renewal-slow")
        renewer.start()
        assert started.wait(timeout=5)

        t0 = time.perf_counter()
        renewer.cancel()
        elapsed = time.perf_counter() - t0

        assert elapsed < 0.5
        unblock.set()
        renewer.join(timeout=1)
        assert not renewer.is_alive

    def test_errors_and_failures_do_not_stop_renewal(self) -> None:
        outcomes = iter([RuntimeError("network"), False])

        def _flaky_renew() -> bool:
            outcome = next(outcomes, True)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        renewer = LeaseRenewer(_flaky_renew, 0.01, name="lock-renewal-flaky")

        renewer.start()
        time.sleep(0.2)
        renewer.cancel()
        renewer.join(timeout=1)

        assert renewer.failures == 2
        assert renewer.renewals >= 1

    def test_renewal_errors_are_logged_and_renewal_continues(self, caplog) -> None:
        def _broken_renew() -> bool:
            raise RuntimeError("connection reset")

        with caplog.at_level(logging.ERROR, logger="keyguard.guards.lock"):
            renewer = LeaseRenewer(_broken_renew, 0.01, name="lock-renewal-broken")
            renewer.start()
            time.sleep(0.15)
            renewer.cancel()
            renewer.join(timeout=1)

        errors = [r for r in caplog.records if r.getMessage() == "lock.renew_error"]
        assert renewer.failures >= 3
        assert len(errors) == renewer.failures
        assert all(r.renewer == "lock-renewal-broken" for r in errors)

    def test_timeout_is_logged(self, caplog) -> None:
        with caplog.at_level(logging.WARNING, logger="keyguard.guards.lock"):
            renewer = LeaseRenewer(lambda: True, 0.01, timeout_seconds=0.03, name="lock-renewal-expiring")
            renewer.start()
            renewer.join(timeout=1)

        timeouts = [r for r in caplog.records if r.getMessage() == "lock.renew_timeout"]
        assert len(timeouts) == 1
        assert timeouts[0].renewer == "lock-renewal-expiring"
        assert timeouts[0].timeout_s == 0.03

    def test_stops_after_operation_timeout(self) -> None:
        renew = MagicMock(return_value=True)
        renewer = LeaseRenewer(renew, 0.01, timeout_seconds=0.05, name="lock-renewal-timeout")

        renewer.start()
        renewer.join(timeout=1)

        assert not renewer.is_alive
        assert not renewer.cancelled
        calls = renew.call_count
        time.sleep(0.05)
        assert renew.call_count == calls


class TestAsyncLockGuard:
    """Async callables go through the same protocol."""

    @pytest.mark.asyncio
    async def test_async_operation_runs_and_releases(self, service) -> None:
        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        async def process(order_id: str) -> str:
            assert service.current_owner(order_id) is not None
            return "ok"

        assert await process("order-1") == "ok"
        assert service.current_owner("order-1") is None

    @pytest.mark.asyncio
    async def test_async_rejection(self, service) -> None:
        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        async def process(order_id: str) -> str:
            return "ok"

        service.try_acquire("order-1", "", "A")

        result = await process("order-1")
        assert isinstance(result, Rejection)

    @pytest.mark.asyncio
    async def test_async_error_releases(self, service) -> None:
        @distributed_lock("order_id", lease_seconds=1, renew_interval_seconds=0.5, lock_service=service)
        async def process(order_id: str) -> None:
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await process("order-1")
        assert service.current_owner("order-1") is None

    @pytest.mark.asyncio
    async def test_store_round_trips_do_not_block_event_loop(self) -> None:
        service = DistributedLockService(SlowAcquireStore(), key_prefix="lock:", lease_seconds=30)
        ticks = 0

        async def ticker() -> None:
            nonlocal ticks
            while True:
                await asyncio.sleep(0.01)
                ticks += 1

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        async def process(order_id: str) -> str:
            return "ok"

        ticking = asyncio.create_task(ticker())
        try:
            assert await process("order-1") == "ok"
        finally:
            ticking.cancel()

        assert ticks >= 5
        assert service.current_owner("order-1") is None

    @pytest.mark.asyncio
    async def test_cancel_during_acquire_leaves_no_lease(self) -> None:
        service = DistributedLockService(SlowAcquireStore(), key_prefix="lock:", lease_seconds=30)
        ran = MagicMock()

        @distributed_lock("order_id", auto_renew=False, lock_service=service)
        async def process(order_id: str) -> None:
            ran()

        task = asyncio.create_task(process("order-1"))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        ran.assert_not_called()
        assert service.current_owner("order-1") is None
