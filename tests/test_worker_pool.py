import asyncio
import concurrent.futures
import sys
import threading
import time
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
TESTS_ROOT = PROJECT_ROOT / "tests"
for candidate in (SRC_ROOT, TESTS_ROOT):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

import fake_sources
from RegistryHarvest.failures import (
    DispatchPartition,
    PoolClosedError,
    RetryableFailure,
    ValidationFailure,
    WorkItem,
    WorkerCrashError,
)
from RegistryHarvest.worker_pool import WorkerPool, WorkerPoolError

TIMEOUT = 60


def _wait_for(predicate, timeout: float = TIMEOUT) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def test_submit_returns_results_and_spawns_lazily() -> None:
    with WorkerPool(fake_sources.echo, 3) as pool:
        assert pool.live_workers() == 0
        future = pool.submit("7707083893")
        assert future.result(timeout=TIMEOUT) == {"id": "7707083893", "length": 10}
        assert pool.live_workers() == 1

        futures = [pool.submit(str(index)) for index in range(6)]
        results = [f.result(timeout=TIMEOUT) for f in futures]
        assert [result["id"] for result in results] == [str(index) for index in range(6)]
        assert pool.live_workers() <= 3
    assert pool.live_workers() == 0


def test_queued_tasks_run_in_fifo_order() -> None:
    completed = []

    with WorkerPool(fake_sources.slow_echo, 1) as pool:
        futures = [pool.submit(value) for value in ("first", "second", "third")]
        for future in futures:
            future.add_done_callback(lambda f: completed.append(f.result()))
        concurrent.futures.wait(futures, timeout=TIMEOUT)

    assert completed == ["first", "second", "third"]


def test_typed_failures_travel_back_to_the_future() -> None:
    with WorkerPool(fake_sources.typed_failures, 2) as pool:
        invalid = pool.submit("bad-1")
        retry = pool.submit("net-1")

        with pytest.raises(ValidationFailure) as excinfo:
            invalid.result(timeout=TIMEOUT)
        assert excinfo.value.item_id == "bad-1"
        with pytest.raises(RetryableFailure):
            retry.result(timeout=TIMEOUT)


def test_unpicklable_errors_become_retryable() -> None:
    with WorkerPool(fake_sources.unpicklable_error, 1) as pool:
        future = pool.submit("x")
        with pytest.raises(RetryableFailure) as excinfo:
            future.result(timeout=TIMEOUT)
    assert "_Unpicklable" in excinfo.value.reason


def test_errors_that_cannot_be_rebuilt_become_retryable() -> None:
    with WorkerPool(fake_sources.two_arg_error, 1) as pool:
        future = pool.submit("x")
        with pytest.raises(RetryableFailure) as excinfo:
            future.result(timeout=TIMEOUT)
        assert excinfo.value.reason == "_TwoArgError: 500: x"

        # The pool keeps serving after the failure.
        assert pool.submit("y").exception(timeout=TIMEOUT) is not None
        assert pool.pending_tasks() == 0


def test_unpicklable_results_become_retryable() -> None:
    with WorkerPool(fake_sources.unpicklable_result, 1) as pool:
        first = pool.submit("x")
        second = pool.submit("y")
        with pytest.raises(RetryableFailure) as excinfo:
            first.result(timeout=TIMEOUT)
        assert "cannot be sent back" in excinfo.value.reason
        with pytest.raises(RetryableFailure):
            second.result(timeout=TIMEOUT)


def test_unreadable_messages_are_reported_not_fatal() -> None:
    class BrokenOutbox:
        def get(self, timeout=None):
            raise TypeError("missing 1 required positional argument")

    events = []
    pool = WorkerPool(fake_sources.echo, 1, on_error=events.append)
    pool._outbox = BrokenOutbox()

    assert pool._receive(timeout=0.01) is None
    assert isinstance(events[0], WorkerPoolError)
    assert "TypeError" in str(events[0])


def test_crashed_worker_rejects_task_and_is_replaced() -> None:
    with WorkerPool(fake_sources.crash_on_marker, 2) as pool:
        futures = {value: pool.submit(value) for value in ("a", "crash", "b", "c", "d")}

        with pytest.raises(WorkerCrashError) as excinfo:
            futures["crash"].result(timeout=TIMEOUT)
        assert excinfo.value.item == "crash"
        assert "exited with code 3" in excinfo.value.cause

        for value in ("a", "b", "c", "d"):
            assert futures[value].result(timeout=TIMEOUT) == value
        assert _wait_for(lambda: pool.live_workers() == 2)
        assert pool.pending_tasks() == 0


def test_idle_worker_death_is_reported_to_listeners() -> None:
    events = []
    reported = threading.Event()

    def listener(error: Exception) -> None:
        events.append(error)
        reported.set()

    with WorkerPool(fake_sources.echo, 1, on_error=listener) as pool:
        pool.add_error_listener(lambda error: events.append(str(error)))
        assert pool.submit("a").result(timeout=TIMEOUT)["id"] == "a"
        pool._slots[0].process.kill()

        assert reported.wait(TIMEOUT)
        assert _wait_for(lambda: len(events) == 2)
        assert isinstance(events[0], WorkerPoolError)
        assert events[1] == str(events[0])
        assert _wait_for(lambda: pool.live_workers() == 1)
        assert pool.submit("b").result(timeout=TIMEOUT)["id"] == "b"


def test_drain_rejects_new_submissions() -> None:
    pool = WorkerPool(fake_sources.slow_echo, 2)
    futures = [pool.submit(str(index)) for index in range(4)]
    pool.drain()

    assert all(future.done() for future in futures)
    assert pool.live_workers() == 0
    with pytest.raises(PoolClosedError):
        pool.submit("late")


def test_dispatch_partitions_pool_results() -> None:
    items = [
        WorkItem(id=value, request=value)
        for value in ("ok-1", "bad-1", "net-1", "stop-1", "ok-2")
    ]
    with WorkerPool(fake_sources.typed_failures, 2) as pool:
        partition = asyncio.run(pool.dispatch(items))

    assert DispatchPartition.ids(partition.succeeded) == ["ok-1", "ok-2"]
    assert DispatchPartition.ids(partition.invalid) == ["bad-1"]
    assert DispatchPartition.ids(partition.retryable) == ["net-1"]
    assert DispatchPartition.ids(partition.fatal) == ["stop-1"]


def test_invalid_pool_size() -> None:
    with pytest.raises(ValueError):
        WorkerPool(fake_sources.echo, 0)
