from __future__ import annotations

import asyncio
import concurrent.futures
import itertools
import logging
import multiprocessing as mp
import pickle
import queue
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, NamedTuple, Optional

import psutil

from .failures import (
    DispatchPartition,
    PoolClosedError,
    RetryableFailure,
    WorkItem,
    WorkerCrashError,
    classify,
)

LOGGER = logging.getLogger(__name__)


class WorkerPoolError(RuntimeError):
    """Pool-level failure not attributable to any task."""


class _PendingTask(NamedTuple):
    task_id: int
    item: Any


@dataclass
class _WorkerSlot:
    index: int
    process: Any
    inbox: Any
    current: Optional[_PendingTask] = None


def _round_trips(value: Any) -> bool:
    try:
        pickle.loads(pickle.dumps(value))
    except Exception:
        return False
    return True


def _portable_error(exc: Exception, item: Any) -> Exception:
    if _round_trips(exc):
        return exc
    return RetryableFailure(str(getattr(item, "id", item)), f"{type(exc).__name__}: {exc}")


def _worker_main(slot_index: int, task: Callable[[Any], Any], inbox, outbox) -> None:
    while True:
        message = inbox.get()
        if message is None:
            break
        task_id, item = message
        try:
            result = task(item)
            if not _round_trips(result):
                raise TypeError(f"result of type {type(result).__name__} cannot be sent back")
        except Exception as exc:
            outbox.put((slot_index, task_id, False, _portable_error(exc, item)))
        else:
            outbox.put((slot_index, task_id, True, result))


class WorkerPool:
    """Fixed-size pool of isolated worker processes.

    Workers are spawned lazily, one per submission, until
    ``number_of_threads`` exist. A worker that dies is replaced; if it held a
    task, that task's future fails with :class:`WorkerCrashError`, otherwise
    the death is reported to ``on_error`` as a pool-level event.
    """

    def __init__(
        self,
        task: Callable[[Any], Any],
        number_of_threads: int,
        *,
        on_error: Optional[Callable[[Exception], None]] = None,
        niceness: Optional[int] = None,
        poll_interval: float = 0.1,
        join_timeout: float = 5.0,
    ):
        if number_of_threads < 1:
            raise ValueError("number_of_threads must be >= 1")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.task = task
        self.number_of_threads = number_of_threads
        self.niceness = niceness
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self._listeners: List[Callable[[Exception], None]] = []
        if on_error is not None:
            self._listeners.append(on_error)

        self._mp_context = mp.get_context("spawn")
        self._outbox = self._mp_context.Queue()
        self._slots: List[_WorkerSlot] = []
        self._queue: Deque[_PendingTask] = deque()
        self._futures: Dict[int, concurrent.futures.Future] = {}
        self._task_ids = itertools.count(1)
        self._lock = threading.RLock()
        self._closing = False
        self._stop_monitor = threading.Event()
        self._monitor: Optional[threading.Thread] = None

    # -- Public API ----------------------------------------------------------------

    def add_error_listener(self, listener: Callable[[Exception], None]) -> None:
        self._listeners.append(listener)

    def submit(self, item: Any) -> concurrent.futures.Future:
        with self._lock:
            if self._closing:
                raise PoolClosedError("Worker pool is draining; no new tasks accepted")
            pending = _PendingTask(next(self._task_ids), item)
            future: concurrent.futures.Future = concurrent.futures.Future()
            self._futures[pending.task_id] = future
            slot = self._idle_slot()
            if slot is None:
                self._queue.append(pending)
            else:
                self._assign(slot, pending)
            self._ensure_monitor()
        return future

    async def dispatch(self, items: Iterable[WorkItem]) -> DispatchPartition:
        submitted = [(item, asyncio.wrap_future(self.submit(item.request))) for item in items]
        partition = DispatchPartition()
        for item, future in submitted:
            try:
                result = await future
            except Exception as exc:
                partition.add(classify(item, error=exc))
            else:
                partition.add(classify(item, result=result))
        return partition

    def live_workers(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot.process.is_alive())

    def pending_tasks(self) -> int:
        with self._lock:
            return len(self._futures)

    def drain(self) -> None:
        """Stop accepting work, wait for every task to settle, stop workers."""

        with self._lock:
            self._closing = True
            outstanding = list(self._futures.values())
        if outstanding:
            concurrent.futures.wait(outstanding)

        self._stop_monitor.set()
        if self._monitor is not None:
            self._monitor.join(timeout=self.join_timeout)
            self._monitor = None

        with self._lock:
            for slot in self._slots:
                if slot.process.is_alive():
                    slot.inbox.put(None)
            self._join_workers()

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:  # type: ignore[override]
        self.drain()

    # -- Worker management ---------------------------------------------------------

    def _idle_slot(self) -> Optional[_WorkerSlot]:
        for slot in self._slots:
            if slot.current is None and slot.process.is_alive():
                return slot
        if len(self._slots) < self.number_of_threads:
            slot = self._start_worker(len(self._slots))
            self._slots.append(slot)
            return slot
        return None

    def _start_worker(self, index: int) -> _WorkerSlot:
        inbox = self._mp_context.Queue()
        process = self._mp_context.Process(
            target=_worker_main,
            args=(index, self.task, inbox, self._outbox),
            daemon=True,
        )
        process.start()
        LOGGER.debug("Started pool worker %s (pid=%s)", index, process.pid)
        self._apply_worker_policies(pid=process.pid, index=index)
        return _WorkerSlot(index=index, process=process, inbox=inbox)

    def _apply_worker_policies(self, *, pid: int, index: int) -> None:
        if self.niceness is None:
            return
        try:
            psutil.Process(pid).nice(self.niceness)
        except (psutil.Error, AttributeError):
            LOGGER.debug("Unable to adjust niceness for pool worker %s", index)

    def _assign(self, slot: _WorkerSlot, pending: _PendingTask) -> None:
        slot.current = pending
        slot.inbox.put((pending.task_id, pending.item))

    def _feed(self, slot: _WorkerSlot) -> None:
        if slot.current is None and self._queue:
            self._assign(slot, self._queue.popleft())

    def _join_workers(self) -> None:
        for slot in self._slots:
            slot.process.join(timeout=self.join_timeout)
            if slot.process.is_alive():
                LOGGER.warning("Terminating unresponsive pool worker pid=%s", slot.process.pid)
                slot.process.terminate()
                slot.process.join(timeout=self.join_timeout)
            slot.inbox.cancel_join_thread()
            slot.inbox.close()
        self._slots.clear()

    # -- Monitor -------------------------------------------------------------------

    def _ensure_monitor(self) -> None:
        if self._monitor is not None and self._monitor.is_alive():
            return
        self._stop_monitor.clear()
        self._monitor = threading.Thread(
            target=self._monitor_loop,
            name="worker-pool-monitor",
            daemon=True,
        )
        self._monitor.start()

    def _monitor_loop(self) -> None:
        while not self._stop_monitor.is_set():
            message = self._receive(timeout=self.poll_interval)
            with self._lock:
                if message is not None:
                    self._handle_message(message)
                self._check_workers()

    def _handle_message(self, message) -> None:
        slot_index, task_id, ok, value = message
        future = self._futures.pop(task_id, None)
        if future is not None:
            if ok:
                future.set_result(value)
            else:
                future.set_exception(value)
        slot = self._slots[slot_index] if slot_index < len(self._slots) else None
        if slot is not None and slot.current is not None and slot.current.task_id == task_id:
            slot.current = None
            if slot.process.is_alive():
                self._feed(slot)

    def _receive(self, *, timeout: Optional[float]):
        try:
            if timeout is None:
                return self._outbox.get_nowait()
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None
        except Exception as exc:
            self._emit_error(WorkerPoolError(f"Unreadable worker message: {type(exc).__name__}: {exc}"))
            return None

    def _drain_outbox(self) -> None:
        while not self._outbox.empty():
            message = self._receive(timeout=None)
            if message is not None:
                self._handle_message(message)

    def _check_workers(self) -> None:
        dead = [slot for slot in self._slots if not slot.process.is_alive()]
        if not dead:
            return
        # A result may have been written just before the process exited.
        self._drain_outbox()
        for slot in dead:
            exitcode = slot.process.exitcode
            if slot.current is not None:
                pending = slot.current
                slot.current = None
                cause = f"worker {slot.index} exited with code {exitcode}"
                LOGGER.error("Task %s lost: %s", pending.task_id, cause)
                future = self._futures.pop(pending.task_id, None)
                if future is not None:
                    future.set_exception(WorkerCrashError(pending.task_id, pending.item, cause))
            else:
                self._emit_error(
                    WorkerPoolError(f"Idle worker {slot.index} exited with code {exitcode}")
                )
            slot.inbox.cancel_join_thread()
            slot.inbox.close()
            replacement = self._start_worker(slot.index)
            self._slots[slot.index] = replacement
            self._feed(replacement)

    def _emit_error(self, error: Exception) -> None:
        LOGGER.error("Worker pool error: %s", error)
        for listener in list(self._listeners):
            try:
                listener(error)
            except Exception:
                LOGGER.exception("Worker pool error listener failed")


__all__ = ["WorkerPool", "WorkerPoolError"]
