from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from pyrate_limiter import Duration, Limiter, Rate

from .failures import DispatchPartition, Outcome, WorkItem, classify

LOGGER = logging.getLogger(__name__)

Executor = Callable[[Any], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class DispatcherConfig:
    max_concurrency: int = 30
    requests_per_second: Optional[float] = 17.0
    acquire_poll_interval: float = 0.025

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.requests_per_second is not None and self.requests_per_second <= 0:
            raise ValueError("requests_per_second must be > 0 when set")
        if self.acquire_poll_interval <= 0:
            raise ValueError("acquire_poll_interval must be > 0")


def _is_async(executor: Executor) -> bool:
    return inspect.iscoroutinefunction(executor) or inspect.iscoroutinefunction(
        getattr(executor, "__call__", None)
    )


def _build_rate(requests_per_second: float) -> Rate:
    second = int(Duration.SECOND)
    if float(requests_per_second).is_integer():
        return Rate(int(requests_per_second), second)
    # Fractional rates become one start per interval, e.g. 1.5/s -> 1 per 667ms.
    return Rate(1, max(1, round(second / requests_per_second)))


class BoundedDispatcher:
    """Run an executor over a unit of work items under two limits.

    At most ``max_concurrency`` items are in flight at once, and items start
    no faster than ``requests_per_second``. Every item settles into exactly
    one group of the returned :class:`DispatchPartition`; executor errors are
    classified, never raised.
    """

    bucket_name = "dispatch"

    def __init__(self, executor: Executor, config: Optional[DispatcherConfig] = None):
        self.executor = executor
        self.config = config or DispatcherConfig()
        self._limiter: Optional[Limiter] = None
        if self.config.requests_per_second is not None:
            self._limiter = Limiter(
                _build_rate(self.config.requests_per_second),
                raise_when_fail=False,
            )

    async def dispatch(self, items: Sequence[WorkItem]) -> DispatchPartition:
        if not items:
            return DispatchPartition()

        semaphore = asyncio.Semaphore(self.config.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._run_one(item, semaphore) for item in items)
        )
        partition = DispatchPartition.from_outcomes(outcomes)
        LOGGER.debug("Dispatched %d items: %s", len(items), partition.counts())
        return partition

    async def _run_one(self, item: WorkItem, semaphore: asyncio.Semaphore) -> Outcome:
        async with semaphore:
            await self._acquire_slot()
            try:
                result = await self._execute(item.request)
            except Exception as exc:
                return classify(item, error=exc)
            return classify(item, result=result)

    async def _acquire_slot(self) -> None:
        if self._limiter is None:
            return
        while not self._limiter.try_acquire(self.bucket_name):
            await asyncio.sleep(self.config.acquire_poll_interval)

    async def _execute(self, request: Any) -> Any:
        if _is_async(self.executor):
            return await self.executor(request)
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, functools.partial(self.executor, request))
        if inspect.isawaitable(result):
            result = await result
        return result


__all__ = ["BoundedDispatcher", "DispatcherConfig", "Executor"]
