from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .failures import DispatchPartition, IngestionError, Outcome, StorageError, WorkItem
from .input_source import InputBatch, normalize_line
from .progress import UnitProgress
from .run_logging import outcome_logger
from .status_store import StatusStore, StoreStats
from .strategies import RequestStrategy

LOGGER = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def dispatch(self, items: Sequence[WorkItem]) -> DispatchPartition: ...


class InputSource(Protocol):
    def batches(self) -> Sequence[InputBatch]: ...

    def acknowledge(self, batch: InputBatch) -> None: ...


def _identity(payload: Any) -> Any:
    return payload


@dataclass
class BatchDriverConfig:
    requests_length: int = 100
    failure_rate_threshold: float = 0.5
    min_unit_size_for_rate_check: int = 5
    backoff_duration: float = 30 * 60.0
    pending_limit: Optional[int] = None
    update_mode: bool = True
    clean_payloads: bool = False
    stop_message: str = ""
    show_progress: bool = False

    def __post_init__(self) -> None:
        if self.requests_length < 1:
            raise ValueError("requests_length must be >= 1")
        if not (0.0 <= self.failure_rate_threshold < 1.0):
            raise ValueError("failure_rate_threshold must be within [0, 1)")
        if self.min_unit_size_for_rate_check < 0:
            raise ValueError("min_unit_size_for_rate_check must be >= 0")
        if self.backoff_duration < 0:
            raise ValueError("backoff_duration must be >= 0")
        if self.pending_limit is not None and self.pending_limit < 1:
            raise ValueError("pending_limit must be >= 1 when set")


class DriverPhase(str, Enum):
    IDLE = "idle"
    INGESTING = "ingesting"
    DISPATCHING = "dispatching"
    BACKOFF = "backoff"
    FINISHED = "finished"
    STOPPED_FATAL = "stopped_fatal"


class UnitDecision(str, Enum):
    CONTINUE = "continue"
    BACKOFF = "backoff"
    STOP = "stop"


@dataclass(frozen=True)
class DriverState:
    phase: DriverPhase = DriverPhase.IDLE
    stopped: bool = False
    stop_reason_is_fatal: bool = False
    backoff_active: bool = False
    units: int = 0
    backoffs: int = 0
    succeeded: int = 0
    retryable: int = 0
    fatal: int = 0
    invalid: int = 0


def failure_rate(partition: DispatchPartition) -> float:
    """Share of retryable items among items that reached the source."""

    retryable = len(partition.retryable)
    denominator = len(partition.succeeded) + retryable
    if denominator == 0:
        return 0.0
    return retryable / denominator


def evaluate_unit(
    state: DriverState,
    partition: DispatchPartition,
    unit_size: int,
    config: BatchDriverConfig,
) -> Tuple[DriverState, UnitDecision]:
    """Fold one settled unit into *state* and decide what happens next.

    A fatal item always stops the run. The failure rate only counts when the
    unit is larger than ``min_unit_size_for_rate_check``: a first breach
    starts a backoff, a breach while the backoff is still active stops the
    run, and an acceptable unit clears the backoff.
    """

    state = replace(
        state,
        units=state.units + 1,
        succeeded=state.succeeded + len(partition.succeeded),
        retryable=state.retryable + len(partition.retryable),
        fatal=state.fatal + len(partition.fatal),
        invalid=state.invalid + len(partition.invalid),
    )
    rate_exceeded = (
        unit_size > config.min_unit_size_for_rate_check
        and failure_rate(partition) > config.failure_rate_threshold
    )

    if partition.fatal or (rate_exceeded and state.backoff_active):
        return (
            replace(
                state,
                phase=DriverPhase.STOPPED_FATAL,
                stopped=True,
                stop_reason_is_fatal=bool(partition.fatal),
            ),
            UnitDecision.STOP,
        )
    if rate_exceeded:
        return (
            replace(state, phase=DriverPhase.BACKOFF, backoff_active=True, backoffs=state.backoffs + 1),
            UnitDecision.BACKOFF,
        )
    return replace(state, phase=DriverPhase.DISPATCHING, backoff_active=False), UnitDecision.CONTINUE


@dataclass(frozen=True)
class RunSummary:
    phase: DriverPhase
    stop_reason_is_fatal: bool
    stop_message: str
    ingested: int
    units: int
    backoffs: int
    succeeded: int
    retryable: int
    fatal: int
    invalid: int
    duration_seconds: float
    stats: StoreStats

    @property
    def stopped(self) -> bool:
        return self.phase is DriverPhase.STOPPED_FATAL

    @property
    def ended_with_stop_error(self) -> bool:
        return self.stopped and self.stop_reason_is_fatal

    @property
    def ended_with_retry_errors(self) -> bool:
        return self.stats.retry > 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "phase": self.phase.value,
            "ended_with_stop_error": self.ended_with_stop_error,
            "ended_with_retry_errors": self.ended_with_retry_errors,
            "stop_message": self.stop_message,
            "ingested": self.ingested,
            "units": self.units,
            "backoffs": self.backoffs,
            "this_run": {
                "success": self.succeeded,
                "retry": self.retryable,
                "fatal": self.fatal,
                "invalid": self.invalid,
            },
            "duration_seconds": round(self.duration_seconds, 3),
            "store": self.stats.as_dict(),
        }


class BatchDriver:
    """Resumable loop that moves pending identifiers through a dispatcher.

    Every unit is persisted before the next one is selected, so a run that
    dies between units resumes on the next invocation from the statuses
    already in the store.
    """

    def __init__(
        self,
        store: StatusStore,
        dispatcher: Dispatcher,
        *,
        strategy: Optional[RequestStrategy] = None,
        config: Optional[BatchDriverConfig] = None,
        input_source: Optional[InputSource] = None,
        extractor: Callable[[Any], Any] = _identity,
        on_fresh_input: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.strategy = strategy or RequestStrategy()
        self.config = config or BatchDriverConfig()
        self.input_source = input_source
        self.extractor = extractor
        self.on_fresh_input = on_fresh_input
        self._sleep = sleep
        self.state = DriverState()

    # ------------------------------------------------------------------

    async def run(self) -> RunSummary:
        started = time.perf_counter()
        self.state = DriverState(phase=DriverPhase.INGESTING)
        ingested = self._ingest()

        self.state = replace(self.state, phase=DriverPhase.DISPATCHING)
        await self._dispatch_pending()

        if not self.state.stopped:
            self.state = replace(self.state, phase=DriverPhase.FINISHED)

        stats = self.store.collect_stats()
        summary = RunSummary(
            phase=self.state.phase,
            stop_reason_is_fatal=self.state.stop_reason_is_fatal,
            stop_message=self.config.stop_message if self.state.stop_reason_is_fatal else "",
            ingested=ingested,
            units=self.state.units,
            backoffs=self.state.backoffs,
            succeeded=self.state.succeeded,
            retryable=self.state.retryable,
            fatal=self.state.fatal,
            invalid=self.state.invalid,
            duration_seconds=time.perf_counter() - started,
            stats=stats,
        )
        LOGGER.info(
            "Run %s: units=%d success=%d retry=%d fatal=%d invalid=%d",
            summary.phase.value,
            summary.units,
            summary.succeeded,
            summary.retryable,
            summary.fatal,
            summary.invalid,
        )
        return summary

    # -- Ingestion -----------------------------------------------------------------

    def _ingest(self) -> int:
        if self.input_source is None:
            return 0
        try:
            batches = list(self.input_source.batches())
            if not batches:
                LOGGER.debug("No new input batches")
                return 0
            lines: List[str] = []
            for batch in batches:
                for line in batch.iter_lines():
                    item_id = normalize_line(line)
                    if item_id is not None:
                        lines.append(item_id)
        except (OSError, UnicodeDecodeError) as exc:
            raise IngestionError(f"Unable to read input: {exc}") from exc

        LOGGER.info("Ingesting %d identifiers from %d input batches", len(lines), len(batches))
        self.store.reset(clear_payloads=self.config.clean_payloads)
        if self.on_fresh_input is not None:
            self.on_fresh_input()

        for item_id in lines:
            self.strategy.insert_request(self.store, item_id, update_mode=self.config.update_mode)

        try:
            for batch in batches:
                self.input_source.acknowledge(batch)
        except OSError as exc:
            raise IngestionError(f"Unable to mark input as processed: {exc}") from exc
        return len(lines)

    # -- Dispatching ---------------------------------------------------------------

    def _run_budget(self) -> Optional[int]:
        limits = [
            limit
            for limit in (self.config.pending_limit, self.strategy.pending_budget)
            if limit is not None
        ]
        return min(limits) if limits else None

    async def _dispatch_pending(self) -> None:
        budget = self._run_budget()
        total = self.store.count_pending()
        if budget is not None:
            total = min(total, budget)
        if total == 0:
            LOGGER.info("No pending identifiers to dispatch")
            return

        cursor = 0
        taken = 0
        with UnitProgress(total=total, enabled=self.config.show_progress) as progress:
            while not self.state.stopped:
                limit = self.config.requests_length
                if budget is not None:
                    limit = min(limit, budget - taken)
                if limit <= 0:
                    LOGGER.info("Per-run request budget of %d reached", budget)
                    break

                pending = self.store.select_pending(limit, after=cursor)
                if not pending:
                    break
                cursor = pending[-1].cursor
                taken += len(pending)

                unit = self.strategy.build_unit([entry.item_id for entry in pending])
                partition = await self.dispatcher.dispatch(unit)
                self._persist(partition)
                self._log_outcomes(partition)
                progress.record_unit(partition.counts())

                self.state, decision = evaluate_unit(self.state, partition, len(unit), self.config)
                if decision is UnitDecision.STOP:
                    if self.state.stop_reason_is_fatal:
                        LOGGER.error(
                            "Source requested a stop after unit %d; %d items hit a fatal failure",
                            self.state.units,
                            len(partition.fatal),
                        )
                    else:
                        LOGGER.error(
                            "Failure rate %.2f exceeded %.2f again after backoff; stopping",
                            failure_rate(partition),
                            self.config.failure_rate_threshold,
                        )
                elif decision is UnitDecision.BACKOFF:
                    LOGGER.warning(
                        "Failure rate %.2f exceeded %.2f; pausing %.0fs before the next unit",
                        failure_rate(partition),
                        self.config.failure_rate_threshold,
                        self.config.backoff_duration,
                    )
                    await self._sleep(self.config.backoff_duration)
                    self.state = replace(self.state, phase=DriverPhase.DISPATCHING)

    def _persist(self, partition: DispatchPartition) -> None:
        success = [
            (self.strategy.success_id(outcome.item, outcome.payload), self.extractor(outcome.payload))
            for outcome in partition.succeeded
        ]
        # Fatal items were never answered by the source; they stay eligible.
        retry = DispatchPartition.ids(partition.retryable) + DispatchPartition.ids(partition.fatal)
        try:
            self.store.update_status(
                success=success,
                invalid=DispatchPartition.ids(partition.invalid),
                retry=retry,
            )
        except StorageError:
            LOGGER.error("Unable to persist unit %d", self.state.units + 1)
            raise

    def _log_outcomes(self, partition: DispatchPartition) -> None:
        success_log = outcome_logger("success")
        retry_log = outcome_logger("retry")
        invalid_log = outcome_logger("invalid")
        for outcome in partition.succeeded:
            success_log.info("%s received", outcome.item_id)
        for outcome in partition.retryable:
            retry_log.warning("%s %s", outcome.item_id, _reason(outcome))
        for outcome in partition.fatal:
            retry_log.error("%s stop: %s", outcome.item_id, _reason(outcome))
        for outcome in partition.invalid:
            invalid_log.warning("%s %s", outcome.item_id, _reason(outcome))


def _reason(outcome: Outcome) -> str:
    return outcome.reason or outcome.kind.value


__all__ = [
    "BatchDriver",
    "BatchDriverConfig",
    "DriverPhase",
    "DriverState",
    "RunSummary",
    "UnitDecision",
    "evaluate_unit",
    "failure_rate",
]
