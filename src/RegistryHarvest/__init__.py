from .batch_driver import (
    BatchDriver,
    BatchDriverConfig,
    DriverPhase,
    DriverState,
    RunSummary,
    UnitDecision,
    evaluate_unit,
)
from .dispatcher import BoundedDispatcher, DispatcherConfig
from .failures import (
    DispatchPartition,
    FatalFailure,
    IngestionError,
    Outcome,
    OutcomeKind,
    PoolClosedError,
    RetryableFailure,
    SourceFailure,
    StorageError,
    ValidationFailure,
    WorkItem,
    WorkerCrashError,
    classify,
)
from .input_source import DirectoryInputSource, IterableInputSource
from .runner import WorkingLayout, harvest, run_and_report
from .status_store import StatusStore, StoreStats
from .strategies import DadataStrategy, PlainStrategy, RequestStrategy
from .worker_pool import WorkerPool, WorkerPoolError

__all__ = [
    "BatchDriver",
    "BatchDriverConfig",
    "BoundedDispatcher",
    "DadataStrategy",
    "DirectoryInputSource",
    "DispatchPartition",
    "DispatcherConfig",
    "DriverPhase",
    "DriverState",
    "FatalFailure",
    "IngestionError",
    "IterableInputSource",
    "Outcome",
    "OutcomeKind",
    "PlainStrategy",
    "PoolClosedError",
    "RequestStrategy",
    "RetryableFailure",
    "RunSummary",
    "SourceFailure",
    "StatusStore",
    "StorageError",
    "StoreStats",
    "UnitDecision",
    "ValidationFailure",
    "WorkItem",
    "WorkerCrashError",
    "WorkerPool",
    "WorkerPoolError",
    "WorkingLayout",
    "classify",
    "evaluate_unit",
    "harvest",
    "run_and_report",
]
