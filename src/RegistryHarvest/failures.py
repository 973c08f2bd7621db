"""Typed failures raised by executors and the pure outcome classifier."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

_NO_RESULT = object()


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    INVALID = "invalid"
    FATAL = "fatal"


class SourceFailure(Exception):
    """Base class for failures an executor reports about a single item.

    Subclasses carry a ``kind`` tag; the classifier reads the tag rather than
    inspecting the exception type, so executors may define their own classes
    as long as they set ``kind``.
    """

    kind: OutcomeKind = OutcomeKind.RETRYABLE

    def __init__(self, item_id: str, reason: str = "") -> None:
        super().__init__(item_id, reason)
        self.item_id = item_id
        self.reason = reason

    def __str__(self) -> str:
        if self.reason:
            return f"{self.item_id}: {self.reason}"
        return str(self.item_id)


class RetryableFailure(SourceFailure):
    """Transient failure (network, timeout, 5xx); retried in a later run."""

    kind = OutcomeKind.RETRYABLE


class ValidationFailure(SourceFailure):
    """The source rejected the identifier itself; never retried."""

    kind = OutcomeKind.INVALID


class FatalFailure(SourceFailure):
    """The source demands the whole run stop (quota exhausted, captcha)."""

    kind = OutcomeKind.FATAL


class WorkerCrashError(RetryableFailure):
    """A pool worker process died while it owned a task."""

    def __init__(self, task_id: int, item: Any, cause: str) -> None:
        item_id = getattr(item, "id", item)
        super().__init__(str(item_id), cause)
        self.args = (task_id, item, cause)
        self.task_id = task_id
        self.item = item
        self.cause = cause


class StorageError(RuntimeError):
    """Raised when the status store cannot be read or written."""


class IngestionError(RuntimeError):
    """Raised when input batches cannot be read into the status store."""


class PoolClosedError(RuntimeError):
    """Raised when work is submitted to a pool that is draining."""


@dataclass(frozen=True)
class WorkItem:
    """One identifier together with the request built for it."""

    id: str
    request: Any = None


@dataclass(frozen=True)
class Outcome:
    item: WorkItem
    kind: OutcomeKind
    payload: Any = None
    reason: Optional[str] = None

    @property
    def item_id(self) -> str:
        return self.item.id


def classify(item: WorkItem, *, result: Any = _NO_RESULT, error: Optional[BaseException] = None) -> Outcome:
    """Map an executor result or raised error to an :class:`Outcome`.

    Tagged failures keep their tag. Anything else an executor raises is
    treated as retryable so the identifier stays eligible for a later run.
    """

    if error is None:
        payload = None if result is _NO_RESULT else result
        return Outcome(item=item, kind=OutcomeKind.SUCCESS, payload=payload)

    tag = getattr(error, "kind", None)
    try:
        kind = OutcomeKind(tag) if tag is not None else None
    except ValueError:
        kind = None

    if kind is None or kind is OutcomeKind.SUCCESS:
        LOGGER.warning(
            "Unclassified executor error for %s treated as retryable: %r",
            item.id,
            error,
        )
        kind = OutcomeKind.RETRYABLE

    reason = getattr(error, "reason", None) or str(error) or type(error).__name__
    return Outcome(item=item, kind=kind, reason=reason)


@dataclass
class DispatchPartition:
    """Disjoint groups of outcomes produced by one dispatch unit."""

    succeeded: List[Outcome] = field(default_factory=list)
    retryable: List[Outcome] = field(default_factory=list)
    fatal: List[Outcome] = field(default_factory=list)
    invalid: List[Outcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[Outcome]) -> "DispatchPartition":
        partition = cls()
        for outcome in outcomes:
            partition.add(outcome)
        return partition

    def add(self, outcome: Outcome) -> None:
        if outcome.kind is OutcomeKind.SUCCESS:
            self.succeeded.append(outcome)
        elif outcome.kind is OutcomeKind.INVALID:
            self.invalid.append(outcome)
        elif outcome.kind is OutcomeKind.FATAL:
            self.fatal.append(outcome)
        else:
            self.retryable.append(outcome)

    def __len__(self) -> int:
        return len(self.succeeded) + len(self.retryable) + len(self.fatal) + len(self.invalid)

    def outcomes(self) -> List[Outcome]:
        return [*self.succeeded, *self.retryable, *self.fatal, *self.invalid]

    @staticmethod
    def ids(outcomes: Sequence[Outcome]) -> List[str]:
        return [outcome.item_id for outcome in outcomes]

    def counts(self) -> dict:
        return {
            "success": len(self.succeeded),
            "retry": len(self.retryable),
            "fatal": len(self.fatal),
            "invalid": len(self.invalid),
        }


__all__ = [
    "DispatchPartition",
    "FatalFailure",
    "IngestionError",
    "Outcome",
    "OutcomeKind",
    "PoolClosedError",
    "RetryableFailure",
    "SourceFailure",
    "StorageError",
    "ValidationFailure",
    "WorkItem",
    "WorkerCrashError",
    "classify",
]
