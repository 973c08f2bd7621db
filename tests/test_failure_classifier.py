import pickle
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from RegistryHarvest.failures import (
    DispatchPartition,
    FatalFailure,
    OutcomeKind,
    RetryableFailure,
    ValidationFailure,
    WorkItem,
    WorkerCrashError,
    classify,
)


ITEM = WorkItem(id="7707083893", request={"query": "7707083893"})


def test_success_keeps_payload() -> None:
    outcome = classify(ITEM, result={"inn": "7707083893"})
    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.payload == {"inn": "7707083893"}
    assert outcome.item_id == "7707083893"


def test_tagged_failures_map_to_their_kind() -> None:
    assert classify(ITEM, error=RetryableFailure("7707083893", "timeout")).kind is OutcomeKind.RETRYABLE
    assert classify(ITEM, error=ValidationFailure("7707083893", "bad")).kind is OutcomeKind.INVALID
    fatal = classify(ITEM, error=FatalFailure("7707083893", "quota"))
    assert fatal.kind is OutcomeKind.FATAL
    assert fatal.reason == "quota"


def test_tag_is_read_from_attribute_not_type() -> None:
    class CaptchaRequired(Exception):
        kind = "fatal"

    assert classify(ITEM, error=CaptchaRequired("captcha")).kind is OutcomeKind.FATAL


def test_untagged_errors_are_retryable() -> None:
    outcome = classify(ITEM, error=ConnectionResetError("reset by peer"))
    assert outcome.kind is OutcomeKind.RETRYABLE
    assert outcome.reason == "reset by peer"

    class Weird(Exception):
        kind = "success"

    assert classify(ITEM, error=Weird()).kind is OutcomeKind.RETRYABLE


def test_failures_survive_pickling() -> None:
    restored = pickle.loads(pickle.dumps(ValidationFailure("123", "malformed")))
    assert isinstance(restored, ValidationFailure)
    assert restored.item_id == "123"
    assert restored.reason == "malformed"
    assert restored.kind is OutcomeKind.INVALID

    crash = pickle.loads(pickle.dumps(WorkerCrashError(7, "123", "exit code -9")))
    assert crash.task_id == 7
    assert crash.item == "123"
    assert crash.kind is OutcomeKind.RETRYABLE


def test_partition_groups_are_disjoint() -> None:
    items = [WorkItem(id=str(index)) for index in range(4)]
    outcomes = [
        classify(items[0], result=1),
        classify(items[1], error=RetryableFailure("1")),
        classify(items[2], error=FatalFailure("2")),
        classify(items[3], error=ValidationFailure("3")),
    ]
    partition = DispatchPartition.from_outcomes(outcomes)

    assert len(partition) == 4
    assert partition.counts() == {"success": 1, "retry": 1, "fatal": 1, "invalid": 1}
    assert DispatchPartition.ids(partition.fatal) == ["2"]
    assert sorted(outcome.item_id for outcome in partition.outcomes()) == ["0", "1", "2", "3"]
