from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
TESTS_ROOT = PROJECT_ROOT / "tests"
for candidate in (SRC_ROOT, TESTS_ROOT):
    if str(candidate) not in sys.path:
        sys.path.insert(0, str(candidate))

from RegistryHarvest.failures import FatalFailure, RetryableFailure, ValidationFailure
from RegistryHarvest.run_logging import close_run_logging
from RegistryHarvest.status_store import StatusStore


class ScriptedExecutor:
    """Executor whose behaviour per id is scripted by the test.

    ``behaviour`` maps an id to "retry", "invalid", "fatal" or "boom"; any
    other id succeeds with ``{"id": id}``. Every call is recorded.
    """

    def __init__(self, behaviour: Dict[str, str] | None = None):
        self.behaviour = dict(behaviour or {})
        self.calls: List[str] = []

    async def __call__(self, request):
        item_id = request["query"] if isinstance(request, dict) else request
        self.calls.append(item_id)
        action = self.behaviour.get(item_id)
        if action == "retry":
            raise RetryableFailure(item_id, "connection reset")
        if action == "invalid":
            raise ValidationFailure(item_id, "not found")
        if action == "fatal":
            raise FatalFailure(item_id, "quota exhausted")
        if action == "boom":
            raise RuntimeError(f"unexpected failure for {item_id}")
        return {"id": item_id}


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store(tmp_path: Path):
    with StatusStore(tmp_path / "state" / "data.db") as status_store:
        yield status_store


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(autouse=True)
def release_log_handlers():
    yield
    close_run_logging()
