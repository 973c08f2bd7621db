import logging
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from RegistryHarvest.input_source import DirectoryInputSource, IterableInputSource, normalize_line
from RegistryHarvest.progress import UnitProgress
from RegistryHarvest.run_logging import (
    active_log_paths,
    close_run_logging,
    configure_run_logging,
    outcome_logger,
    reset_logs_dir,
)


@pytest.mark.parametrize(
    "line, expected",
    [
        ("7707083893\n", "7707083893"),
        ("  7707083893  \r\n", "7707083893"),
        ("\ufeff7707083893", "7707083893"),
        ("7707083893 \t 770701001", "7707083893 770701001"),
        ("   \n", None),
        ("", None),
    ],
)
def test_normalize_line(line: str, expected) -> None:
    assert normalize_line(line) == expected


def test_directory_source_lists_new_text_files_in_order(tmp_path: Path) -> None:
    for name in ("b.txt", "a.txt", "_done.txt", "skip.csv"):
        (tmp_path / name).write_text("1\n", encoding="utf-8")
    (tmp_path / "nested.txt").mkdir()

    source = DirectoryInputSource(tmp_path)
    batches = source.batches()
    assert [batch.name for batch in batches] == ["a.txt", "b.txt"]

    source.acknowledge(batches[0])
    assert (tmp_path / "_a.txt").exists()
    assert [batch.name for batch in source.batches()] == ["b.txt"]


def test_directory_source_missing_directory_is_empty(tmp_path: Path) -> None:
    assert DirectoryInputSource(tmp_path / "absent").batches() == []


def test_iterable_source_is_consumed_once() -> None:
    source = IterableInputSource(["A", "B"])
    (batch,) = source.batches()
    assert list(batch.iter_lines()) == ["A", "B"]
    source.acknowledge(batch)
    assert source.batches() == []


def test_outcomes_go_to_category_files(tmp_path: Path) -> None:
    paths = configure_run_logging(tmp_path, stamp="t")

    outcome_logger("success").info("7707083893 received")
    outcome_logger("invalid").warning("0000000000 not found")
    logging.getLogger("RegistryHarvest.batch_driver").error("unable to persist")
    close_run_logging()

    assert paths["success"].name == "success_t.log"
    assert "7707083893 received" in paths["success"].read_text(encoding="utf-8")
    assert "0000000000" in paths["invalid"].read_text(encoding="utf-8")
    assert "unable to persist" in paths["general"].read_text(encoding="utf-8")
    assert "7707083893" not in paths["general"].read_text(encoding="utf-8")
    assert not paths["retry"].exists()


def test_unknown_outcome_category() -> None:
    with pytest.raises(KeyError):
        outcome_logger("general")
    with pytest.raises(KeyError):
        outcome_logger("debug")


def test_reset_logs_dir_keeps_active_files(tmp_path: Path) -> None:
    (tmp_path / "success_old.log").write_text("old", encoding="utf-8")
    (tmp_path / "notes.txt").write_text("keep", encoding="utf-8")
    paths = configure_run_logging(tmp_path, stamp="new")
    outcome_logger("success").info("fresh line")

    assert reset_logs_dir(tmp_path) == 1
    assert paths["success"].resolve() in active_log_paths()
    assert paths["success"].exists()
    assert (tmp_path / "notes.txt").exists()
    assert not (tmp_path / "success_old.log").exists()
    assert reset_logs_dir(tmp_path / "absent") == 0


def test_unit_progress_folds_fatal_into_retry() -> None:
    with UnitProgress(total=10, enabled=True) as progress:
        progress.record_unit({"success": 3, "retry": 1, "fatal": 1, "invalid": 2})
        assert progress.enabled
        assert progress._bar.n == 7
        assert progress._counts == {"success": 3, "invalid": 2, "retry": 2}

    disabled = UnitProgress(total=10, enabled=False)
    disabled.record_unit({"success": 1})
    assert not disabled.enabled
