"""Output files and reports derived from the status store."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import orjson

from .status_store import STATUS_INVALID, STATUS_RETRY, StatusStore

LOGGER = logging.getLogger(__name__)

DEFAULT_PER_FILE = 500
RETRY_IDS_FILE = "retry_ids.txt"
INVALID_IDS_FILE = "invalid_ids.txt"
RUN_REPORT_FILE = "run_report.json"


def _write_json(path: Path, payload: Any) -> None:
    path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2) + b"\n")


def _file_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H-%M-%S")


def _records(payload: Any, extractor: Optional[Callable[[Any], Any]]) -> List[Any]:
    items = payload if isinstance(payload, list) else [payload]
    if extractor is None:
        return list(items)
    return [extractor(item) for item in items]


def write_payload_files(
    store: StatusStore,
    output_dir: Path,
    *,
    per_file: int = DEFAULT_PER_FILE,
    only_successful: bool = True,
    extractor: Optional[Callable[[Any], Any]] = None,
    stamp: Optional[str] = None,
) -> List[Path]:
    """Write stored payloads as JSON arrays, *per_file* identifiers per file.

    A payload that is a list contributes each of its elements to the array.
    Files are named ``<stamp>_<n>.json``. Returns the written paths.
    """

    if per_file < 1:
        raise ValueError("per_file must be >= 1")
    output_dir.mkdir(parents=True, exist_ok=True)
    stamp = stamp or _file_stamp()

    written: List[Path] = []
    chunk: List[Any] = []
    ids_in_chunk = 0

    def flush() -> None:
        path = output_dir / f"{stamp}_{len(written) + 1}.json"
        _write_json(path, chunk)
        written.append(path)

    for _item_id, payload in store.iter_payloads(only_successful=only_successful):
        if ids_in_chunk >= per_file:
            flush()
            chunk = []
            ids_in_chunk = 0
        chunk.extend(_records(payload, extractor))
        ids_in_chunk += 1

    if ids_in_chunk or not written:
        flush()
    LOGGER.info("Wrote %d result files to %s", len(written), output_dir)
    return written


def write_results_if_complete(
    store: StatusStore,
    output_dir: Path,
    **kwargs: Any,
) -> List[Path]:
    """Write result files only when nothing is pending and something succeeded."""

    stats = store.collect_stats()
    if stats.pending or not stats.success:
        LOGGER.info(
            "Result files not written: pending=%d success=%d",
            stats.pending,
            stats.success,
        )
        return []
    return write_payload_files(store, output_dir, **kwargs)


def _write_id_list(path: Path, ids: Iterable[str]) -> Optional[Path]:
    ids = list(ids)
    if not ids:
        if path.exists():
            path.unlink()
        return None
    path.write_text("\n".join(ids) + "\n", encoding="utf-8")
    return path


def write_error_lists(store: StatusStore, reports_dir: Path) -> Tuple[Optional[Path], Optional[Path]]:
    """Write the retry and invalid id lists; stale lists are removed when empty."""

    reports_dir.mkdir(parents=True, exist_ok=True)
    retry_path = _write_id_list(reports_dir / RETRY_IDS_FILE, store.ids_with_status(STATUS_RETRY))
    invalid_path = _write_id_list(reports_dir / INVALID_IDS_FILE, store.ids_with_status(STATUS_INVALID))
    return retry_path, invalid_path


def write_run_report(
    store: StatusStore,
    reports_dir: Path,
    *,
    summary: Optional[Any] = None,
    error: Optional[BaseException] = None,
) -> Path:
    reports_dir.mkdir(parents=True, exist_ok=True)
    stats = store.collect_stats()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "store": stats.as_dict(),
        "attempted": stats.success + stats.invalid + stats.retry,
        "failed": stats.invalid + stats.retry,
    }
    if summary is not None:
        report["run"] = summary.as_dict()
    else:
        report["run"] = {"phase": "aborted"}
    if error is not None:
        report["error"] = f"{type(error).__name__}: {error}"

    path = reports_dir / RUN_REPORT_FILE
    _write_json(path, report)
    LOGGER.info("Run report written to %s", path)
    return path


def reset_reports_dir(reports_dir: Path) -> None:
    for name in (RETRY_IDS_FILE, INVALID_IDS_FILE, RUN_REPORT_FILE):
        path = reports_dir / name
        if path.exists():
            path.unlink()


__all__ = [
    "DEFAULT_PER_FILE",
    "INVALID_IDS_FILE",
    "RETRY_IDS_FILE",
    "RUN_REPORT_FILE",
    "reset_reports_dir",
    "write_error_lists",
    "write_payload_files",
    "write_results_if_complete",
    "write_run_report",
]
