"""Console and per-category log files for a harvesting run."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
OUTCOME_LOGGER = "RegistryHarvest.outcomes"
PACKAGE_LOGGER = "RegistryHarvest"

CATEGORY_FILES: Dict[str, str] = {
    "success": "success",
    "retry": "retry_errors",
    "invalid": "validation_errors",
    "general": "general_errors",
}

_installed: List[tuple] = []


def outcome_logger(category: str) -> logging.Logger:
    """Logger that receives one line per classified item of *category*."""

    if category not in CATEGORY_FILES or category == "general":
        raise KeyError(f"Unknown outcome category '{category}'")
    return logging.getLogger(f"{OUTCOME_LOGGER}.{category}")


def log_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d_%H-%M-%S")


def configure_run_logging(
    logs_dir: Optional[Path] = None,
    *,
    level: str = "INFO",
    stamp: Optional[str] = None,
) -> Dict[str, Path]:
    """Install the console handler and, when *logs_dir* is set, category files.

    Returns the mapping of category name to log file path. Calling this again
    replaces the handlers installed by the previous call.
    """

    close_run_logging()
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    outcomes = logging.getLogger(OUTCOME_LOGGER)
    outcomes.setLevel(logging.INFO)
    outcomes.propagate = False

    if logs_dir is None:
        return {}

    logs_dir.mkdir(parents=True, exist_ok=True)
    stamp = stamp or log_stamp()
    formatter = logging.Formatter(LOG_FORMAT)
    paths: Dict[str, Path] = {}
    for category, prefix in CATEGORY_FILES.items():
        path = logs_dir / f"{prefix}_{stamp}.log"
        handler = logging.FileHandler(path, mode="w", encoding="utf-8", delay=True)
        handler.setFormatter(formatter)
        if category == "general":
            handler.setLevel(logging.ERROR)
            target = logging.getLogger(PACKAGE_LOGGER)
        else:
            target = outcome_logger(category)
        target.addHandler(handler)
        _installed.append((target, handler))
        paths[category] = path
    return paths


def close_run_logging() -> None:
    while _installed:
        target, handler = _installed.pop()
        target.removeHandler(handler)
        handler.close()


def active_log_paths() -> Set[Path]:
    return {Path(handler.baseFilename).resolve() for _, handler in _installed}


def reset_logs_dir(logs_dir: Path) -> int:
    """Remove log files left by earlier runs; returns how many were removed.

    Files held by the handlers of the current run are kept.
    """

    if not logs_dir.exists():
        return 0
    keep = active_log_paths()
    removed = 0
    for path in logs_dir.iterdir():
        if path.resolve() in keep:
            continue
        if path.is_file() and path.suffix == ".log":
            path.unlink()
            removed += 1
    return removed


__all__ = [
    "CATEGORY_FILES",
    "LOG_FORMAT",
    "active_log_paths",
    "close_run_logging",
    "configure_run_logging",
    "log_stamp",
    "outcome_logger",
    "reset_logs_dir",
]
