#!/usr/bin/env python3

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_ROOT = PROJECT_ROOT / "src"
for candidate in (SRC_ROOT, PROJECT_ROOT):
    candidate_str = str(candidate)
    if candidate.exists() and candidate_str not in sys.path:
        sys.path.insert(0, candidate_str)

from RegistryHarvest.run_logging import configure_run_logging, close_run_logging
from RegistryHarvest.runner import WorkingLayout, harvest
from RegistryHarvest.source_profiles import (
    HarvestSettings,
    apply_profile_to_config,
    list_profiles,
    validate_profile_name,
)

EXIT_OK = 0
EXIT_CRASH = 1
EXIT_RETRY_ERRORS = 2
EXIT_STOPPED = 3


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Expected integer") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError("Value must be >= 1")
    return parsed


def _non_negative_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Expected float") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("Value must be >= 0")
    return parsed


def _rate(value: str) -> float:
    parsed = _non_negative_float(value)
    if parsed >= 1:
        raise argparse.ArgumentTypeError("Failure rate must be below 1")
    return parsed


def _callable_ref(value: str) -> str:
    if ":" not in value:
        raise argparse.ArgumentTypeError("Expected module:callable")
    module_name, attribute = value.split(":", 1)
    if not module_name or not attribute:
        raise argparse.ArgumentTypeError("Expected module:callable")
    return value


def load_callable(reference: str) -> Callable[..., Any]:
    module_name, attribute = reference.split(":", 1)
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise TypeError(f"{reference} is not callable")
    return target


def _profile_help() -> str:
    lines = ["Source profiles:"]
    for profile in list_profiles():
        dispatch = profile.dispatch
        if dispatch.backend == "pool":
            pacing = f"workers={dispatch.workers}"
        else:
            rps = (
                f"{dispatch.requests_per_second:.2f}/s"
                if dispatch.requests_per_second is not None
                else "unthrottled"
            )
            pacing = f"concurrency={dispatch.max_concurrency}, rate={rps}"
        budget = f", budget={profile.pending_budget}" if profile.pending_budget else ""
        lines.append(f"  {profile.name:<17} - {profile.description} ({pacing}{budget})")
    return "\n".join(lines)


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Harvest registry records for identifiers listed in input files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=_profile_help(),
    )

    parser.add_argument(
        "--executor",
        type=_callable_ref,
        default=None,
        help="Request executor as module:callable (required unless --profile-info)",
    )
    parser.add_argument(
        "--extractor",
        type=_callable_ref,
        default=None,
        help="Payload extractor as module:callable applied before storing",
    )
    parser.add_argument(
        "--working-dir",
        type=Path,
        default=Path("."),
        help="Directory holding input/, output/, logs/, reports/ and the database",
    )
    parser.add_argument(
        "--db-file",
        default="data.db",
        help="SQLite database file name inside the working directory",
    )
    parser.add_argument(
        "--profile",
        choices=[profile.name for profile in list_profiles()],
        default="dadata",
        help="Source profile to apply",
    )
    parser.add_argument(
        "--requests-length",
        type=_positive_int,
        default=None,
        help="Identifiers per dispatch unit (profile default)",
    )
    parser.add_argument(
        "--failure-rate",
        type=_rate,
        default=None,
        help="Failure rate that triggers a backoff, then a stop (profile default)",
    )
    parser.add_argument(
        "--backoff-minutes",
        type=_non_negative_float,
        default=None,
        help="Minutes to pause after the first high-failure unit (profile default)",
    )
    parser.add_argument(
        "--pending-limit",
        type=_positive_int,
        default=None,
        help="Maximum identifiers dispatched in this run",
    )
    parser.add_argument(
        "--workers",
        type=_positive_int,
        default=None,
        help="Worker processes for the pool backend (profile default)",
    )
    parser.add_argument(
        "--per-file",
        type=_positive_int,
        default=500,
        help="Identifiers per output JSON file",
    )
    parser.add_argument(
        "--no-update-mode",
        action="store_true",
        help="Reuse stored payloads instead of requesting known identifiers again",
    )
    parser.add_argument(
        "--clean-payloads",
        action="store_true",
        help="Drop stored payloads when a new input batch arrives",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging verbosity",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the progress bar",
    )
    parser.add_argument(
        "--profile-info",
        action="store_true",
        help="Print profile descriptions and exit",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> HarvestSettings:
    config_values: Dict[str, object] = {
        "working_dir": args.working_dir,
        "db_file": args.db_file,
        "per_file": args.per_file,
        "clean_payloads": args.clean_payloads,
        "show_progress": not args.no_progress,
        "pending_limit": args.pending_limit,
    }
    if args.requests_length is not None:
        config_values["requests_length"] = args.requests_length
    if args.failure_rate is not None:
        config_values["failure_rate_threshold"] = args.failure_rate
    if args.backoff_minutes is not None:
        config_values["backoff_minutes"] = args.backoff_minutes
    if args.no_update_mode:
        config_values["update_mode"] = False

    profile = validate_profile_name(args.profile)
    apply_profile_to_config(
        config=config_values,
        profile=profile,
        workers_override=args.workers,
    )
    return HarvestSettings(**config_values)  # type: ignore[arg-type]


def configure_logging(level: str, logs_dir: Optional[Path] = None) -> None:
    configure_run_logging(logs_dir, level=level)


def main(argv: List[str]) -> int:
    args = parse_args(argv)
    if args.profile_info:
        print(_profile_help())
        return EXIT_OK
    if args.executor is None:
        print("--executor is required", file=sys.stderr)
        return EXIT_CRASH

    try:
        settings = build_config(args)
        layout = WorkingLayout(settings.working_dir, db_file_name=settings.db_file)
        layout.ensure()
        configure_logging(args.log_level, layout.logs_dir)
        executor = load_callable(args.executor)
        extractor = load_callable(args.extractor) if args.extractor else None
        summary = asyncio.run(harvest(settings, executor, extractor=extractor, layout=layout))
    except Exception as exc:
        logging.exception("Harvesting failed: %s", exc)
        return EXIT_CRASH
    finally:
        close_run_logging()

    stats = summary.stats
    logging.info(
        "Summary: total=%d distinct=%d success=%d invalid=%d retry=%d raw=%d duration=%.2fs",
        stats.total,
        stats.distinct,
        stats.success,
        stats.invalid,
        stats.retry,
        stats.raw,
        summary.duration_seconds,
    )
    if summary.ended_with_stop_error:
        logging.error("Run stopped by the source. %s", summary.stop_message)
        return EXIT_STOPPED
    if summary.stopped:
        logging.error("Run stopped after repeated high failure rates")
        return EXIT_STOPPED
    return EXIT_RETRY_ERRORS if summary.ended_with_retry_errors else EXIT_OK


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
