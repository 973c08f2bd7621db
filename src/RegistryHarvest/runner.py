from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Optional

from .batch_driver import BatchDriver, RunSummary
from .dispatcher import BoundedDispatcher
from .exports import (
    DEFAULT_PER_FILE,
    reset_reports_dir,
    write_error_lists,
    write_results_if_complete,
    write_run_report,
)
from .failures import StorageError
from .input_source import DirectoryInputSource
from .run_logging import reset_logs_dir
from .source_profiles import HarvestSettings
from .status_store import StatusStore
from .strategies import strategy_for
from .worker_pool import WorkerPool

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingLayout:
    """Directory layout of a harvesting working directory."""

    root: Path
    input_dir_name: str = "input"
    output_dir_name: str = "output"
    logs_dir_name: str = "logs"
    reports_dir_name: str = "reports"
    db_file_name: str = "data.db"

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser().resolve())

    @property
    def input_dir(self) -> Path:
        return self.root / self.input_dir_name

    @property
    def output_dir(self) -> Path:
        return self.root / self.output_dir_name

    @property
    def logs_dir(self) -> Path:
        return self.root / self.logs_dir_name

    @property
    def reports_dir(self) -> Path:
        return self.root / self.reports_dir_name

    @property
    def db_path(self) -> Path:
        return self.root / self.db_file_name

    def ensure(self) -> List[Path]:
        created: List[Path] = []
        for directory in (self.input_dir, self.output_dir, self.logs_dir, self.reports_dir):
            if not directory.exists():
                directory.mkdir(parents=True)
                created.append(directory)
        return created

    def clean_before_start(self) -> None:
        """Forget logs and reports of the previous input batch."""

        removed = reset_logs_dir(self.logs_dir)
        reset_reports_dir(self.reports_dir)
        LOGGER.debug("Removed %d old log files", removed)


def _write_reports(
    driver: BatchDriver,
    reports_dir: Path,
    *,
    summary: Optional[RunSummary],
    error: Optional[BaseException],
) -> None:
    try:
        write_run_report(driver.store, reports_dir, summary=summary, error=error)
        write_error_lists(driver.store, reports_dir)
    except (StorageError, OSError):
        LOGGER.exception("Unable to write run reports to %s", reports_dir)


async def run_and_report(
    driver: BatchDriver,
    *,
    reports_dir: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    per_file: int = DEFAULT_PER_FILE,
) -> RunSummary:
    """Run *driver*, write results when complete, and always write reports.

    Errors raised by the run are logged and re-raised after the reports
    for whatever state reached the store have been written.
    """

    summary: Optional[RunSummary] = None
    error: Optional[BaseException] = None
    try:
        summary = await driver.run()
        if output_dir is not None:
            write_results_if_complete(driver.store, output_dir, per_file=per_file)
        return summary
    except Exception as exc:
        error = exc
        LOGGER.exception("Harvesting run aborted: %s", exc)
        raise
    finally:
        if reports_dir is not None:
            _write_reports(driver, reports_dir, summary=summary, error=error)


def build_dispatcher(
    settings: HarvestSettings,
    executor: Callable[[Any], Any],
    *,
    on_error: Optional[Callable[[Exception], None]] = None,
):
    if settings.backend == "pool":
        return WorkerPool(
            executor,
            settings.workers,
            niceness=settings.worker_niceness,
            on_error=on_error,
        )
    return BoundedDispatcher(executor, settings.dispatcher_config())


async def harvest(
    settings: HarvestSettings,
    executor: Callable[[Any], Any],
    *,
    extractor: Optional[Callable[[Any], Any]] = None,
    layout: Optional[WorkingLayout] = None,
) -> RunSummary:
    """Run one harvesting pass over ``settings.working_dir``.

    New input files are ingested, pending identifiers are dispatched with the
    configured backend, and reports land in the layout's reports directory.
    """

    layout = layout or WorkingLayout(settings.working_dir, db_file_name=settings.db_file)
    created = layout.ensure()
    if created:
        LOGGER.info("Created working directories: %s", ", ".join(str(path) for path in created))

    strategy_options = dict(settings.strategy_options)
    strategy_options.setdefault("pending_budget", settings.pending_budget)
    strategy = strategy_for(settings.strategy, **strategy_options)

    dispatcher = build_dispatcher(
        settings,
        executor,
        on_error=lambda error: LOGGER.error("Worker pool event: %s", error),
    )
    try:
        with StatusStore(layout.db_path) as store:
            driver = BatchDriver(
                store,
                dispatcher,
                strategy=strategy,
                config=settings.driver_config(),
                input_source=DirectoryInputSource(layout.input_dir),
                extractor=extractor or (lambda payload: payload),
                on_fresh_input=layout.clean_before_start,
            )
            return await run_and_report(
                driver,
                reports_dir=layout.reports_dir,
                output_dir=layout.output_dir,
                per_file=settings.per_file,
            )
    finally:
        if isinstance(dispatcher, WorkerPool):
            dispatcher.drain()


__all__ = [
    "WorkingLayout",
    "build_dispatcher",
    "harvest",
    "run_and_report",
]
