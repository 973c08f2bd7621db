from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, MutableMapping, Optional

from .batch_driver import BatchDriverConfig
from .dispatcher import DispatcherConfig
from .strategies import STRATEGIES

BACKENDS = ("async", "pool")


@dataclass(frozen=True)
class DispatchProfile:
    backend: str
    max_concurrency: int = 1
    requests_per_second: Optional[float] = None
    workers: int = 1
    worker_niceness: Optional[int] = None


@dataclass(frozen=True)
class SourceProfile:
    name: str
    description: str
    dispatch: DispatchProfile
    strategy: str = "default"
    pending_budget: Optional[int] = None
    stop_message: str = ""
    requests_length: int = 100
    failure_rate_threshold: float = 0.5
    min_unit_size_for_rate_check: int = 5
    backoff_minutes: float = 30.0
    update_mode: bool = True


PROFILE_REGISTRY: Dict[str, SourceProfile] = {
    "dadata": SourceProfile(
        name="dadata",
        description="Company lookup API with a free daily quota of requests.",
        dispatch=DispatchProfile(backend="async", max_concurrency=30, requests_per_second=17.0),
        strategy="dadata",
        pending_budget=8000,
        stop_message=(
            "The source refused further requests. Check the limits on requests per day, "
            "per second and new connections per minute."
        ),
    ),
    "nalogru-metadata": SourceProfile(
        name="nalogru-metadata",
        description="Registry extract metadata; one connection with a pause between requests.",
        dispatch=DispatchProfile(backend="async", max_concurrency=1, requests_per_second=1 / 1.5),
        strategy="default",
        stop_message="The source requires a captcha. Check the pause between requests.",
    ),
    "nalogru-pdf": SourceProfile(
        name="nalogru-pdf",
        description="Registry extract PDF downloads; files are written by the executor.",
        dispatch=DispatchProfile(backend="async", max_concurrency=1, requests_per_second=1 / 1.5),
        strategy="plain",
        stop_message="The source requires a captcha. Check the pause between requests.",
    ),
    "parser": SourceProfile(
        name="parser",
        description="Parse downloaded documents in isolated worker processes.",
        dispatch=DispatchProfile(
            backend="pool",
            workers=max(1, os.cpu_count() or 1),
            worker_niceness=5,
        ),
        strategy="plain",
    ),
}

DEFAULT_PROFILE = PROFILE_REGISTRY["dadata"]


def list_profiles() -> List[SourceProfile]:
    return list(PROFILE_REGISTRY.values())


def validate_profile_name(name: str) -> SourceProfile:
    key = name.strip().lower()
    if key not in PROFILE_REGISTRY:
        available = ", ".join(sorted(PROFILE_REGISTRY))
        raise KeyError(f"Unknown source profile '{name}'. Available: {available}")
    return PROFILE_REGISTRY[key]


@dataclass
class HarvestSettings:
    """Flat settings for one harvesting run, as assembled by the CLI."""

    working_dir: Path
    profile: str = DEFAULT_PROFILE.name
    backend: str = "async"
    strategy: str = "default"
    max_concurrency: int = 30
    requests_per_second: Optional[float] = 17.0
    workers: int = 1
    worker_niceness: Optional[int] = None
    requests_length: int = 100
    failure_rate_threshold: float = 0.5
    min_unit_size_for_rate_check: int = 5
    backoff_minutes: float = 30.0
    pending_limit: Optional[int] = None
    pending_budget: Optional[int] = None
    update_mode: bool = True
    clean_payloads: bool = False
    stop_message: str = ""
    per_file: int = 500
    db_file: str = "data.db"
    show_progress: bool = True
    strategy_options: Dict[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.working_dir = Path(self.working_dir).expanduser().resolve()
        if self.backend not in BACKENDS:
            raise ValueError(f"backend must be one of {', '.join(BACKENDS)}")
        if self.strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy '{self.strategy}'")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")
        if self.per_file < 1:
            raise ValueError("per_file must be >= 1")
        if self.backoff_minutes < 0:
            raise ValueError("backoff_minutes must be >= 0")
        self.driver_config()
        if self.backend == "async":
            self.dispatcher_config()

    def driver_config(self) -> BatchDriverConfig:
        return BatchDriverConfig(
            requests_length=self.requests_length,
            failure_rate_threshold=self.failure_rate_threshold,
            min_unit_size_for_rate_check=self.min_unit_size_for_rate_check,
            backoff_duration=self.backoff_minutes * 60.0,
            pending_limit=self.pending_limit,
            update_mode=self.update_mode,
            clean_payloads=self.clean_payloads,
            stop_message=self.stop_message,
            show_progress=self.show_progress,
        )

    def dispatcher_config(self) -> DispatcherConfig:
        return DispatcherConfig(
            max_concurrency=self.max_concurrency,
            requests_per_second=self.requests_per_second,
        )


def apply_profile_to_config(
    *,
    config: MutableMapping[str, object],
    profile: SourceProfile,
    workers_override: Optional[int] = None,
) -> None:
    dispatch = profile.dispatch
    config["profile"] = profile.name
    config["backend"] = dispatch.backend
    config["strategy"] = profile.strategy
    config["max_concurrency"] = dispatch.max_concurrency
    config["requests_per_second"] = dispatch.requests_per_second
    config["workers"] = workers_override if workers_override is not None else dispatch.workers
    config["worker_niceness"] = dispatch.worker_niceness
    config["pending_budget"] = profile.pending_budget
    config["stop_message"] = profile.stop_message
    config.setdefault("requests_length", profile.requests_length)
    config.setdefault("failure_rate_threshold", profile.failure_rate_threshold)
    config.setdefault("min_unit_size_for_rate_check", profile.min_unit_size_for_rate_check)
    config.setdefault("backoff_minutes", profile.backoff_minutes)
    config.setdefault("update_mode", profile.update_mode)


__all__ = [
    "DEFAULT_PROFILE",
    "DispatchProfile",
    "HarvestSettings",
    "PROFILE_REGISTRY",
    "SourceProfile",
    "apply_profile_to_config",
    "list_profiles",
    "validate_profile_name",
]
