"""tqdm progress over identifiers as dispatch units settle."""

from __future__ import annotations

from typing import Any, Dict, Optional

from tqdm.auto import tqdm


class ProgressBar:
    """Light wrapper around :class:`tqdm.tqdm` with graceful disable support."""

    def __init__(
        self,
        *,
        total: Optional[int] = None,
        enabled: bool = True,
        leave: bool = True,
        **kwargs: Any,
    ) -> None:
        self._bar = tqdm(total=total, leave=leave, **kwargs) if enabled else None

    @property
    def enabled(self) -> bool:
        return self._bar is not None

    def update(self, value: int = 1) -> None:
        if self._bar is not None:
            self._bar.update(value)

    def set_postfix(self, data: Optional[Dict[str, Any]] = None, refresh: bool = True) -> None:
        if self._bar is not None and data is not None:
            self._bar.set_postfix(data, refresh=refresh)

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()

    def __enter__(self) -> "ProgressBar":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:  # type: ignore[override]
        self.close()


class UnitProgress(ProgressBar):
    """Progress over identifiers, advanced once per settled dispatch unit."""

    def __init__(self, *, total: Optional[int], enabled: bool = True) -> None:
        super().__init__(total=total, enabled=enabled, desc="identifiers", unit="id")
        self._counts = {"success": 0, "invalid": 0, "retry": 0}

    def record_unit(self, counts: Dict[str, int]) -> None:
        self._counts["success"] += counts.get("success", 0)
        self._counts["invalid"] += counts.get("invalid", 0)
        self._counts["retry"] += counts.get("retry", 0) + counts.get("fatal", 0)
        self.update(sum(counts.values()))
        self.set_postfix(dict(self._counts))


__all__ = [
    "ProgressBar",
    "UnitProgress",
]
