from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

PROCESSED_PREFIX = "_"
INPUT_SUFFIX = ".txt"

_WHITESPACE = re.compile(r"\s+")


def normalize_line(line: str) -> Optional[str]:
    """Return the identifier token for *line*, or None for blank lines.

    Surrounding whitespace is dropped and inner runs collapse to one space,
    so an optional secondary qualifier survives as ``"<id> <qualifier>"``.
    """

    token = _WHITESPACE.sub(" ", line.replace("\ufeff", "")).strip()
    return token or None


@dataclass(frozen=True)
class InputBatch:
    name: str
    path: Optional[Path] = None
    lines: Sequence[str] = field(default_factory=tuple)

    def iter_lines(self) -> Iterator[str]:
        if self.path is None:
            yield from self.lines
            return
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                yield line


class DirectoryInputSource:
    """New ``.txt`` files in *input_dir*, one identifier per line.

    A file whose name starts with ``_`` has already been ingested; on
    acknowledgement a file is renamed with that prefix.
    """

    def __init__(self, input_dir: Path, *, suffix: str = INPUT_SUFFIX):
        self.input_dir = Path(input_dir).expanduser().resolve()
        self.suffix = suffix

    def batches(self) -> List[InputBatch]:
        if not self.input_dir.exists():
            return []
        batches: List[InputBatch] = []
        for path in sorted(self.input_dir.iterdir()):
            if not path.is_file():
                continue
            if path.name.startswith(PROCESSED_PREFIX):
                continue
            if not path.name.endswith(self.suffix):
                continue
            batches.append(InputBatch(name=path.name, path=path))
        return batches

    def acknowledge(self, batch: InputBatch) -> None:
        if batch.path is None:
            return
        target = batch.path.with_name(PROCESSED_PREFIX + batch.path.name)
        batch.path.rename(target)
        LOGGER.info("Marked input file %s as processed", batch.name)


class IterableInputSource:
    """Identifiers supplied in memory, ingested once."""

    def __init__(self, lines: Iterable[str], *, name: str = "memory"):
        self._batch: Optional[InputBatch] = InputBatch(name=name, lines=tuple(lines))

    def batches(self) -> List[InputBatch]:
        return [self._batch] if self._batch is not None else []

    def acknowledge(self, batch: InputBatch) -> None:
        if batch is self._batch:
            self._batch = None


__all__ = [
    "DirectoryInputSource",
    "InputBatch",
    "IterableInputSource",
    "normalize_line",
]
