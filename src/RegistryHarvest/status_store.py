"""SQLite-backed persistence for identifier status and result payloads."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import orjson

from .failures import StorageError

LOGGER = logging.getLogger(__name__)

STATUS_RAW = "raw"
STATUS_SUCCESS = "success"
STATUS_INVALID = "invalid"
STATUS_RETRY = "retry"
STATUSES = (STATUS_RAW, STATUS_SUCCESS, STATUS_INVALID, STATUS_RETRY)
PENDING_STATUSES = (STATUS_RAW, STATUS_RETRY)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS requests (
    id INTEGER PRIMARY KEY,
    item_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('raw', 'success', 'invalid', 'retry'))
);
CREATE INDEX IF NOT EXISTS requests_item_id ON requests (item_id);
CREATE INDEX IF NOT EXISTS requests_status ON requests (status);
CREATE TABLE IF NOT EXISTS payloads (
    item_id TEXT PRIMARY KEY,
    payload BLOB NOT NULL
);
"""


class PendingId(NamedTuple):
    cursor: int
    item_id: str


@dataclass(frozen=True)
class StoreStats:
    total: int
    distinct: int
    raw: int
    success: int
    invalid: int
    retry: int

    @property
    def duplicates(self) -> int:
        return self.total - self.distinct

    @property
    def pending(self) -> int:
        return self.raw + self.retry

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "distinct": self.distinct,
            "duplicates": self.duplicates,
            "raw": self.raw,
            "success": self.success,
            "invalid": self.invalid,
            "retry": self.retry,
        }


def _encode(payload: Any) -> bytes:
    return orjson.dumps(payload, option=orjson.OPT_NON_STR_KEYS)


def _decode(blob: bytes) -> Any:
    return orjson.loads(blob)


class StatusStore:
    """Durable table of identifier statuses plus the last payload per id.

    Identifier rows are kept per input line, so an id that appeared twice in
    the input counts twice in ``total`` but is selected for dispatch once.
    """

    def __init__(self, db_path: Path | str = ":memory:"):
        self.db_path = db_path if db_path == ":memory:" else Path(db_path)
        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(self.db_path))
            with self._conn:
                self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to open status store at {self.db_path}: {exc}") from exc
        LOGGER.debug("Opened status store %s", self.db_path)

    # -- Lifecycle -----------------------------------------------------------------

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "StatusStore":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:  # type: ignore[override]
        self.close()

    # -- Writes --------------------------------------------------------------------

    def reset(self, *, clear_payloads: bool = False) -> None:
        """Delete all identifier rows, and payloads too when requested."""

        try:
            with self._conn:
                self._conn.execute("DELETE FROM requests")
                if clear_payloads:
                    self._conn.execute("DELETE FROM payloads")
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to reset status store: {exc}") from exc
        LOGGER.info("Status store reset (payloads cleared=%s)", clear_payloads)

    def insert(self, item_id: str, *, update_mode: bool = True) -> str:
        """Insert one identifier row and return the status it was given.

        Outside update mode an id that already has a stored payload is
        recorded as ``success`` straight away and never dispatched.
        """

        try:
            status = STATUS_RAW
            if not update_mode and self._has_payload(item_id):
                status = STATUS_SUCCESS
            with self._conn:
                self._conn.execute(
                    "INSERT INTO requests (item_id, status) VALUES (?, ?)",
                    (item_id, status),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to insert {item_id}: {exc}") from exc
        return status

    def update_status(
        self,
        *,
        success: Sequence[Tuple[str, Any]] = (),
        invalid: Sequence[str] = (),
        retry: Sequence[str] = (),
    ) -> None:
        """Apply one unit's transitions and payload upserts atomically."""

        try:
            with self._conn:
                for item_id, payload in success:
                    self._set_status(item_id, STATUS_SUCCESS)
                    self._conn.execute(
                        "INSERT INTO payloads (item_id, payload) VALUES (?, ?) "
                        "ON CONFLICT (item_id) DO UPDATE SET payload = excluded.payload",
                        (item_id, _encode(payload)),
                    )
                for item_id in invalid:
                    self._set_status(item_id, STATUS_INVALID)
                for item_id in retry:
                    self._set_status(item_id, STATUS_RETRY)
        except (sqlite3.Error, orjson.JSONEncodeError) as exc:
            raise StorageError(f"Failed to update statuses: {exc}") from exc

    def _set_status(self, item_id: str, status: str) -> None:
        self._conn.execute("UPDATE requests SET status = ? WHERE item_id = ?", (status, item_id))

    # -- Reads ---------------------------------------------------------------------

    def select_pending(
        self,
        limit: int,
        *,
        after: int = 0,
        statuses: Sequence[str] = PENDING_STATUSES,
    ) -> List[PendingId]:
        """Return up to *limit* distinct pending ids in first-insertion order.

        ``after`` is the cursor of the last id already taken in this run, so
        ids re-marked ``retry`` during the run are not selected again.
        """

        if limit <= 0 or not statuses:
            return []
        placeholders = ", ".join("?" for _ in statuses)
        query = (
            "SELECT MIN(id) AS cursor, item_id FROM requests "
            f"WHERE status IN ({placeholders}) "
            "GROUP BY item_id HAVING MIN(id) > ? "
            "ORDER BY cursor LIMIT ?"
        )
        try:
            rows = self._conn.execute(query, (*statuses, after, limit)).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to select pending ids: {exc}") from exc
        return [PendingId(cursor=row[0], item_id=row[1]) for row in rows]

    def count_pending(self) -> int:
        return self._scalar(
            "SELECT COUNT(DISTINCT item_id) FROM requests WHERE status IN (?, ?)",
            PENDING_STATUSES,
        )

    def collect_stats(self) -> StoreStats:
        try:
            total, distinct = self._conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT item_id) FROM requests"
            ).fetchone()
            counts = dict(
                self._conn.execute(
                    "SELECT status, COUNT(*) FROM requests GROUP BY status"
                ).fetchall()
            )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to collect stats: {exc}") from exc
        return StoreStats(
            total=total,
            distinct=distinct,
            raw=counts.get(STATUS_RAW, 0),
            success=counts.get(STATUS_SUCCESS, 0),
            invalid=counts.get(STATUS_INVALID, 0),
            retry=counts.get(STATUS_RETRY, 0),
        )

    def ids_with_status(self, status: str) -> List[str]:
        if status not in STATUSES:
            raise ValueError(f"Unknown status '{status}'")
        try:
            rows = self._conn.execute(
                "SELECT DISTINCT item_id FROM requests WHERE status = ? ORDER BY item_id",
                (status,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to list {status} ids: {exc}") from exc
        return [row[0] for row in rows]

    def payload(self, item_id: str) -> Optional[Any]:
        try:
            row = self._conn.execute(
                "SELECT payload FROM payloads WHERE item_id = ?", (item_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read payload for {item_id}: {exc}") from exc
        return None if row is None else _decode(row[0])

    def iter_payloads(self, *, only_successful: bool = True) -> Iterator[Tuple[str, Any]]:
        """Yield ``(item_id, payload)`` pairs ordered by id.

        With ``only_successful`` the payloads are limited to ids whose current
        row is ``success``; otherwise every stored payload is returned.
        """

        if only_successful:
            query = (
                "SELECT p.item_id, p.payload FROM payloads p "
                "WHERE EXISTS (SELECT 1 FROM requests r WHERE r.item_id = p.item_id AND r.status = ?) "
                "ORDER BY p.item_id"
            )
            params: Tuple[Any, ...] = (STATUS_SUCCESS,)
        else:
            query = "SELECT item_id, payload FROM payloads ORDER BY item_id"
            params = ()
        try:
            rows = self._conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read payloads: {exc}") from exc
        for item_id, blob in rows:
            yield item_id, _decode(blob)

    # -- Helpers -------------------------------------------------------------------

    def _has_payload(self, item_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM payloads WHERE item_id = ?", (item_id,)
        ).fetchone()
        return row is not None

    def _scalar(self, query: str, params: Sequence[Any] = ()) -> int:
        try:
            row = self._conn.execute(query, tuple(params)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Store query failed: {exc}") from exc
        return int(row[0]) if row else 0


__all__ = [
    "PENDING_STATUSES",
    "PendingId",
    "STATUSES",
    "STATUS_INVALID",
    "STATUS_RAW",
    "STATUS_RETRY",
    "STATUS_SUCCESS",
    "StatusStore",
    "StoreStats",
]
