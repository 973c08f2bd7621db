"""Per-source hooks composed into :class:`BatchDriver`.

A strategy decides how an identifier is recorded on ingestion, how many
pending ids a single run may take, what request is sent for an id, and
which id a successful payload belongs to.
"""

from __future__ import annotations

from typing import Any, Optional

from .failures import WorkItem
from .status_store import StatusStore


class RequestStrategy:
    """Default strategy for sources whose payloads are stored and reused."""

    name = "default"

    def __init__(self, *, pending_budget: Optional[int] = None):
        if pending_budget is not None and pending_budget < 1:
            raise ValueError("pending_budget must be >= 1 when set")
        self.pending_budget = pending_budget

    def insert_request(self, store: StatusStore, item_id: str, *, update_mode: bool) -> str:
        return store.insert(item_id, update_mode=update_mode)

    def build_request(self, item_id: str) -> Any:
        return item_id

    def build_unit(self, item_ids) -> list:
        return [WorkItem(id=item_id, request=self.build_request(item_id)) for item_id in item_ids]

    def success_id(self, item: WorkItem, payload: Any) -> str:
        return item.id


class PlainStrategy(RequestStrategy):
    """Sources that produce files rather than payloads (e.g. PDF downloads).

    Every ingested id starts as ``raw`` regardless of update mode because
    there is no stored payload to reuse.
    """

    name = "plain"

    def insert_request(self, store: StatusStore, item_id: str, *, update_mode: bool) -> str:
        return store.insert(item_id, update_mode=True)


class DadataStrategy(RequestStrategy):
    """Company lookup API: one query per id, optionally with branches."""

    name = "dadata"
    max_branches = 20

    def __init__(
        self,
        *,
        pending_budget: Optional[int] = 8000,
        with_branches: bool = False,
        branches_count: int = 20,
    ):
        super().__init__(pending_budget=pending_budget)
        if not (1 <= branches_count <= self.max_branches):
            raise ValueError(f"branches_count must be between 1 and {self.max_branches}")
        self.with_branches = with_branches
        self.branches_count = branches_count

    def build_request(self, item_id: str) -> dict:
        if self.with_branches:
            return {"query": item_id, "count": self.branches_count}
        return {"query": item_id, "branch_type": "MAIN"}

    def success_id(self, item: WorkItem, payload: Any) -> str:
        # Suggestions come back as a list; the first entry carries the INN.
        try:
            return str(payload[0]["data"]["inn"])
        except (IndexError, KeyError, TypeError):
            return item.id


STRATEGIES = {
    RequestStrategy.name: RequestStrategy,
    PlainStrategy.name: PlainStrategy,
    DadataStrategy.name: DadataStrategy,
}


def strategy_for(name: str, **kwargs: Any) -> RequestStrategy:
    try:
        factory = STRATEGIES[name]
    except KeyError as exc:
        available = ", ".join(sorted(STRATEGIES))
        raise KeyError(f"Unknown request strategy '{name}'. Available: {available}") from exc
    return factory(**kwargs)


__all__ = [
    "DadataStrategy",
    "PlainStrategy",
    "RequestStrategy",
    "STRATEGIES",
    "strategy_for",
]
