"""
NIGHTSHIFT State Store - The tracker as an eventually-consistent cache

The tracker is the only durable store for work items, and its API is
rate-limited with high round-trip latency. So:

  - One bulk snapshot per loop iteration (`refresh`); every read is served
    from it with zero extra round-trips.
  - Writes (`set_status`, `append_log`, `create_child`) are live
    round-trips followed by a single-item re-read that refreshes the
    snapshot entry and verifies the write landed.
  - A write that does not read back is rejected, never assumed.

There is no compare-and-swap underneath; read-verify-write gives
last-writer-wins, so only one orchestrator may run per scope.
"""

from __future__ import annotations

import json
from typing import Any

from loguru import logger

from nightshift import records
from nightshift.models import BlockKind, ItemStatus, WorkItem, check_transition
from nightshift.records import Record, RecordKind
from nightshift.tracker import RawItem, TrackerBackend, TrackerError


class TransientStoreError(Exception):
    """A write could not be verified. Retry on the next iteration."""
    pass


class StatusUpdateRejected(TransientStoreError):
    pass


class RecordAppendRejected(TransientStoreError):
    pass


class SnapshotUnavailable(Exception):
    """The bulk read failed; the current iteration cannot proceed."""
    pass


class DepthLimitExceeded(Exception):
    """Creating a derived item would exceed the recursion bound."""

    def __init__(self, parent_id: str, depth: int, max_depth: int):
        self.parent_id = parent_id
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Deriving from {parent_id} would create depth {depth} (max {max_depth})"
        )


LINEAGE_PARENT = "spawned-from:"
LINEAGE_DEPTH = "depth:"


# ---------------------------------------------------------------------------
# Hydration
# ---------------------------------------------------------------------------

def hydrate(raw: RawItem) -> WorkItem:
    """Turn a raw tracker item into a WorkItem using labels and records."""
    try:
        status = ItemStatus(raw.status) if raw.status else ItemStatus.BACKLOG
    except ValueError:
        logger.debug(f"[STORE] {raw.id}: unknown status {raw.status!r}, treating as Backlog")
        status = ItemStatus.BACKLOG

    parent = None
    depth = 0
    for label in raw.labels:
        if label.startswith(LINEAGE_PARENT):
            parent = label[len(LINEAGE_PARENT):]
        elif label.startswith(LINEAGE_DEPTH) and label[len(LINEAGE_DEPTH):].isdigit():
            depth = int(label[len(LINEAGE_DEPTH):])

    stream = records.extract_stream(raw.comments)
    item = WorkItem(
        id=raw.id,
        title=raw.title,
        status=status,
        depth=depth,
        parent=parent,
        priority=raw.priority,
        created_at=raw.created_at,
        labels=list(raw.labels),
        records=stream,
    )

    assigned = records.latest(stream, RecordKind.ASSIGNED)
    if assigned:
        item.attempt = int(assigned.get("attempt", 0))
        item.research_cycles = int(assigned.get("research_cycles", 0))

    blocked = records.latest(stream, RecordKind.BLOCKED)
    if blocked:
        try:
            item.block_kind = BlockKind(blocked.get("kind", BlockKind.PERMANENT.value))
        except ValueError:
            item.block_kind = BlockKind.PERMANENT
        item.block_reason = blocked.get("reason", "")
    if status == ItemStatus.BLOCKED:
        if blocked is None:
            # Blocked by a human, outside of the orchestrator.
            item.block_kind = BlockKind.PERMANENT
        elif item.block_kind == BlockKind.DEPENDENCY:
            item.depends_on_children = set(blocked.get("children", []))

    completed = records.latest(stream, RecordKind.COMPLETED)
    if completed and completed.get("change"):
        item.change_ref = str(completed.get("change"))
    elif raw.linked_changes:
        item.change_ref = raw.linked_changes[-1]

    return item


def _normalized(payload: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(payload, default=str))


# ---------------------------------------------------------------------------
# State Store
# ---------------------------------------------------------------------------

class StateStore:
    """Snapshot-cached adapter over a TrackerBackend."""

    def __init__(self, backend: TrackerBackend):
        self.backend = backend
        self._snapshot: dict[str, WorkItem] = {}
        self._loaded = False

    # -- reads ----------------------------------------------------------------

    def refresh(self) -> None:
        """Replace the snapshot with one bulk read from the tracker."""
        try:
            raw_items = self.backend.fetch_items()
        except Exception as e:
            raise SnapshotUnavailable(f"Could not read tracker snapshot: {e}") from e
        self._snapshot = {raw.id: hydrate(raw) for raw in raw_items}
        self._loaded = True
        logger.debug(f"[STORE] Snapshot refreshed: {len(self._snapshot)} items")

    @property
    def loaded(self) -> bool:
        return self._loaded

    def get(self, item_id: str) -> WorkItem:
        try:
            return self._snapshot[item_id]
        except KeyError:
            raise KeyError(f"Unknown work item: {item_id}") from None

    def find(self, item_id: str) -> WorkItem | None:
        return self._snapshot.get(item_id)

    def items(self) -> list[WorkItem]:
        return sorted(self._snapshot.values(), key=WorkItem.sort_key)

    def list_by_status(self, status: ItemStatus) -> list[WorkItem]:
        return [item for item in self.items() if item.status == status]

    def latest_record(self, item_id: str, kind: RecordKind | str) -> Record | None:
        return self.get(item_id).latest_record(kind)

    def children_of(self, parent_id: str) -> list[WorkItem]:
        return [item for item in self.items() if item.parent == parent_id]

    # -- writes ---------------------------------------------------------------

    def _reload(self, item_id: str) -> WorkItem | None:
        raw = self.backend.fetch_item(item_id)
        if raw is None:
            self._snapshot.pop(item_id, None)
            return None
        item = hydrate(raw)
        self._snapshot[item_id] = item
        return item

    def set_status(self, item_id: str, status: ItemStatus) -> WorkItem:
        """
        Write a status, then re-read to confirm.

        Raises InvalidTransition for edges outside the lifecycle graph and
        StatusUpdateRejected when the tracker does not read back `status`.
        """
        item = self.get(item_id)
        check_transition(item.id, item.status, status)
        if item.status == status:
            return item

        try:
            self.backend.update_status(item_id, status)
            confirmed = self._reload(item_id)
        except TrackerError as e:
            raise StatusUpdateRejected(f"{item_id}: status write failed: {e}") from e

        if confirmed is None or confirmed.status != status:
            seen = confirmed.status.value if confirmed else "missing"
            raise StatusUpdateRejected(
                f"{item_id}: wrote {status.value} but read back {seen}"
            )
        logger.info(f"[STORE] {item_id}: {item.status.value} -> {status.value}")
        return confirmed

    def append_log(
        self,
        item_id: str,
        kind: RecordKind | str,
        payload: dict[str, Any],
        summary: str = "",
    ) -> Record:
        """Post a structured record and confirm it is the latest of its kind."""
        self.get(item_id)
        body = records.render(kind, payload, summary)
        try:
            self.backend.post_comment(item_id, body)
            confirmed = self._reload(item_id)
        except TrackerError as e:
            raise RecordAppendRejected(f"{item_id}: record write failed: {e}") from e

        record = confirmed.latest_record(kind) if confirmed else None
        if record is None or record.payload != _normalized(payload):
            tag = kind.value if isinstance(kind, RecordKind) else kind
            raise RecordAppendRejected(f"{item_id}: {tag} record not visible after write")
        return record

    def create_child(self, parent_id: str, title: str, body: str, max_depth: int) -> WorkItem:
        """Create a derived item one level deeper than its parent, in Ready."""
        parent = self.get(parent_id)
        depth = parent.depth + 1
        if depth > max_depth:
            raise DepthLimitExceeded(parent_id, depth, max_depth)

        labels = [f"{LINEAGE_PARENT}{parent_id}", f"{LINEAGE_DEPTH}{depth}"]
        try:
            child_id = self.backend.create_item(title, body, labels, ItemStatus.READY)
            child = self._reload(child_id)
        except TrackerError as e:
            raise RecordAppendRejected(f"{parent_id}: child creation failed: {e}") from e
        if child is None:
            raise RecordAppendRejected(f"{parent_id}: child {child_id} not visible after creation")
        logger.info(f"[STORE] {parent_id}: derived {child_id} at depth {depth}")
        return child
