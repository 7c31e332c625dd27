import pytest

from nightshift.models import BlockKind, InvalidTransition, ItemStatus
from nightshift.records import RecordKind
from nightshift.store import (
    DepthLimitExceeded,
    RecordAppendRejected,
    SnapshotUnavailable,
    StatusUpdateRejected,
    TransientStoreError,
    hydrate,
)


def test_hydrate_reads_counters_lineage_and_block_state(tracker):
    raw = tracker.add("12", status=ItemStatus.BLOCKED, labels=["spawned-from:3", "depth:2", "backend"])
    tracker.comment("12", RecordKind.ASSIGNED, {"attempt": 1, "research_cycles": 0})
    tracker.comment("12", RecordKind.ASSIGNED, {"attempt": 3, "research_cycles": 2})
    tracker.comment("12", RecordKind.BLOCKED, {"kind": "dependency", "reason": "needs api", "children": ["20", "21"]})

    item = hydrate(raw)

    assert item.attempt == 3
    assert item.research_cycles == 2
    assert item.parent == "3"
    assert item.depth == 2
    assert item.block_kind == BlockKind.DEPENDENCY
    assert item.depends_on_children == {"20", "21"}
    assert item.blocked_for_dependency


def test_hydrate_human_blocked_item_is_permanent(tracker):
    item = hydrate(tracker.add("5", status=ItemStatus.BLOCKED))
    assert item.permanently_blocked
    assert item.depends_on_children == set()


def test_hydrate_unknown_status_is_backlog(tracker):
    assert hydrate(tracker.add("5", status="Icebox")).status == ItemStatus.BACKLOG
    assert hydrate(tracker.add("6", status=None)).status == ItemStatus.BACKLOG


def test_change_ref_prefers_completed_record(tracker):
    raw = tracker.add("8", status=ItemStatus.IN_REVIEW, linked_changes=["40"])
    assert hydrate(raw).change_ref == "40"
    tracker.comment("8", RecordKind.COMPLETED, {"change": "41"})
    assert hydrate(tracker.items["8"]).change_ref == "41"


def test_reads_are_served_from_one_snapshot(tracker, store):
    tracker.add("1")
    tracker.add("2", status=ItemStatus.DONE)
    store.refresh()

    store.get("1")
    store.list_by_status(ItemStatus.READY)
    store.items()

    assert tracker.bulk_reads == 1
    assert tracker.single_reads == 0
    assert [i.id for i in store.list_by_status(ItemStatus.DONE)] == ["2"]


def test_snapshot_failure_raises_snapshot_unavailable(tracker, store):
    tracker.fail_snapshot = True
    with pytest.raises(SnapshotUnavailable):
        store.refresh()


def test_set_status_reads_back_written_value(tracker, store):
    tracker.add("1")
    store.refresh()

    item = store.set_status("1", ItemStatus.IN_PROGRESS)

    assert item.status == ItemStatus.IN_PROGRESS
    assert store.get("1").status == ItemStatus.IN_PROGRESS
    assert tracker.status_of("1") == "In Progress"


def test_set_status_rejected_when_write_does_not_land(tracker, store):
    tracker.add("1")
    store.refresh()
    tracker.ignore_status_writes = True

    with pytest.raises(StatusUpdateRejected) as exc:
        store.set_status("1", ItemStatus.IN_PROGRESS)

    assert isinstance(exc.value, TransientStoreError)
    assert store.get("1").status == ItemStatus.READY


def test_set_status_rejects_invalid_edge_without_writing(tracker, store):
    tracker.add("1")
    store.refresh()

    with pytest.raises(InvalidTransition):
        store.set_status("1", ItemStatus.DONE)
    assert tracker.status_of("1") == "Ready"
    assert tracker.single_reads == 0


def test_set_same_status_is_idempotent(tracker, store):
    tracker.add("1")
    store.refresh()
    assert store.set_status("1", ItemStatus.READY).status == ItemStatus.READY
    assert tracker.single_reads == 0


def test_append_log_verifies_record(tracker, store):
    tracker.add("1")
    store.refresh()

    record = store.append_log("1", RecordKind.HANDOVER, {"context": "step 3 of 5"}, summary="Handover.")

    assert record.get("context") == "step 3 of 5"
    assert store.latest_record("1", RecordKind.HANDOVER).get("context") == "step 3 of 5"


def test_append_log_rejected_when_comment_missing(tracker, store):
    tracker.add("1")
    store.refresh()
    tracker.drop_comments = True

    with pytest.raises(RecordAppendRejected):
        store.append_log("1", RecordKind.HANDOVER, {"context": "x"})


def test_create_child_sets_lineage_and_depth(tracker, store):
    tracker.add("1", labels=["depth:1"])
    store.refresh()

    child = store.create_child("1", "Add endpoint", "body", max_depth=5)

    assert child.parent == "1"
    assert child.depth == 2
    assert child.status == ItemStatus.READY
    assert "spawned-from:1" in tracker.items[child.id].labels
    assert [c.id for c in store.children_of("1")] == [child.id]


def test_create_child_rejects_depth_above_max(tracker, store):
    tracker.add("1", labels=["depth:5"])
    store.refresh()

    with pytest.raises(DepthLimitExceeded) as exc:
        store.create_child("1", "Too deep", "", max_depth=5)
    assert exc.value.depth == 6
    assert len(tracker.items) == 1
