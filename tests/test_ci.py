import pytest

from nightshift.ci import (
    ChangeState,
    CheckRun,
    CIGate,
    CIStatus,
    CIUnavailable,
    GateOutcome,
    classify,
)
from nightshift.models import ItemStatus
from nightshift.records import RecordKind


OPEN = ChangeState(state="OPEN", mergeable="MERGEABLE")


def _checks(*buckets):
    return [CheckRun(name=f"c{i}", bucket=b) for i, b in enumerate(buckets)]


@pytest.mark.parametrize(
    "buckets,state,expected",
    [
        (("pass", "pass"), OPEN, CIStatus.PASSED),
        (("pass", "pending"), OPEN, CIStatus.PENDING),
        (("pass", "fail"), OPEN, CIStatus.FAILED),
        (("cancel",), OPEN, CIStatus.FAILED),
        (("skipping",), OPEN, CIStatus.PASSED),
        (("pending",), ChangeState(state="OPEN", mergeable="CONFLICTING"), CIStatus.FAILED),
        (("fail",), ChangeState(state="MERGED"), CIStatus.PASSED),
        ((), OPEN, CIStatus.PASSED),
    ],
)
def test_classify(buckets, state, expected):
    assert classify(_checks(*buckets), state).status == expected


def test_classify_without_checks_when_required_is_pending():
    assert classify([], OPEN, require_checks=True).status == CIStatus.PENDING


def test_classify_from_raw_states():
    checks = [CheckRun(name="build", state="IN_PROGRESS"), CheckRun(name="lint", state="FAILURE")]
    result = classify(checks, OPEN)
    assert result.status == CIStatus.PENDING
    assert result.pending_checks == ["build"]


def test_conflict_is_reported_as_failed_check():
    result = classify([], ChangeState(mergeable="CONFLICTING"))
    assert result.failed_checks == ["merge-conflict"]


@pytest.fixture
def gate(store, host):
    return CIGate(host, store)


def _in_review(tracker, store, change="57", reviewed=False):
    tracker.add("7", status=ItemStatus.IN_REVIEW)
    tracker.comment("7", RecordKind.ASSIGNED, {"attempt": 1, "research_cycles": 0})
    tracker.comment("7", RecordKind.COMPLETED, {"change": change})
    if reviewed:
        tracker.comment("7", RecordKind.REVIEW_COMPLETE, {"change": change})
    store.refresh()
    return store.get("7")


def test_pending_ci_waits(tracker, store, host, gate):
    host.set_checks("57", "pass", "pending")
    decision = gate.review(_in_review(tracker, store))
    assert decision.outcome == GateOutcome.WAITING
    assert tracker.status_of("7") == "In Review"


def test_passed_without_review_never_merges(tracker, store, host, gate):
    host.set_checks("57", "pass")
    item = _in_review(tracker, store)

    first = gate.review(item)
    second = gate.review(store.get("7"))

    assert first.outcome == second.outcome == GateOutcome.REVIEW_MISSING
    assert host.merges == []
    assert tracker.status_of("7") == "In Review"
    assert len(tracker.records_of("7", RecordKind.REVIEW_MISSING)) == 1


def test_passed_with_review_merges_and_marks_done(tracker, store, host, gate):
    host.set_checks("57", "pass")

    decision = gate.review(_in_review(tracker, store, reviewed=True))

    assert decision.outcome == GateOutcome.MERGED
    assert host.merges == ["57"]
    assert tracker.status_of("7") == "Done"
    assert len(tracker.records_of("7", RecordKind.MERGED)) == 1


def test_review_from_a_previous_assignment_does_not_count(tracker, store, host, gate):
    host.set_checks("57", "pass")
    tracker.add("7", status=ItemStatus.IN_REVIEW)
    tracker.comment("7", RecordKind.REVIEW_COMPLETE, {"change": "57"})
    tracker.comment("7", RecordKind.ASSIGNED, {"attempt": 2, "research_cycles": 0})
    tracker.comment("7", RecordKind.COMPLETED, {"change": "57"})
    store.refresh()

    assert gate.review(store.get("7")).outcome == GateOutcome.REVIEW_MISSING
    assert host.merges == []


def test_merge_is_idempotent(host, gate):
    host.states["57"] = ChangeState(state="MERGED")
    gate.merge("57")
    assert host.merges == []


def test_failed_ci_records_once_and_leaves_status(tracker, store, host, gate):
    host.set_checks("57", "pass", "fail")
    item = _in_review(tracker, store)

    decision = gate.review(item)
    gate.review(store.get("7"))

    assert decision.outcome == GateOutcome.FAILED
    assert "check-1" in decision.reason
    assert tracker.status_of("7") == "In Review"
    assert len(tracker.records_of("7", RecordKind.CI_FAILED)) == 1


def test_no_linked_change(tracker, store, gate):
    tracker.add("7", status=ItemStatus.IN_REVIEW)
    store.refresh()
    assert gate.review(store.get("7")).outcome == GateOutcome.NO_CHANGE


def test_host_unavailable_raises_ci_unavailable(tracker, store, host, gate):
    host.unavailable = True
    with pytest.raises(CIUnavailable):
        gate.review(_in_review(tracker, store))
