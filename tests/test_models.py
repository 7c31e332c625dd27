from datetime import timedelta

import pytest

from nightshift.models import (
    Account,
    InvalidTransition,
    ItemStatus,
    OrchestrationSession,
    SessionStatus,
    SleepReason,
    SwitchEvent,
    WorkItem,
    can_transition,
    check_transition,
)

from conftest import T0

S = ItemStatus


@pytest.mark.parametrize(
    "current,requested",
    [
        (S.BACKLOG, S.READY),
        (S.READY, S.IN_PROGRESS),
        (S.IN_PROGRESS, S.IN_REVIEW),
        (S.IN_PROGRESS, S.BLOCKED),
        (S.IN_REVIEW, S.DONE),
        (S.BLOCKED, S.DONE),
        (S.BLOCKED, S.READY),
        (S.BLOCKED, S.IN_PROGRESS),
        (S.BACKLOG, S.BLOCKED),
        (S.DONE, S.BLOCKED),
    ],
)
def test_allowed_transitions(current, requested):
    assert can_transition(current, requested)
    check_transition("1", current, requested)


@pytest.mark.parametrize(
    "current,requested",
    [
        (S.BACKLOG, S.IN_PROGRESS),
        (S.BACKLOG, S.DONE),
        (S.READY, S.IN_REVIEW),
        (S.READY, S.DONE),
        (S.IN_PROGRESS, S.READY),
        (S.IN_PROGRESS, S.DONE),
        (S.DONE, S.READY),
        (S.DONE, S.IN_PROGRESS),
        (S.IN_REVIEW, S.READY),
        (S.IN_REVIEW, S.IN_PROGRESS),
    ],
)
def test_rejected_transitions(current, requested):
    assert not can_transition(current, requested)
    with pytest.raises(InvalidTransition) as exc:
        check_transition("7", current, requested)
    assert exc.value.item_id == "7"
    assert exc.value.requested == requested


def test_same_status_is_a_no_op_transition():
    for status in ItemStatus:
        assert can_transition(status, status)


def test_sort_key_orders_priority_then_creation_then_id():
    items = [
        WorkItem(id="3", priority=None, created_at=T0),
        WorkItem(id="2", priority=2, created_at=T0 + timedelta(minutes=5)),
        WorkItem(id="10", priority=1, created_at=T0 + timedelta(minutes=9)),
        WorkItem(id="4", priority=2, created_at=T0 + timedelta(minutes=1)),
    ]
    ordered = [i.id for i in sorted(items, key=WorkItem.sort_key)]
    assert ordered == ["10", "4", "2", "3"]


def test_session_sleep_wake_complete():
    session = OrchestrationSession(scope="all")
    assert session.status == SessionStatus.ACTIVE

    session.sleep(SleepReason.AWAITING_CI, {"57", "58"}, now=T0, detail="waiting")
    assert session.status == SessionStatus.SLEEPING
    assert session.waiting_on == {"57", "58"}
    assert session.since == T0

    session.wake("ci_complete_all_passed")
    assert session.status == SessionStatus.ACTIVE
    assert session.wake_reason == "ci_complete_all_passed"

    session.complete()
    assert session.status == SessionStatus.COMPLETE
    assert session.waiting_on == set()


def test_account_cooldown_boundary():
    cooldown = timedelta(minutes=5)
    account = Account(id="a@example.com", exhausted_at=T0)

    assert not account.available(T0 + cooldown - timedelta(seconds=1), cooldown)
    assert account.available(T0 + cooldown, cooldown)
    assert account.available(T0 + cooldown + timedelta(seconds=1), cooldown)
    assert Account(id="b@example.com").available(T0, cooldown)


def test_switch_event_uses_from_alias():
    event = SwitchEvent.model_validate({"from": "a", "to": "b", "timestamp": 1.0})
    assert event.from_account == "a"
    assert event.model_dump(by_alias=True) == {"from": "a", "to": "b", "timestamp": 1.0}
