"""
NIGHTSHIFT Data Model

Work items, orchestration sessions and credential accounts. Work items are
owned by the external tracker; everything here is a typed view over what
the State Store reads back from it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from nightshift.records import Record, RecordKind, latest


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Work Item Lifecycle
# ---------------------------------------------------------------------------

class ItemStatus(str, Enum):
    """Values of the tracker's single-select Status field."""
    BACKLOG = "Backlog"
    READY = "Ready"
    IN_PROGRESS = "In Progress"
    IN_REVIEW = "In Review"
    BLOCKED = "Blocked"
    DONE = "Done"


class BlockKind(str, Enum):
    DEPENDENCY = "dependency"
    PERMANENT = "permanent"


# Any status may move to Blocked; these are the remaining edges.
_EDGES: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.BACKLOG: frozenset({ItemStatus.READY}),
    ItemStatus.READY: frozenset({ItemStatus.IN_PROGRESS}),
    ItemStatus.IN_PROGRESS: frozenset({ItemStatus.IN_REVIEW}),
    ItemStatus.IN_REVIEW: frozenset({ItemStatus.DONE}),
    ItemStatus.BLOCKED: frozenset({ItemStatus.READY, ItemStatus.IN_PROGRESS, ItemStatus.DONE}),
    ItemStatus.DONE: frozenset(),
}


class InvalidTransition(Exception):
    """Raised when a status change is not an edge of the lifecycle graph."""

    def __init__(self, item_id: str, current: ItemStatus, requested: ItemStatus):
        self.item_id = item_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Item {item_id}: transition {current.value} -> {requested.value} is not allowed"
        )


def can_transition(current: ItemStatus, requested: ItemStatus) -> bool:
    if current == requested:
        return True
    if requested == ItemStatus.BLOCKED:
        return True
    return requested in _EDGES[current]


def check_transition(item_id: str, current: ItemStatus, requested: ItemStatus) -> None:
    if not can_transition(current, requested):
        raise InvalidTransition(item_id, current, requested)


class WorkItem(BaseModel):
    """
    A unit of trackable work, hydrated from the tracker snapshot.

    Counters and block state are not tracker fields; they are read from the
    latest structured records in the item's comment stream, and lineage
    (`parent`, `depth`) from its labels.
    """

    id: str
    title: str = ""
    status: ItemStatus = ItemStatus.BACKLOG
    attempt: int = 0
    research_cycles: int = 0
    depends_on_children: set[str] = Field(default_factory=set)
    depth: int = 0
    parent: str | None = None
    priority: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    labels: list[str] = Field(default_factory=list)
    change_ref: str | None = None
    block_kind: BlockKind | None = None
    block_reason: str = ""
    records: list[Record] = Field(default_factory=list)

    @property
    def blocked_for_dependency(self) -> bool:
        return self.status == ItemStatus.BLOCKED and self.block_kind == BlockKind.DEPENDENCY

    @property
    def permanently_blocked(self) -> bool:
        return self.status == ItemStatus.BLOCKED and self.block_kind != BlockKind.DEPENDENCY

    def latest_record(self, kind: RecordKind | str) -> Record | None:
        return latest(self.records, kind)

    def sort_key(self) -> tuple:
        """Priority first (unset sorts last), then creation order, then id."""
        return (
            self.priority is None,
            self.priority if self.priority is not None else 0,
            self.created_at,
            _natural_id(self.id),
        )


def _natural_id(item_id: str) -> tuple:
    digits = item_id.lstrip("#")
    return (0, int(digits), "") if digits.isdigit() else (1, 0, item_id)


# ---------------------------------------------------------------------------
# Orchestration Session
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    ACTIVE = "active"
    SLEEPING = "sleeping"
    COMPLETE = "complete"


class SleepReason(str, Enum):
    AWAITING_CI = "awaiting_ci"
    AWAITING_CHILDREN = "awaiting_children"
    ACCOUNTS_EXHAUSTED = "accounts_exhausted"


class OrchestrationSession(BaseModel):
    """Durable record of one orchestration run, resumed across process restarts."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    scope: str
    status: SessionStatus = SessionStatus.ACTIVE
    sleep_reason: SleepReason | None = None
    waiting_on: set[str] = Field(default_factory=set)
    since: datetime | None = None
    wake_reason: str | None = None
    detail: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def sleep(
        self,
        reason: SleepReason,
        waiting_on: set[str],
        now: datetime | None = None,
        detail: str = "",
    ) -> None:
        now = now or utcnow()
        self.status = SessionStatus.SLEEPING
        self.sleep_reason = reason
        self.waiting_on = set(waiting_on)
        self.detail = detail
        self.since = now
        self.wake_reason = None
        self.updated_at = now

    def wake(self, reason: str, now: datetime | None = None) -> None:
        self.status = SessionStatus.ACTIVE
        self.wake_reason = reason
        self.updated_at = now or utcnow()

    def complete(self, now: datetime | None = None) -> None:
        self.status = SessionStatus.COMPLETE
        self.sleep_reason = None
        self.waiting_on = set()
        self.detail = ""
        self.updated_at = now or utcnow()


# ---------------------------------------------------------------------------
# Credential Accounts
# ---------------------------------------------------------------------------

class Account(BaseModel):
    id: str
    exhausted_at: datetime | None = None

    def available(self, now: datetime, cooldown: timedelta) -> bool:
        """Never exhausted, or exhausted at least `cooldown` ago."""
        if self.exhausted_at is None:
            return True
        return now - self.exhausted_at >= cooldown


class SwitchEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_account: str = Field(alias="from")
    to: str
    timestamp: float
