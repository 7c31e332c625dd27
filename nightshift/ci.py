"""
NIGHTSHIFT CI/Merge Gate

Classifies a change request's build status and guards the merge:

  Pending   - any check still queued or running
  Failed    - any check failed or was cancelled, or the change conflicts
  Passed    - everything green (or no checks, unless require_checks)

Passing CI is necessary but not sufficient. The review workflow must have
left a REVIEW:COMPLETE record on the item after its latest worker
assignment; without it the item stays In Review and the gate records
GATE:REVIEW_MISSING once per change. CI failures never move the item
themselves: they are documented with a CI:FAILED record and handed back
to the caller to route through the escalation controller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field

from nightshift.config_loader import CIConfig
from nightshift.event_bus import EventBus
from nightshift.models import ItemStatus, WorkItem
from nightshift.records import RecordKind
from nightshift.store import StateStore
from nightshift.tracker import TrackerError


class CIUnavailable(Exception):
    """The change host could not be queried. Transient."""
    pass


# ---------------------------------------------------------------------------
# Change host interface
# ---------------------------------------------------------------------------

class CheckRun(BaseModel):
    name: str
    state: str = ""
    bucket: str = ""

    @property
    def pending(self) -> bool:
        if self.bucket:
            return self.bucket == "pending"
        return self.state.upper() in ("PENDING", "QUEUED", "IN_PROGRESS", "WAITING", "REQUESTED", "EXPECTED")

    @property
    def failed(self) -> bool:
        if self.bucket:
            return self.bucket in ("fail", "cancel")
        return self.state.upper() in ("FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED", "STARTUP_FAILURE")


class ChangeState(BaseModel):
    state: str = "OPEN"
    mergeable: str = "UNKNOWN"
    url: str = ""

    @property
    def merged(self) -> bool:
        return self.state.upper() == "MERGED"

    @property
    def conflicting(self) -> bool:
        return self.mergeable.upper() == "CONFLICTING"


class ChangeHost(ABC):
    """Where change requests live: checks, state and merge."""

    @abstractmethod
    def checks(self, change_ref: str) -> list[CheckRun]:
        ...

    @abstractmethod
    def state(self, change_ref: str) -> ChangeState:
        ...

    @abstractmethod
    def merge(self, change_ref: str, method: str = "squash", delete_branch: bool = True) -> None:
        ...


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class CIStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    PASSED = "passed"


class CIResult(BaseModel):
    status: CIStatus
    failed_checks: list[str] = Field(default_factory=list)
    pending_checks: list[str] = Field(default_factory=list)

    @classmethod
    def pending(cls, checks: list[str]) -> "CIResult":
        return cls(status=CIStatus.PENDING, pending_checks=checks)

    @classmethod
    def failed(cls, checks: list[str]) -> "CIResult":
        return cls(status=CIStatus.FAILED, failed_checks=checks)

    @classmethod
    def passed(cls) -> "CIResult":
        return cls(status=CIStatus.PASSED)


class GateOutcome(str, Enum):
    WAITING = "waiting"
    MERGED = "merged"
    REVIEW_MISSING = "review_missing"
    FAILED = "failed"
    NO_CHANGE = "no_change"


class GateDecision(BaseModel):
    item_id: str
    outcome: GateOutcome
    change_ref: str | None = None
    ci: CIResult | None = None
    reason: str = ""


class ReviewArtifactMissing(BaseModel):
    """CI passed but the review marker is absent. Not a CI failure."""
    item_id: str
    change_ref: str


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

def classify(checks: list[CheckRun], state: ChangeState, require_checks: bool = False) -> CIResult:
    """Pure classification of a change's checks and mergeability."""
    if state.merged:
        return CIResult.passed()
    failed = [c.name for c in checks if c.failed]
    if state.conflicting:
        failed.append("merge-conflict")
    pending = [c.name for c in checks if c.pending]
    if pending and not state.conflicting:
        return CIResult.pending(pending)
    if failed:
        return CIResult.failed(failed)
    if not checks and require_checks:
        return CIResult.pending([])
    return CIResult.passed()


def _recorded_since_assignment(item: WorkItem, kind: RecordKind, change_ref: str | None = None) -> bool:
    """True if a `kind` record (for `change_ref`) exists after the latest assignment."""
    record = item.latest_record(kind)
    if record is None:
        return False
    assigned = item.latest_record(RecordKind.ASSIGNED)
    if assigned is not None and record.position < assigned.position:
        return False
    if change_ref is not None and record.get("change") is not None:
        return str(record.get("change")) == change_ref
    return True


class CIGate:
    def __init__(
        self,
        host: ChangeHost,
        store: StateStore | None,
        config: CIConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        self.host = host
        self.store = store
        self.config = config or CIConfig()
        self.event_bus = event_bus

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.event_bus:
            self.event_bus.emit(event_type, "ci", payload)

    def evaluate(self, change_ref: str) -> CIResult:
        try:
            state = self.host.state(change_ref)
            checks = self.host.checks(change_ref)
        except TrackerError as e:
            raise CIUnavailable(f"Could not read CI for change {change_ref}: {e}") from e
        result = classify(checks, state, self.config.require_checks)
        logger.debug(f"[CI] Change {change_ref}: {result.status.value}")
        return result

    def merge(self, change_ref: str) -> None:
        """Merge the change. Merging an already-merged change is a no-op."""
        try:
            if self.host.state(change_ref).merged:
                return
            self.host.merge(change_ref, self.config.merge_method, self.config.delete_branch)
        except TrackerError as e:
            # A concurrent merge (or a retried one) may have landed anyway.
            try:
                if self.host.state(change_ref).merged:
                    return
            except TrackerError:
                pass
            raise CIUnavailable(f"Merge of change {change_ref} failed: {e}") from e
        logger.info(f"[CI] Merged change {change_ref}")

    def review(self, item: WorkItem) -> GateDecision:
        """Evaluate an In Review item and act on the result."""
        ref = item.change_ref
        if not ref:
            return GateDecision(
                item_id=item.id,
                outcome=GateOutcome.NO_CHANGE,
                reason="no linked change request",
            )

        result = self.evaluate(ref)

        if result.status == CIStatus.PENDING:
            return GateDecision(item_id=item.id, outcome=GateOutcome.WAITING, change_ref=ref, ci=result)

        if result.status == CIStatus.FAILED:
            reason = f"CI failed on change {ref}: {', '.join(result.failed_checks) or 'unknown checks'}"
            if not _recorded_since_assignment(item, RecordKind.CI_FAILED, ref):
                self.store.append_log(
                    item.id,
                    RecordKind.CI_FAILED,
                    {"change": ref, "failed_checks": result.failed_checks},
                    summary=f"CI Failed on change {ref}.",
                )
            self._emit("ci_failed", {"item": item.id, "change": ref, "checks": result.failed_checks})
            logger.warning(f"[CI] {item.id}: {reason}")
            return GateDecision(
                item_id=item.id, outcome=GateOutcome.FAILED, change_ref=ref, ci=result, reason=reason
            )

        if not _recorded_since_assignment(item, RecordKind.REVIEW_COMPLETE, ref):
            missing = ReviewArtifactMissing(item_id=item.id, change_ref=ref)
            if not _recorded_since_assignment(item, RecordKind.REVIEW_MISSING, ref):
                self.store.append_log(
                    item.id,
                    RecordKind.REVIEW_MISSING,
                    missing.model_dump(mode="json") | {"change": ref},
                    summary=f"CI passed on change {ref}; waiting for review before merge.",
                )
                self._emit("review_missing", {"item": item.id, "change": ref})
                logger.info(f"[CI] {item.id}: change {ref} passed but has no review marker")
            return GateDecision(
                item_id=item.id,
                outcome=GateOutcome.REVIEW_MISSING,
                change_ref=ref,
                ci=result,
                reason="review artifact missing",
            )

        self.merge(ref)
        if not _recorded_since_assignment(item, RecordKind.MERGED, ref):
            self.store.append_log(
                item.id, RecordKind.MERGED, {"change": ref}, summary=f"Merged change {ref}."
            )
        self.store.set_status(item.id, ItemStatus.DONE)
        self._emit("merged", {"item": item.id, "change": ref})
        return GateDecision(item_id=item.id, outcome=GateOutcome.MERGED, change_ref=ref, ci=result)
