"""
NIGHTSHIFT Failure & Escalation Controller

One code path for everything that goes wrong with an item, whether the
worker said so or the CI gate did:

  failure  -> research cycle + re-spawn, until max_research_cycles,
              then permanently Blocked (a human has to look)
  transient-> re-spawn, no research cycle consumed
  blocked  -> permanently Blocked with the worker's reason
  deviation-> derived child items, parent Blocked-for-dependency
              until every child is Done

Nothing here spawns workers. Decisions come back as SpawnRequests that
the scheduler queues ahead of fresh work.
"""

from __future__ import annotations

from loguru import logger

from nightshift.config_loader import EscalationConfig
from nightshift.event_bus import EventBus
from nightshift.models import BlockKind, ItemStatus, WorkItem
from nightshift.records import RecordKind
from nightshift.store import DepthLimitExceeded, StateStore
from nightshift.worker import DerivedItem, SpawnRequest, WorkerMode


class FailureController:
    def __init__(self, store: StateStore, config: EscalationConfig | None = None, event_bus: EventBus | None = None):
        self.store = store
        self.config = config or EscalationConfig()
        self.event_bus = event_bus

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.event_bus:
            self.event_bus.emit(event_type, "escalation", payload)

    # -- spawning inputs ------------------------------------------------------

    def fresh_request(self, item: WorkItem) -> SpawnRequest:
        """
        Request for an item picked up from Ready. An item a human brought
        back from a permanent block starts its research budget over.
        """
        blocked = item.latest_record(RecordKind.BLOCKED)
        assigned = item.latest_record(RecordKind.ASSIGNED)
        released = (
            blocked is not None
            and blocked.get("kind") != BlockKind.DEPENDENCY.value
            and (assigned is None or blocked.position > assigned.position)
        )
        if released:
            logger.info(f"[ESCALATION] {item.id}: unblocked by a human, research cycles reset")
            return SpawnRequest(item_id=item.id, research_cycles=0)
        return SpawnRequest(item_id=item.id)

    def resume_request(self, item: WorkItem) -> SpawnRequest:
        """Request for an In Progress item whose worker did not survive a restart."""
        handover = item.latest_record(RecordKind.HANDOVER)
        return SpawnRequest(
            item_id=item.id,
            handover_context=handover.get("context") if handover else None,
            failure_reason="The previous worker was lost when the orchestrator restarted.",
        )

    # -- failures -------------------------------------------------------------

    def on_failed(self, item: WorkItem, reason: str, transient: bool = False) -> SpawnRequest | None:
        """Route a failure. Returns the follow-up request, or None once blocked."""
        if transient:
            logger.info(f"[ESCALATION] {item.id}: transient failure, re-spawning ({reason})")
            self._emit("transient_failure", {"item": item.id, "reason": reason})
            return SpawnRequest(item_id=item.id, failure_reason=reason)

        cycles = item.research_cycles + 1
        if cycles < self.config.max_research_cycles:
            logger.info(
                f"[ESCALATION] {item.id}: failure {cycles}/{self.config.max_research_cycles}, "
                f"starting research pass"
            )
            self._emit("research_started", {"item": item.id, "research_cycles": cycles, "reason": reason})
            return SpawnRequest(
                item_id=item.id,
                mode=WorkerMode.RESEARCH,
                failure_reason=reason,
                research_cycles=cycles,
                new_attempt=False,
            )

        self.block_permanently(
            item,
            f"Failed after {cycles} research cycles. Last failure: {reason}",
            research_cycles=cycles,
        )
        return None

    def on_research_complete(self, item: WorkItem, findings: str | None, failure_reason: str | None) -> SpawnRequest:
        return SpawnRequest(
            item_id=item.id,
            research_findings=findings or "The research pass produced no findings.",
            failure_reason=failure_reason,
        )

    def block_permanently(self, item: WorkItem, reason: str, research_cycles: int | None = None) -> None:
        """Blocked until a human intervenes. Never retried automatically."""
        self.store.append_log(
            item.id,
            RecordKind.BLOCKED,
            {
                "kind": BlockKind.PERMANENT.value,
                "reason": reason,
                "attempt": item.attempt,
                "research_cycles": item.research_cycles if research_cycles is None else research_cycles,
            },
            summary=f"Blocked: {reason}",
        )
        self.store.set_status(item.id, ItemStatus.BLOCKED)
        logger.warning(f"[ESCALATION] {item.id} blocked: {reason}")
        self._emit("blocked", {"item": item.id, "kind": BlockKind.PERMANENT.value, "reason": reason})

    # -- blocks and deviations ------------------------------------------------

    def on_blocked(self, item: WorkItem, reason: str, deviation: list[DerivedItem] | None = None) -> list[str]:
        """
        A worker could not finish. With a deviation, create the dependent
        items and park the parent on them; otherwise block permanently.
        Returns the ids the parent now waits on.
        """
        if not deviation:
            self.block_permanently(item, reason or "Worker reported the item as blocked.")
            return []

        if item.depth + 1 > self.config.max_depth:
            error = DepthLimitExceeded(item.id, item.depth + 1, self.config.max_depth)
            self.block_permanently(item, str(error))
            return []

        existing = {child.title: child.id for child in self.store.children_of(item.id)}
        children: list[str] = []
        for derived in deviation:
            if derived.title in existing:
                children.append(existing[derived.title])
                continue
            body = derived.body or f"Derived from {item.id}: {reason}"
            try:
                child = self.store.create_child(item.id, derived.title, body, self.config.max_depth)
            except DepthLimitExceeded as e:
                self.block_permanently(item, str(e))
                return []
            existing[child.title] = child.id
            children.append(child.id)

        self.store.append_log(
            item.id,
            RecordKind.BLOCKED,
            {"kind": BlockKind.DEPENDENCY.value, "reason": reason, "children": children},
            summary=f"Waiting on {', '.join(children)} before continuing.",
        )
        self.store.set_status(item.id, ItemStatus.BLOCKED)
        logger.info(f"[ESCALATION] {item.id} waiting on {children}")
        self._emit("deviation", {"item": item.id, "children": children, "reason": reason})
        return children

    def resolve_dependencies(self, item: WorkItem) -> bool:
        """Move a dependency-blocked parent to Ready iff every child is Done."""
        if not item.blocked_for_dependency:
            return False
        for child_id in item.depends_on_children:
            child = self.store.find(child_id)
            if child is None or child.status != ItemStatus.DONE:
                return False
        self.store.set_status(item.id, ItemStatus.READY)
        logger.info(f"[ESCALATION] {item.id}: dependencies done, back to Ready")
        self._emit("dependencies_resolved", {"item": item.id, "children": sorted(item.depends_on_children)})
        return True

    def pending_children(self, item: WorkItem) -> set[str]:
        pending = set()
        for child_id in item.depends_on_children:
            child = self.store.find(child_id)
            if child is None or child.status != ItemStatus.DONE:
                pending.add(child_id)
        return pending
