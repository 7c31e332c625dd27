"""
NIGHTSHIFT Scheduler - The Loop

It is NOT smart. It is deterministic. It never writes code and never
cancels a worker; it only decides what runs next.

  BOOTSTRAP -> RUNNING -> { SLEEPING, COMPLETE }

Each RUNNING iteration, in order:
  1. refresh the tracker snapshot (failure skips the iteration)
  2. reconcile finished workers
  3. reconcile CI for In Review items
  4. reconcile dependency-blocked parents
  5. fill free capacity: queued respawns first, then the scope queue
  6. continue, sleep or complete

SLEEPING ends the process but not the session: the next process starts in
BOOTSTRAP and picks up where this one left off.
"""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Callable

from loguru import logger
from pydantic import BaseModel

from nightshift.ci import CIGate, CIUnavailable, GateOutcome
from nightshift.config_loader import SchedulerConfig
from nightshift.escalation import FailureController
from nightshift.event_bus import EventBus
from nightshift.failover import SleepMarker
from nightshift.models import (
    InvalidTransition,
    ItemStatus,
    OrchestrationSession,
    SessionStatus,
    SleepReason,
    WorkItem,
    utcnow,
)
from nightshift.records import RecordKind
from nightshift.scope import ScopeEmpty, ScopeResolver
from nightshift.session import SessionLock, SessionStore
from nightshift.store import SnapshotUnavailable, StateStore, TransientStoreError
from nightshift.worker import (
    PollResult,
    SpawnRequest,
    WorkerHandle,
    WorkerLaunchError,
    WorkerMode,
    WorkerOutcome,
    WorkerSupervisor,
)


class LoopState(str, Enum):
    BOOTSTRAP = "bootstrap"
    RUNNING = "running"
    SLEEPING = "sleeping"
    COMPLETE = "complete"


class RunResult(BaseModel):
    state: LoopState
    session: OrchestrationSession
    iterations: int = 0


class Scheduler:
    def __init__(
        self,
        store: StateStore,
        resolver: ScopeResolver,
        supervisor: WorkerSupervisor,
        escalation: FailureController,
        gate: CIGate,
        sessions: SessionStore,
        config: SchedulerConfig | None = None,
        sleep_marker: SleepMarker | None = None,
        lock: SessionLock | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.supervisor = supervisor
        self.escalation = escalation
        self.gate = gate
        self.sessions = sessions
        self.config = config or SchedulerConfig()
        self.sleep_marker = sleep_marker
        self.lock = lock
        self.event_bus = event_bus
        self.sleep = sleep
        self.clock = clock

        self.state = LoopState.BOOTSTRAP
        self.session: OrchestrationSession | None = None
        self.pending: deque[SpawnRequest] = deque()
        self._deferred: list[tuple[WorkerHandle, PollResult]] = []
        self._scope_ids: set[str] = set()
        self._ci_waits: dict[str, str] = {}
        self._retry_items: set[str] = set()

    # -- helpers --------------------------------------------------------------

    def _emit(self, event_type: str, payload: dict | None = None) -> None:
        if self.event_bus:
            self.event_bus.emit(event_type, "scheduler", payload or {})

    def _claimed(self) -> set[str]:
        """Items something is already acting on."""
        claimed = self.supervisor.busy_items()
        claimed.update(req.item_id for req in self.pending)
        claimed.update(handle.item_id for handle, _ in self._deferred)
        return claimed

    def _in_scope(self, items: list[WorkItem]) -> list[WorkItem]:
        return [item for item in items if item.id in self._scope_ids]

    def _retry_later(self, item_id: str, error: Exception) -> None:
        """Keep the loop running until a rejected write lands."""
        logger.warning(f"[SCHEDULER] {item_id}: {error}; retrying next iteration")
        self._retry_items.add(item_id)

    def _accounts_exhausted(self) -> bool:
        return bool(self.sleep_marker and self.sleep_marker.active(self.clock()))

    # -- lifecycle ------------------------------------------------------------

    def bootstrap(self) -> None:
        """Load or create the session, then recover what a previous process left behind."""
        self.state = LoopState.BOOTSTRAP
        self.session = self.sessions.load_or_create(str(self.resolver.descriptor))
        if self.session.status == SessionStatus.SLEEPING:
            self.session.wake("restarted", self.clock())
        self.sessions.save(self.session)
        self._emit("bootstrap", {"session": self.session.id, "scope": self.session.scope})

        try:
            self.store.refresh()
        except SnapshotUnavailable as e:
            logger.error(f"[SCHEDULER] {e}")
        else:
            self._scope_ids = self.resolver.member_ids()
            self.reconcile_ci()
            self.recover_orphans()
        self.state = LoopState.RUNNING

    def run(self) -> RunResult:
        if self.lock:
            self.lock.acquire()
        try:
            self.bootstrap()
            iterations = 0
            while True:
                iterations += 1
                state = self.iterate()
                if state in (LoopState.SLEEPING, LoopState.COMPLETE):
                    break
                if self.config.max_iterations and iterations >= self.config.max_iterations:
                    logger.info(f"[SCHEDULER] Stopping after {iterations} iterations")
                    break
                self.sleep(self.config.poll_interval_seconds)
            return RunResult(state=self.state, session=self.session, iterations=iterations)
        finally:
            if self.lock:
                self.lock.release()

    def iterate(self) -> LoopState:
        try:
            self.store.refresh()
        except SnapshotUnavailable as e:
            logger.error(f"[SCHEDULER] {e}; retrying next iteration")
            self._emit("snapshot_failed", {"error": str(e)})
            return self.state
        self._scope_ids = self.resolver.member_ids()
        self._retry_items = set()

        self.reconcile_workers()
        self.reconcile_ci()
        self.reconcile_dependencies()
        self.recover_orphans()
        self.fill_capacity()
        return self.evaluate_terminal()

    # -- 1. workers -----------------------------------------------------------

    def reconcile_workers(self) -> None:
        deferred, self._deferred = self._deferred, []
        for handle, result in deferred:
            self._dispatch(handle, result)

        for handle in self.supervisor.live():
            result = self.supervisor.poll(handle)
            if result.finished:
                self._dispatch(handle, result)

    def _dispatch(self, handle: WorkerHandle, result: PollResult) -> None:
        try:
            self._handle_result(handle, result)
        except TransientStoreError as e:
            logger.warning(f"[SCHEDULER] {handle.item_id}: {e}; retrying next iteration")
            self._deferred.append((handle, result))
        except (InvalidTransition, KeyError) as e:
            logger.error(f"[SCHEDULER] Dropping result of {handle.task_id}: {e}")
            self._emit("result_dropped", {"item": handle.item_id, "error": str(e)})

    def _handle_result(self, handle: WorkerHandle, result: PollResult) -> None:
        item = self.store.get(handle.item_id)

        if handle.mode == WorkerMode.RESEARCH:
            findings = result.findings or result.context or result.reason or None
            failure = handle.request.failure_reason if handle.request else None
            self.pending.append(self.escalation.on_research_complete(item, findings, failure))
            return

        if result.outcome == WorkerOutcome.COMPLETED:
            if not result.artifact_ref:
                self._fail(item, "Worker reported completion without a change reference.")
                return
            self.store.append_log(
                item.id,
                RecordKind.COMPLETED,
                {"change": result.artifact_ref, "worker": handle.task_id, "attempt": handle.attempt},
                summary=f"Worker completed; change {result.artifact_ref} is up for review.",
            )
            self.store.set_status(item.id, ItemStatus.IN_REVIEW)
            self._emit("completed", {"item": item.id, "change": result.artifact_ref})

        elif result.outcome == WorkerOutcome.HANDOVER:
            self.store.append_log(
                item.id,
                RecordKind.HANDOVER,
                {"context": result.context or "", "worker": handle.task_id, "attempt": handle.attempt},
                summary=f"Worker {handle.task_id} handed over (attempt {handle.attempt}).",
            )
            self._emit("handover", {"item": item.id, "attempt": handle.attempt})
            request = SpawnRequest(item_id=item.id, handover_context=result.context or "")
            if not self._spawn(request):
                self.pending.appendleft(request)

        elif result.outcome == WorkerOutcome.BLOCKED:
            self.escalation.on_blocked(item, result.reason, result.deviation)

        else:
            self._fail(item, result.reason, result.transient)

    def _fail(self, item: WorkItem, reason: str, transient: bool = False) -> None:
        request = self.escalation.on_failed(item, reason, transient)
        if request:
            self.pending.append(request)

    # -- 2. CI ------------------------------------------------------------------

    def reconcile_ci(self) -> None:
        self._ci_waits = {}
        claimed = self._claimed()
        for item in self._in_scope(self.store.list_by_status(ItemStatus.IN_REVIEW)):
            if item.id in claimed:
                continue
            try:
                decision = self.gate.review(item)
            except CIUnavailable as e:
                logger.warning(f"[SCHEDULER] {e}")
                if item.change_ref:
                    self._ci_waits[item.id] = item.change_ref
                continue
            except TransientStoreError as e:
                self._retry_later(item.id, e)
                continue

            if decision.outcome in (GateOutcome.WAITING, GateOutcome.REVIEW_MISSING):
                self._ci_waits[item.id] = decision.change_ref
            elif decision.outcome == GateOutcome.NO_CHANGE:
                try:
                    self.escalation.block_permanently(
                        item,
                        "In Review without a linked change request. Link the change or close the item.",
                    )
                except TransientStoreError as e:
                    self._retry_later(item.id, e)
            elif decision.outcome == GateOutcome.FAILED:
                try:
                    self._fail(self.store.get(item.id), decision.reason)
                except TransientStoreError as e:
                    self._retry_later(item.id, e)

    # -- 3. dependencies ------------------------------------------------------

    def reconcile_dependencies(self) -> None:
        for item in self._in_scope(self.store.list_by_status(ItemStatus.BLOCKED)):
            if not item.blocked_for_dependency:
                continue
            try:
                self.escalation.resolve_dependencies(item)
            except TransientStoreError as e:
                self._retry_later(item.id, e)

    def recover_orphans(self) -> None:
        """In Progress items nobody is working on get a resumption worker."""
        claimed = self._claimed()
        for item in self._in_scope(self.store.list_by_status(ItemStatus.IN_PROGRESS)):
            if item.id not in claimed:
                logger.info(f"[SCHEDULER] Resuming orphaned {item.id}")
                self.pending.append(self.escalation.resume_request(item))

    # -- 4. capacity ----------------------------------------------------------

    def _ready_queue(self) -> list[str]:
        try:
            ready = self.resolver.resolve()
        except ScopeEmpty:
            return []
        claimed = self._claimed()
        return [item_id for item_id in ready if item_id not in claimed]

    def _spawn(self, request: SpawnRequest) -> bool:
        item = self.store.find(request.item_id)
        if item is None:
            logger.warning(f"[SCHEDULER] {request.item_id} vanished from the board; dropping request")
            return True
        try:
            self.supervisor.spawn(item, request)
            return True
        except TransientStoreError as e:
            logger.warning(f"[SCHEDULER] Could not assign {item.id}: {e}")
            return False
        except InvalidTransition as e:
            logger.error(f"[SCHEDULER] {e}; dropping request")
            return True
        except WorkerLaunchError as e:
            logger.error(f"[SCHEDULER] {e}")
            try:
                self._fail(self.store.get(item.id), f"Worker launch failed: {e}")
            except TransientStoreError as err:
                logger.warning(f"[SCHEDULER] {item.id}: {err}")
                return False
            return True

    def _eligible(self, request: SpawnRequest) -> bool:
        item = self.store.find(request.item_id)
        if item is None or item.status in (ItemStatus.DONE, ItemStatus.BLOCKED):
            logger.info(f"[SCHEDULER] Dropping queued request for {request.item_id}")
            return False
        return request.item_id not in self.supervisor.busy_items()

    def fill_capacity(self) -> None:
        limit = self.config.max_concurrency
        if self.supervisor.live_count >= limit:
            return
        if self._accounts_exhausted():
            if self.pending or self._ready_queue():
                logger.warning("[SCHEDULER] All accounts exhausted; not spawning")
            return

        retry: list[SpawnRequest] = []
        while self.pending and self.supervisor.live_count < limit:
            request = self.pending.popleft()
            if not self._eligible(request):
                continue
            if not self._spawn(request):
                retry.append(request)
        self.pending.extendleft(reversed(retry))

        skipped: set[str] = set()
        while self.supervisor.live_count < limit:
            queue = [item_id for item_id in self._ready_queue() if item_id not in skipped]
            if not queue:
                break
            item = self.store.get(queue[0])
            if not self._spawn(self.escalation.fresh_request(item)):
                skipped.add(item.id)

    # -- 5. terminal condition ------------------------------------------------

    def evaluate_terminal(self) -> LoopState:
        spawnable = bool(self.pending) or bool(self._ready_queue())
        exhausted = self._accounts_exhausted()

        busy = self.supervisor.live_count or self._deferred or self._retry_items
        if busy or (spawnable and not exhausted):
            self.state = LoopState.RUNNING
            self._emit("iteration", {
                "live": self.supervisor.live_count,
                "queued": len(self.pending),
                "ci_waits": len(self._ci_waits),
                "retrying": sorted(self._retry_items),
            })
            return self.state

        if spawnable:
            until = self.sleep_marker.retry_after() if self.sleep_marker else None
            detail = "All accounts exhausted; retry after cooldown" + (f" ({until.isoformat()})" if until else "")
            self._record_suspension(detail)
            return self._go_to_sleep(SleepReason.ACCOUNTS_EXHAUSTED, set(), detail)

        if self._ci_waits:
            return self._go_to_sleep(
                SleepReason.AWAITING_CI,
                set(self._ci_waits.values()),
                f"Waiting on CI or review for {len(self._ci_waits)} change(s)",
            )

        waiting_children: set[str] = set()
        for item in self._in_scope(self.store.list_by_status(ItemStatus.BLOCKED)):
            if item.blocked_for_dependency:
                waiting_children |= self.escalation.pending_children(item)
        if waiting_children:
            return self._go_to_sleep(
                SleepReason.AWAITING_CHILDREN,
                waiting_children,
                f"Waiting on {len(waiting_children)} dependent item(s)",
            )

        self.state = LoopState.COMPLETE
        self.session.complete(self.clock())
        self.sessions.save(self.session)
        logger.info(f"[SCHEDULER] Scope {self.session.scope!r} complete")
        self._emit("complete", {"session": self.session.id})
        return self.state

    def _go_to_sleep(self, reason: SleepReason, waiting_on: set[str], detail: str) -> LoopState:
        self.state = LoopState.SLEEPING
        self.session.sleep(reason, waiting_on, self.clock(), detail)
        self.sessions.save(self.session)
        logger.info(f"[SCHEDULER] Sleeping ({reason.value}): {detail}")
        self._emit("sleeping", {"reason": reason.value, "waiting_on": sorted(waiting_on), "detail": detail})
        return self.state

    def _record_suspension(self, detail: str) -> None:
        """Leave the exhaustion reason on the next item that would have run."""
        queued = [req.item_id for req in self.pending] or self._ready_queue()
        item = self.store.find(queued[0]) if queued else None
        if item is None:
            return
        marker = self.sleep_marker.read() if self.sleep_marker else None
        since = (marker or {}).get("timestamp")
        last = item.latest_record(RecordKind.SUSPENDED)
        if last is not None and last.get("since") == since:
            return
        try:
            self.store.append_log(
                item.id,
                RecordKind.SUSPENDED,
                {"reason": "accounts_exhausted", "detail": detail, "since": since},
                summary=detail,
            )
        except TransientStoreError as e:
            logger.warning(f"[SCHEDULER] Could not record suspension on {item.id}: {e}")
