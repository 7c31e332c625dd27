"""
NIGHTSHIFT Session - Suspend and resume across processes

"Sleep" is a process exit. The session file records why the orchestrator
stopped and what it is waiting on, so the next process (a cron tick, a
hook, a human) can decide whether there is anything to wake up for and
resume where the previous one left off.

Files under the state directory:
  state.json          the OrchestrationSession
  orchestrator.lock   PID of the running orchestrator
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field

from nightshift.ci import CIGate, CIStatus, CIUnavailable
from nightshift.models import OrchestrationSession, SessionStatus, SleepReason, utcnow


class SessionLockError(Exception):
    """Another orchestrator already holds the workspace."""
    pass


class SessionStore:
    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.path = state_dir / "state.json"

    def load(self) -> OrchestrationSession | None:
        if not self.path.exists():
            return None
        try:
            return OrchestrationSession.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            logger.warning(f"[SESSION] Ignoring unreadable session file: {e}")
            return None

    def save(self, session: OrchestrationSession) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def load_or_create(self, scope: str) -> OrchestrationSession:
        """Resume the session for `scope`, or start a new one."""
        session = self.load()
        if session and session.scope == scope and session.status != SessionStatus.COMPLETE:
            logger.info(f"[SESSION] Resuming session {session.id} ({session.status.value})")
            return session
        session = OrchestrationSession(scope=scope)
        logger.info(f"[SESSION] Starting session {session.id} for scope {scope!r}")
        self.save(session)
        return session


class SessionLock:
    """PID file. Stale locks (dead PID) are taken over."""

    def __init__(self, state_dir: Path):
        self.path = state_dir / "orchestrator.lock"
        self._held = False

    def _holder(self) -> int | None:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return int(text) if text.isdigit() else None

    @staticmethod
    def _alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        holder = self._holder()
        if holder and holder != os.getpid() and self._alive(holder):
            raise SessionLockError(f"Orchestrator already running (pid {holder}); lock at {self.path}")
        if holder:
            logger.warning(f"[SESSION] Taking over stale lock from pid {holder}")
        self.path.write_text(str(os.getpid()), encoding="utf-8")
        self._held = True

    def release(self) -> None:
        if self._held and self._holder() == os.getpid():
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


# ---------------------------------------------------------------------------
# Wake check
# ---------------------------------------------------------------------------

class WakeDecision(BaseModel):
    wake: bool
    reason: str
    pending: list[str] = Field(default_factory=list)


class WakeAdvisor:
    """
    Decides whether a sleeping session should be restarted.

      awaiting_ci         wake once every awaited change has finished CI
      awaiting_children   wake on any poll; the scheduler re-checks children
      accounts_exhausted  wake once the credential cooldown has passed
    """

    def __init__(self, gate: CIGate | None = None):
        self.gate = gate

    def check(
        self,
        session: OrchestrationSession | None,
        now: datetime | None = None,
        retry_after: datetime | None = None,
    ) -> WakeDecision:
        now = now or utcnow()
        if session is None:
            return WakeDecision(wake=False, reason="no_session")
        if session.status == SessionStatus.COMPLETE:
            return WakeDecision(wake=False, reason="complete")
        if session.status == SessionStatus.ACTIVE:
            return WakeDecision(wake=True, reason="active")

        if session.sleep_reason == SleepReason.ACCOUNTS_EXHAUSTED:
            if retry_after is not None and now < retry_after:
                return WakeDecision(wake=False, reason="cooldown", pending=[retry_after.isoformat()])
            return WakeDecision(wake=True, reason="cooldown_elapsed")

        if session.sleep_reason == SleepReason.AWAITING_CHILDREN:
            return WakeDecision(wake=True, reason="recheck_children")

        if not session.waiting_on:
            return WakeDecision(wake=False, reason="manual_wake_needed")
        if self.gate is None:
            return WakeDecision(wake=False, reason="ci_unknown", pending=sorted(session.waiting_on))

        pending: list[str] = []
        failed = False
        for ref in sorted(session.waiting_on):
            try:
                result = self.gate.evaluate(ref)
            except CIUnavailable as e:
                logger.warning(f"[SESSION] {e}")
                pending.append(ref)
                continue
            if result.status == CIStatus.PENDING:
                pending.append(ref)
            elif result.status == CIStatus.FAILED:
                failed = True
        if pending:
            return WakeDecision(wake=False, reason="ci_pending", pending=pending)
        reason = "ci_complete_with_failures" if failed else "ci_complete_all_passed"
        return WakeDecision(wake=True, reason=reason)
