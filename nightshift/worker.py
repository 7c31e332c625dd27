"""
NIGHTSHIFT Worker Supervisor

Spawns and watches a bounded set of worker processes. A worker is the
opaque agent command run against exactly one work item, with an injected
contract: turn budget, the exit conditions it may report, and any handover
context or research findings carried forward from a previous attempt.

Workers report back by printing one WORKER:RESULT record:

    <!-- WORKER:RESULT -->
    {"outcome": "completed", "change": "57"}
    <!-- /WORKER:RESULT -->

`poll` never blocks. A worker that exits without a result record has
failed; one whose output carries a credential-exhaustion signature has
failed transiently.
"""

from __future__ import annotations

import json
import re
import shlex
import subprocess
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

from loguru import logger
from pydantic import BaseModel, Field

from nightshift import records
from nightshift.config_loader import WorkerConfig
from nightshift.event_bus import EventBus
from nightshift.failover import ExhaustionClassifier, PatternClassifier
from nightshift.models import ItemStatus, WorkItem, utcnow
from nightshift.records import RecordKind
from nightshift.store import StateStore


class WorkerLaunchError(Exception):
    pass


class WorkerMode(str, Enum):
    IMPLEMENT = "implement"
    RESEARCH = "research"


class DerivedItem(BaseModel):
    """A dependent item a worker asks for (a deviation)."""
    title: str
    body: str = ""


class SpawnRequest(BaseModel):
    """What the scheduler asks the supervisor to start."""
    item_id: str
    mode: WorkerMode = WorkerMode.IMPLEMENT
    handover_context: str | None = None
    research_findings: str | None = None
    failure_reason: str | None = None
    research_cycles: int | None = None
    new_attempt: bool = True


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class WorkerContract(BaseModel):
    item_id: str
    title: str = ""
    mode: WorkerMode = WorkerMode.IMPLEMENT
    attempt: int = 1
    turn_budget: int = 200
    exit_conditions: list[str] = Field(default_factory=list)
    handover_context: str | None = None
    research_findings: str | None = None
    failure_reason: str | None = None

    @property
    def read_only(self) -> bool:
        return self.mode == WorkerMode.RESEARCH

    def render_prompt(self) -> str:
        lines = [
            f"# Work item {self.item_id}: {self.title}".rstrip(": "),
            "",
            f"Mode: {self.mode.value} (attempt {self.attempt})",
            f"Turn budget: {self.turn_budget}",
            f"Scope: work item {self.item_id} only. Do not touch other items.",
        ]
        if self.read_only:
            lines += [
                "",
                "This is a read-only diagnostic pass. Do not modify files, branches "
                "or pull requests. Find out why the previous attempt failed and "
                "report your findings.",
            ]
        if self.failure_reason:
            lines += ["", "## Previous failure", self.failure_reason]
        if self.research_findings:
            lines += ["", "## Research findings", self.research_findings]
        if self.handover_context:
            lines += ["", "## Handover from previous worker", self.handover_context]

        lines += [
            "",
            "## Reporting",
            "Finish by printing exactly one result record:",
            "",
            f"<!-- {RecordKind.RESULT.value} -->",
            '{"outcome": "<one of: ' + ", ".join(self.exit_conditions) + '>", ...}',
            f"<!-- /{RecordKind.RESULT.value} -->",
            "",
            'completed: include "change" (the pull request number) or "findings".',
            'blocked: include "reason", and "deviation" as a list of {"title", "body"} '
            "for dependent items that must be done first.",
            'handover: include "context" for the next worker when the budget runs low.',
            'failed: include "reason".',
        ]
        return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Poll results
# ---------------------------------------------------------------------------

class WorkerOutcome(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    HANDOVER = "handover"
    FAILED = "failed"


class PollResult(BaseModel):
    outcome: WorkerOutcome
    artifact_ref: str | None = None
    findings: str | None = None
    reason: str = ""
    context: str | None = None
    deviation: list[DerivedItem] = Field(default_factory=list)
    transient: bool = False
    exit_code: int | None = None

    @property
    def finished(self) -> bool:
        return self.outcome != WorkerOutcome.RUNNING


_OUTCOME_ALIASES = {
    "completed": WorkerOutcome.COMPLETED,
    "complete": WorkerOutcome.COMPLETED,
    "done": WorkerOutcome.COMPLETED,
    "blocked": WorkerOutcome.BLOCKED,
    "handover": WorkerOutcome.HANDOVER,
    "handover_needed": WorkerOutcome.HANDOVER,
    "failed": WorkerOutcome.FAILED,
    "failure": WorkerOutcome.FAILED,
}


def parse_result(
    text: str,
    exit_code: int | None,
    classifier: ExhaustionClassifier | None = None,
    tail_lines: int = 200,
) -> PollResult:
    """Interpret a finished worker's output."""
    tail = "\n".join(text.splitlines()[-tail_lines:])
    exhausted = bool(classifier and classifier.is_exhausted(tail))

    record = records.latest(records.extract(text), RecordKind.RESULT)
    if record is None:
        if exhausted:
            return PollResult(
                outcome=WorkerOutcome.FAILED,
                reason="agent hit a credential limit",
                transient=True,
                exit_code=exit_code,
            )
        return PollResult(
            outcome=WorkerOutcome.FAILED,
            reason=f"worker exited with code {exit_code} without a result record",
            exit_code=exit_code,
        )

    outcome = _OUTCOME_ALIASES.get(str(record.get("outcome", "")).lower())
    if outcome is None:
        return PollResult(
            outcome=WorkerOutcome.FAILED,
            reason=f"unknown worker outcome {record.get('outcome')!r}",
            exit_code=exit_code,
        )

    if outcome == WorkerOutcome.COMPLETED:
        change = record.get("change")
        findings = record.get("findings")
        if findings is not None and not isinstance(findings, str):
            findings = json.dumps(findings, indent=2, default=str)
        return PollResult(
            outcome=outcome,
            artifact_ref=str(change) if change is not None else None,
            findings=findings,
            exit_code=exit_code,
        )
    if outcome == WorkerOutcome.BLOCKED:
        deviation = []
        for entry in record.get("deviation") or []:
            if isinstance(entry, str):
                deviation.append(DerivedItem(title=entry))
            elif isinstance(entry, dict) and entry.get("title"):
                deviation.append(DerivedItem(title=entry["title"], body=entry.get("body", "")))
        return PollResult(
            outcome=outcome,
            reason=str(record.get("reason", "")),
            deviation=deviation,
            exit_code=exit_code,
        )
    if outcome == WorkerOutcome.HANDOVER:
        context = record.get("context")
        if not isinstance(context, str):
            context = json.dumps(context, indent=2, default=str) if context else ""
        return PollResult(outcome=outcome, context=context, exit_code=exit_code)

    return PollResult(
        outcome=WorkerOutcome.FAILED,
        reason=str(record.get("reason", "worker reported failure")),
        transient=exhausted,
        exit_code=exit_code,
    )


# ---------------------------------------------------------------------------
# Process seam
# ---------------------------------------------------------------------------

class Process(Protocol):
    pid: int

    def poll(self) -> int | None:
        ...


class ProcessLauncher(Protocol):
    def launch(self, command: str, cwd: Path, log_path: Path) -> Process:
        ...


class SubprocessLauncher:
    """Runs the worker command through the shell, output to a log file."""

    def launch(self, command: str, cwd: Path, log_path: Path) -> subprocess.Popen:
        with log_path.open("w", encoding="utf-8") as stream:
            stream.write(f"# launch: {command}\n")
            stream.flush()
            return subprocess.Popen(
                command,
                cwd=cwd,
                shell=True,
                stdout=stream,
                stderr=subprocess.STDOUT,
                text=True,
                start_new_session=True,
            )


def format_template(template: str, values: dict[str, str]) -> str:
    expanded = dict(values)
    for key, value in values.items():
        expanded[f"{key}_q"] = shlex.quote(value)
    try:
        return template.format_map(expanded)
    except KeyError as e:
        allowed = ", ".join(sorted(values))
        raise WorkerLaunchError(
            f"Unknown placeholder {e} in worker command template. "
            f"Allowed: {allowed} plus *_q variants."
        ) from e


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------

@dataclass
class WorkerHandle:
    """Ephemeral, process-local. Never persisted."""
    task_id: str
    item_id: str
    mode: WorkerMode
    attempt: int
    research_cycles: int
    started_at: datetime
    log_path: Path
    prompt_path: Path
    process: Any
    turns_used: int = 0
    request: SpawnRequest | None = field(default=None, repr=False)


_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class WorkerSupervisor:
    def __init__(
        self,
        store: StateStore,
        config: WorkerConfig,
        worker_dir: Path,
        repo_path: Path,
        launcher: ProcessLauncher | None = None,
        classifier: ExhaustionClassifier | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config
        self.worker_dir = worker_dir
        self.repo_path = repo_path
        self.launcher = launcher or SubprocessLauncher()
        self.classifier = classifier or PatternClassifier()
        self.event_bus = event_bus
        self.clock = clock
        self._handles: dict[str, WorkerHandle] = {}

    # -- bookkeeping ----------------------------------------------------------

    def live(self) -> list[WorkerHandle]:
        return list(self._handles.values())

    @property
    def live_count(self) -> int:
        return len(self._handles)

    def busy_items(self) -> set[str]:
        return {h.item_id for h in self._handles.values()}

    def _emit(self, event_type: str, payload: dict) -> None:
        if self.event_bus:
            self.event_bus.emit(event_type, "worker", payload)

    # -- spawn ----------------------------------------------------------------

    def spawn(self, item: WorkItem, request: SpawnRequest) -> WorkerHandle:
        """Record the assignment on the tracker, then start the worker process."""
        if item.id in self.busy_items():
            raise WorkerLaunchError(f"{item.id} already has a live worker")

        mode = request.mode
        # A CI rework worker leaves its item In Review.
        if mode == WorkerMode.IMPLEMENT and item.status not in (ItemStatus.IN_PROGRESS, ItemStatus.IN_REVIEW):
            item = self.store.set_status(item.id, ItemStatus.IN_PROGRESS)

        attempt = item.attempt + 1 if (mode == WorkerMode.IMPLEMENT and request.new_attempt) else max(item.attempt, 1)
        research_cycles = item.research_cycles if request.research_cycles is None else request.research_cycles
        turn_budget = self.config.turn_budget if mode == WorkerMode.IMPLEMENT else self.config.research_turn_budget
        started_at = self.clock()
        task_id = f"{_UNSAFE_RE.sub('-', item.id)}-a{attempt:02d}-{mode.value}-{uuid.uuid4().hex[:6]}"

        self.store.append_log(
            item.id,
            RecordKind.ASSIGNED,
            {
                "worker": task_id,
                "attempt": attempt,
                "research_cycles": research_cycles,
                "mode": mode.value,
                "turn_budget": turn_budget,
                "started_at": started_at.isoformat(),
                "handover": request.handover_context is not None,
            },
            summary=f"Worker assigned ({mode.value}, attempt {attempt}).",
        )

        contract = WorkerContract(
            item_id=item.id,
            title=item.title,
            mode=mode,
            attempt=attempt,
            turn_budget=turn_budget,
            exit_conditions=list(self.config.exit_conditions),
            handover_context=request.handover_context,
            research_findings=request.research_findings,
            failure_reason=request.failure_reason,
        )

        self.worker_dir.mkdir(parents=True, exist_ok=True)
        prompt_path = self.worker_dir / f"{task_id}.prompt.md"
        log_path = self.worker_dir / f"{task_id}.log"
        prompt_path.write_text(contract.render_prompt(), encoding="utf-8")

        command = format_template(
            self.config.command_template,
            {
                "item_id": item.id,
                "task_id": task_id,
                "mode": mode.value,
                "turn_budget": str(turn_budget),
                "prompt_file": str(prompt_path),
                "log_file": str(log_path),
                "repo": str(self.repo_path),
            },
        )
        try:
            process = self.launcher.launch(command, self.repo_path, log_path)
        except OSError as e:
            raise WorkerLaunchError(f"Could not start worker for {item.id}: {e}") from e

        handle = WorkerHandle(
            task_id=task_id,
            item_id=item.id,
            mode=mode,
            attempt=attempt,
            research_cycles=research_cycles,
            started_at=started_at,
            log_path=log_path,
            prompt_path=prompt_path,
            process=process,
            request=request,
        )
        self._handles[task_id] = handle
        logger.info(f"[WORKER] Spawned {task_id} for {item.id} (pid={process.pid})")
        self._emit("worker_spawned", {"item": item.id, "task": task_id, "mode": mode.value, "attempt": attempt})
        return handle

    # -- poll -----------------------------------------------------------------

    def poll(self, handle: WorkerHandle) -> PollResult:
        """Non-blocking. A finished handle is released."""
        code = handle.process.poll()
        if code is None:
            return PollResult(outcome=WorkerOutcome.RUNNING)

        text = handle.log_path.read_text(encoding="utf-8", errors="replace") if handle.log_path.exists() else ""
        result = parse_result(text, code, self.classifier, self.config.log_tail_lines)

        record = records.latest(records.extract(text), RecordKind.RESULT)
        if record and isinstance(record.get("turns"), int):
            handle.turns_used = record.get("turns")

        self._handles.pop(handle.task_id, None)
        logger.info(
            f"[WORKER] {handle.task_id} finished: {result.outcome.value}"
            + (f" ({result.reason})" if result.reason else "")
        )
        self._emit(
            "worker_finished",
            {
                "item": handle.item_id,
                "task": handle.task_id,
                "outcome": result.outcome.value,
                "transient": result.transient,
                "exit_code": code,
            },
        )
        return result
