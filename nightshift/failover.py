"""
NIGHTSHIFT Credential Failover Controller

Runs when the agent process is about to exit (`nightshift failover`), not
inside the scheduler loop. If the agent's recent output shows it hit a
plan or rate limit:

  1. mark the current account exhausted
  2. pick the next account out of cooldown, round-robin from the current one
  3. refuse to rotate if switches are flapping (every account is limited)
  4. otherwise activate the new credentials and kill the agent so its
     supervisor restarts it on them
  5. with no candidate, leave a sleep marker and kill the agent anyway

The controller's own announcements would match its own patterns ("Plan
limit reached on ..."), so they are filtered out before classification.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger
from pydantic import BaseModel

from nightshift.config_loader import FailoverConfig
from nightshift.event_bus import EventBus
from nightshift.models import Account, SwitchEvent, utcnow


DEFAULT_PATTERNS: tuple[str, ...] = (
    r"claude.*rate.?limit",
    r"anthropic.*rate.?limit",
    r"api.*rate.?limit",
    r"claude.*quota",
    r"anthropic.*quota",
    r"claude.*usage.?limit",
    r"pro.?plan.*limit",
    r"subscription.*limit",
    r"messages?.?limit.*exceeded",
    r"exceeded.*messages?.?limit",
    r"you.?have.?reached.*limit",
    r"usage.?cap",
    r"api.*429",
    r"429.*rate",
    r"error.*429",
    r"api.*503",
    r"503.*overload",
    r"claude.*overload",
    r"anthropic.*overload",
    r"api.*throttl",
    r"request.*throttl",
    r"claude.*throttl",
)

DEFAULT_SELF_MARKERS: tuple[str, ...] = (
    "Plan limit reached on",
    "Switching to account:",
    "claude-account switch",
    "All accounts exhausted",
    "Entering SLEEP mode",
    "entering cooldown",
)

SWITCH_LOG_LIMIT = 20


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class SelfOutputFilter:
    """Drops lines the controller itself produced."""

    def __init__(self, markers: Iterable[str] = DEFAULT_SELF_MARKERS):
        self.markers = [m.lower() for m in markers if m]

    def is_self(self, line: str) -> bool:
        lower = line.lower()
        return any(marker in lower for marker in self.markers)

    def strip(self, text: str) -> str:
        return "\n".join(line for line in text.splitlines() if not self.is_self(line))


class ExhaustionClassifier(ABC):
    """Decides whether agent output shows credential exhaustion."""

    @abstractmethod
    def is_exhausted(self, text: str) -> bool:
        ...


class PatternClassifier(ExhaustionClassifier):
    def __init__(
        self,
        patterns: Iterable[str] = DEFAULT_PATTERNS,
        self_filter: SelfOutputFilter | None = None,
    ):
        self.patterns = [re.compile(p, re.IGNORECASE) for p in patterns]
        self.self_filter = self_filter or SelfOutputFilter()

    def matches(self, text: str) -> list[str]:
        found = []
        for line in self.self_filter.strip(text).splitlines():
            if any(p.search(line) for p in self.patterns):
                found.append(line)
        return found

    def is_exhausted(self, text: str) -> bool:
        return bool(self.matches(text))


def classifier_from_config(config: FailoverConfig) -> PatternClassifier:
    return PatternClassifier(
        patterns=(*DEFAULT_PATTERNS, *config.extra_patterns),
        self_filter=SelfOutputFilter((*DEFAULT_SELF_MARKERS, *config.extra_self_markers)),
    )


# ---------------------------------------------------------------------------
# Exhaustion ledger
# ---------------------------------------------------------------------------

def _iso(ts: datetime) -> str:
    return ts.strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_iso(value: str) -> datetime | None:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None


def _write_private_json(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)


class ExhaustionLedger:
    """
    Local JSON file:
        {"exhausted": {account: iso}, "switches": [{from, to, timestamp}], "cooldown_minutes": n}
    Switches are capped at the last 20.
    """

    def __init__(self, path: Path, cooldown_minutes: float = 5.0):
        self.path = path
        self.cooldown_minutes = cooldown_minutes

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"exhausted": {}, "switches": [], "cooldown_minutes": self.cooldown_minutes}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"[FAILOVER] Corrupt ledger at {self.path}, starting fresh")
            data = {}
        data.setdefault("exhausted", {})
        data.setdefault("switches", [])
        data["cooldown_minutes"] = self.cooldown_minutes
        return data

    def save(self, data: dict[str, Any]) -> None:
        data["switches"] = data.get("switches", [])[-SWITCH_LOG_LIMIT:]
        _write_private_json(self.path, data)

    def mark_exhausted(self, account: str, now: datetime) -> None:
        data = self.load()
        data["exhausted"][account] = _iso(now)
        self.save(data)

    def exhausted_at(self, account: str) -> datetime | None:
        value = self.load()["exhausted"].get(account)
        return _parse_iso(value) if value else None

    def record_switch(self, event: SwitchEvent) -> None:
        data = self.load()
        data["switches"].append(event.model_dump(by_alias=True))
        self.save(data)

    def switches(self) -> list[SwitchEvent]:
        return [SwitchEvent.model_validate(s) for s in self.load()["switches"]]

    def recent_switch_count(self, now: datetime, window_seconds: float) -> int:
        threshold = now.timestamp() - window_seconds
        return sum(1 for s in self.switches() if s.timestamp > threshold)


class AccountPool:
    def __init__(self, accounts: list[str], ledger: ExhaustionLedger, cooldown: timedelta):
        self.ids = list(accounts)
        self.ledger = ledger
        self.cooldown = cooldown

    def accounts(self) -> list[Account]:
        exhausted = self.ledger.load()["exhausted"]
        return [
            Account(id=acct, exhausted_at=_parse_iso(exhausted[acct]) if acct in exhausted else None)
            for acct in self.ids
        ]

    def select_next(self, current: str | None, now: datetime) -> str | None:
        """
        First account after `current` whose cooldown has elapsed, wrapping
        once to the accounts before it. `current` itself is never chosen.
        """
        accounts = self.accounts()
        if current in self.ids:
            idx = self.ids.index(current)
            order = accounts[idx + 1:] + accounts[:idx]
        else:
            order = accounts
        for account in order:
            if account.available(now, self.cooldown):
                return account.id
        return None


# ---------------------------------------------------------------------------
# Side effects: credentials, processes, markers
# ---------------------------------------------------------------------------

class CredentialSwitcher:
    """Reads the active account from the agent's config and runs the switch command."""

    def __init__(self, config: FailoverConfig):
        self.config_file = Path(config.current_account_file).expanduser()
        self.key_path = [k for k in config.current_account_key.split(".") if k]
        self.switch_command = config.switch_command

    def current_account(self) -> str | None:
        if not self.config_file.exists():
            return None
        try:
            node: Any = json.loads(self.config_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(f"[FAILOVER] Cannot parse {self.config_file}")
            return None
        for key in self.key_path:
            if not isinstance(node, dict):
                return None
            node = node.get(key)
        return str(node) if node else None

    def activate(self, account: str) -> bool:
        command = self.switch_command.format(account=account, account_q=shlex.quote(account))
        result = subprocess.run(command, shell=True, capture_output=True, text=True)
        if result.returncode != 0:
            logger.error(
                f"[FAILOVER] Failed to switch to {account}. Manual intervention required. "
                f"{result.stderr.strip()}"
            )
            return False
        return True


class ProcessTerminator:
    """SIGTERM, grace period, then SIGKILL."""

    def __init__(
        self,
        process_name: str = "claude",
        grace_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.process_name = process_name
        self.grace_seconds = grace_seconds
        self.sleep = sleep

    def _ps(self, pid: int, column: str) -> str:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", f"{column}="],
            capture_output=True,
            text=True,
        )
        return result.stdout.strip() if result.returncode == 0 else ""

    def find_pid(self, start_pid: int | None = None) -> int | None:
        """Walk up from `start_pid` looking for the agent, then fall back to pgrep."""
        pid = start_pid if start_pid is not None else os.getppid()
        while pid and pid > 1:
            if os.path.basename(self._ps(pid, "comm")) == self.process_name:
                return pid
            parent = self._ps(pid, "ppid")
            pid = int(parent) if parent.isdigit() else 0

        result = subprocess.run(["pgrep", "-x", self.process_name], capture_output=True, text=True)
        first = result.stdout.split()[:1]
        return int(first[0]) if first else None

    @staticmethod
    def alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def terminate(self, pid: int) -> bool:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return False
        logger.info(f"[FAILOVER] Sent SIGTERM to agent (pid {pid})")
        self.sleep(self.grace_seconds)
        if self.alive(pid):
            logger.info(f"[FAILOVER] Agent did not exit, sending SIGKILL (pid {pid})")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        return True


class SleepMarker:
    """Durable 'all accounts exhausted, retry after cooldown' marker."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, account: str | None, now: datetime, cooldown_minutes: float, reason: str) -> None:
        _write_private_json(
            self.path,
            {
                "exhausted_account": account,
                "timestamp": _iso(now),
                "cooldown_minutes": cooldown_minutes,
                "reason": reason,
            },
        )

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def retry_after(self) -> datetime | None:
        data = self.read()
        if not data:
            return None
        since = _parse_iso(data.get("timestamp", ""))
        if since is None:
            return None
        return since + timedelta(minutes=float(data.get("cooldown_minutes", 0)))

    def active(self, now: datetime) -> bool:
        until = self.retry_after()
        return until is not None and now < until

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class PendingSwitchMarker:
    """Tells the agent's supervisor a credential switch is waiting for a restart."""

    def __init__(self, path: Path):
        self.path = path

    def write(self, from_account: str, to_account: str, now: datetime) -> None:
        _write_private_json(
            self.path,
            {"from": from_account, "to": to_account, "timestamp": _iso(now), "reason": "plan_limit"},
        )

    def read(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None


def failover_paths(state_dir: Path) -> dict[str, Path]:
    return {
        "ledger": state_dir / "account-exhaustion.json",
        "sleep": state_dir / "account-sleep-mode.json",
        "pending": state_dir / "pending-account-switch.json",
    }


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class FailoverOutcome(str, Enum):
    NOT_EXHAUSTED = "not_exhausted"
    UNKNOWN_ACCOUNT = "unknown_account"
    SWITCHED = "switched"
    ALL_EXHAUSTED = "all_exhausted"
    FLAPPING = "flapping"


class FailoverResult(BaseModel):
    outcome: FailoverOutcome
    from_account: str | None = None
    to_account: str | None = None
    reason: str = ""
    terminated_pid: int | None = None


class FailoverController:
    def __init__(
        self,
        config: FailoverConfig,
        state_dir: Path,
        switcher: CredentialSwitcher | None = None,
        terminator: ProcessTerminator | None = None,
        classifier: ExhaustionClassifier | None = None,
        clock: Callable[[], datetime] = utcnow,
        event_bus: EventBus | None = None,
    ):
        self.config = config
        paths = failover_paths(state_dir)
        self.ledger = ExhaustionLedger(paths["ledger"], config.cooldown_minutes)
        self.pool = AccountPool(config.accounts, self.ledger, timedelta(minutes=config.cooldown_minutes))
        self.sleep_marker = SleepMarker(paths["sleep"])
        self.pending_marker = PendingSwitchMarker(paths["pending"])
        self.switcher = switcher or CredentialSwitcher(config)
        self.terminator = terminator or ProcessTerminator(config.agent_process_name, config.grace_seconds)
        self.classifier = classifier or classifier_from_config(config)
        self.clock = clock
        self.event_bus = event_bus

    def _emit(self, result: FailoverResult) -> None:
        if self.event_bus:
            self.event_bus.emit("failover", "failover", result.model_dump(mode="json"))

    def _stop_agent(self, agent_pid: int | None) -> int | None:
        pid = agent_pid if agent_pid is not None else self.terminator.find_pid()
        if pid is None:
            logger.warning("[FAILOVER] Could not find the agent process. Manual restart required.")
            return None
        return pid if self.terminator.terminate(pid) else None

    def _suspend(self, current: str, now: datetime, outcome: FailoverOutcome, reason: str, agent_pid: int | None) -> FailoverResult:
        self.sleep_marker.write(current, now, self.config.cooldown_minutes, reason="all_accounts_exhausted")
        logger.warning(f"[FAILOVER] {reason} Entering SLEEP mode for {self.config.cooldown_minutes:g} minutes.")
        result = FailoverResult(
            outcome=outcome,
            from_account=current,
            reason=reason,
            terminated_pid=self._stop_agent(agent_pid),
        )
        self._emit(result)
        return result

    def handle_exit(self, transcript: str, agent_pid: int | None = None) -> FailoverResult:
        tail = "\n".join(transcript.splitlines()[-self.config.transcript_tail_lines:])
        if not self.classifier.is_exhausted(tail):
            return FailoverResult(outcome=FailoverOutcome.NOT_EXHAUSTED)

        current = self.switcher.current_account()
        if not current:
            logger.warning("[FAILOVER] Plan limit detected but the active account is unknown")
            return FailoverResult(outcome=FailoverOutcome.UNKNOWN_ACCOUNT, reason="active account unknown")

        now = self.clock()
        self.ledger.mark_exhausted(current, now)
        candidate = self.pool.select_next(current, now)

        if candidate is None:
            return self._suspend(
                current, now, FailoverOutcome.ALL_EXHAUSTED,
                "All accounts exhausted or in cooldown.", agent_pid,
            )

        recent = self.ledger.recent_switch_count(now, self.config.flap_window_seconds)
        if recent >= self.config.flap_threshold:
            return self._suspend(
                current, now, FailoverOutcome.FLAPPING,
                f"All accounts exhausted: {recent} switches in {self.config.flap_window_seconds:g}s, entering cooldown.",
                agent_pid,
            )

        self.ledger.record_switch(SwitchEvent(from_account=current, to=candidate, timestamp=now.timestamp()))
        logger.warning(f"[FAILOVER] Plan limit reached on {current}. Switching to account: {candidate}")
        activated = self.switcher.activate(candidate)
        self.pending_marker.write(current, candidate, now)
        self.sleep_marker.clear()

        result = FailoverResult(
            outcome=FailoverOutcome.SWITCHED,
            from_account=current,
            to_account=candidate,
            reason="" if activated else "switch command failed",
            terminated_pid=self._stop_agent(agent_pid),
        )
        self._emit(result)
        return result
