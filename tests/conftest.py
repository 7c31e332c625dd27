import copy
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from nightshift import records
from nightshift.ci import ChangeHost, ChangeState, CheckRun, CIGate
from nightshift.config_loader import CIConfig, EscalationConfig, SchedulerConfig, WorkerConfig
from nightshift.escalation import FailureController
from nightshift.event_bus import EventBus
from nightshift.failover import SleepMarker
from nightshift.models import ItemStatus
from nightshift.records import RecordKind
from nightshift.scheduler import Scheduler
from nightshift.scope import ScopeDescriptor, ScopeResolver
from nightshift.session import SessionStore
from nightshift.store import StateStore
from nightshift.tracker import RawItem, TrackerBackend, TrackerError
from nightshift.worker import WorkerSupervisor


T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeTracker(TrackerBackend):
    """In-memory board. Flags simulate writes that do not land."""

    def __init__(self):
        self.items: dict[str, RawItem] = {}
        self.next_id = 100
        self.ignore_status_writes = False
        self.drop_comments = False
        self.fail_snapshot = False
        self.bulk_reads = 0
        self.single_reads = 0
        self.bodies: dict[str, str] = {}

    def add(self, item_id, status=ItemStatus.READY, title="", labels=None, comments=None,
            priority=None, created_at=None, linked_changes=None):
        self.items[item_id] = RawItem(
            id=item_id,
            title=title or f"Item {item_id}",
            status=status.value if isinstance(status, ItemStatus) else status,
            labels=list(labels or []),
            comments=list(comments or []),
            priority=priority,
            created_at=created_at or (T0 + timedelta(minutes=len(self.items))),
            linked_changes=list(linked_changes or []),
        )
        return self.items[item_id]

    def comment(self, item_id, kind, payload):
        self.items[item_id].comments.append(records.render(kind, payload))

    def status_of(self, item_id) -> str:
        return self.items[item_id].status

    def records_of(self, item_id, kind):
        stream = records.extract_stream(self.items[item_id].comments)
        tag = kind.value if isinstance(kind, RecordKind) else kind
        return [r for r in stream if r.kind == tag]

    # -- TrackerBackend -------------------------------------------------------

    def fetch_items(self):
        self.bulk_reads += 1
        if self.fail_snapshot:
            raise TrackerError("board unavailable")
        return [copy.deepcopy(item) for item in self.items.values()]

    def fetch_item(self, item_id):
        self.single_reads += 1
        item = self.items.get(item_id)
        return copy.deepcopy(item) if item else None

    def update_status(self, item_id, status):
        if item_id not in self.items:
            raise TrackerError(f"no item {item_id}")
        if not self.ignore_status_writes:
            self.items[item_id].status = status.value

    def post_comment(self, item_id, body):
        if not self.drop_comments:
            self.items[item_id].comments.append(body)

    def create_item(self, title, body, labels, status):
        self.next_id += 1
        item_id = str(self.next_id)
        self.add(item_id, status=status, title=title, labels=labels)
        self.bodies[item_id] = body
        return item_id


class FakeChangeHost(ChangeHost):
    def __init__(self):
        self.check_runs: dict[str, list[CheckRun]] = {}
        self.states: dict[str, ChangeState] = {}
        self.merges: list[str] = []
        self.unavailable = False

    def set_checks(self, ref, *buckets):
        self.check_runs[ref] = [CheckRun(name=f"check-{i}", bucket=b) for i, b in enumerate(buckets)]

    def checks(self, change_ref):
        if self.unavailable:
            raise TrackerError("gh: 502 bad gateway")
        return list(self.check_runs.get(change_ref, []))

    def state(self, change_ref):
        if self.unavailable:
            raise TrackerError("gh: 502 bad gateway")
        return self.states.get(change_ref, ChangeState(state="OPEN", mergeable="MERGEABLE"))

    def merge(self, change_ref, method="squash", delete_branch=True):
        self.merges.append(change_ref)
        self.states[change_ref] = ChangeState(state="MERGED", mergeable="UNKNOWN")


class FakeProcess:
    _next_pid = 4000

    def __init__(self):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None

    def poll(self):
        return self.returncode


class FakeLauncher:
    def __init__(self):
        self.launched: list[tuple[str, Path, FakeProcess]] = []

    def launch(self, command, cwd, log_path):
        log_path.write_text(f"# launch: {command}\n", encoding="utf-8")
        process = FakeProcess()
        self.launched.append((command, log_path, process))
        return process

    def finish(self, index, output="", code=0):
        _, log_path, process = self.launched[index]
        with log_path.open("a", encoding="utf-8") as f:
            f.write(output)
        process.returncode = code

    def finish_item(self, supervisor, item_id, output="", code=0):
        handle = next(h for h in supervisor.live() if h.item_id == item_id)
        for i, (_, log_path, process) in enumerate(self.launched):
            if process is handle.process:
                self.finish(i, output, code)
                return handle
        raise AssertionError(f"no process for {item_id}")


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def result_output(outcome, **payload):
    return "agent chatter\n" + records.render(RecordKind.RESULT, {"outcome": outcome, **payload}) + "\n"


class Harness:
    """A scheduler wired to in-memory fakes."""

    def __init__(self, tmp_path, scope="all", max_concurrency=5, max_research_cycles=3, max_depth=5):
        self.tracker = FakeTracker()
        self.host = FakeChangeHost()
        self.launcher = FakeLauncher()
        self.clock = FakeClock()
        self.bus = EventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.sleeps = []

        self.store = StateStore(self.tracker)
        self.resolver = ScopeResolver(self.store, ScopeDescriptor.parse(scope))
        self.supervisor = WorkerSupervisor(
            self.store,
            WorkerConfig(command_template="agent --turns {turn_budget} --prompt {prompt_file_q}"),
            worker_dir=tmp_path / "workers",
            repo_path=tmp_path,
            launcher=self.launcher,
            event_bus=self.bus,
            clock=self.clock,
        )
        self.escalation = FailureController(
            self.store,
            EscalationConfig(max_research_cycles=max_research_cycles, max_depth=max_depth),
            event_bus=self.bus,
        )
        self.gate = CIGate(self.host, self.store, CIConfig(), event_bus=self.bus)
        self.sessions = SessionStore(tmp_path / "state")
        self.sleep_marker = SleepMarker(tmp_path / "state" / "account-sleep-mode.json")
        self.scheduler = Scheduler(
            store=self.store,
            resolver=self.resolver,
            supervisor=self.supervisor,
            escalation=self.escalation,
            gate=self.gate,
            sessions=self.sessions,
            config=SchedulerConfig(max_concurrency=max_concurrency, poll_interval_seconds=30),
            sleep_marker=self.sleep_marker,
            event_bus=self.bus,
            sleep=self.sleeps.append,
            clock=self.clock,
        )

    def start(self):
        self.scheduler.bootstrap()
        return self.scheduler.iterate()

    def finish(self, item_id, outcome, code=0, **payload):
        return self.launcher.finish_item(self.supervisor, item_id, result_output(outcome, **payload), code)


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def store(tracker):
    return StateStore(tracker)


@pytest.fixture
def host():
    return FakeChangeHost()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)
