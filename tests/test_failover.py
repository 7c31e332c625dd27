import signal
from datetime import timedelta

import pytest

from nightshift.config_loader import FailoverConfig
from nightshift.failover import (
    SWITCH_LOG_LIMIT,
    AccountPool,
    ExhaustionLedger,
    FailoverController,
    FailoverOutcome,
    PatternClassifier,
    ProcessTerminator,
    SleepMarker,
)
from nightshift.models import SwitchEvent

from conftest import T0, FakeClock


LIMIT_LINE = "Error: Claude usage limit reached. Try again later."


class FakeSwitcher:
    def __init__(self, current):
        self.current = current
        self.activated = []

    def current_account(self):
        return self.current

    def activate(self, account):
        self.activated.append(account)
        self.current = account
        return True


class FakeTerminator:
    def __init__(self):
        self.terminated = []

    def find_pid(self, start_pid=None):
        return 999

    def terminate(self, pid):
        self.terminated.append(pid)
        return True


def _controller(tmp_path, accounts, current, clock=None, **overrides):
    config = FailoverConfig(accounts=accounts, **overrides)
    switcher = FakeSwitcher(current)
    terminator = FakeTerminator()
    controller = FailoverController(
        config,
        tmp_path,
        switcher=switcher,
        terminator=terminator,
        clock=clock or FakeClock(),
    )
    return controller, switcher, terminator


# -- classification ----------------------------------------------------------

@pytest.mark.parametrize(
    "line",
    [
        "Claude usage limit reached",
        "API Error: 429 rate limited",
        "Anthropic API overloaded (503 overload)",
        "You have reached your message limit",
        "request was throttled",
    ],
)
def test_pattern_classifier_detects_limits(line):
    assert PatternClassifier().is_exhausted(f"working\n{line}\n")


def test_pattern_classifier_ignores_normal_output():
    assert not PatternClassifier().is_exhausted("All tests passed\nCommitted 3 files\n")


def test_own_announcements_are_not_exhaustion():
    text = "Plan limit reached on a@example.com. Switching to account: b@example.com\n"
    assert not PatternClassifier().is_exhausted(text)


# -- ledger and pool ---------------------------------------------------------

def test_ledger_caps_switch_log(tmp_path):
    ledger = ExhaustionLedger(tmp_path / "ledger.json")
    for i in range(SWITCH_LOG_LIMIT + 5):
        ledger.record_switch(SwitchEvent(from_account="a", to="b", timestamp=float(i)))

    switches = ledger.switches()
    assert len(switches) == SWITCH_LOG_LIMIT
    assert switches[0].timestamp == 5.0
    assert (tmp_path / "ledger.json").stat().st_mode & 0o777 == 0o600


def test_cooldown_boundary(tmp_path):
    ledger = ExhaustionLedger(tmp_path / "ledger.json", cooldown_minutes=5)
    ledger.mark_exhausted("b", T0)
    pool = AccountPool(["a", "b"], ledger, timedelta(minutes=5))

    assert pool.select_next("a", T0 + timedelta(minutes=5) - timedelta(seconds=1)) is None
    assert pool.select_next("a", T0 + timedelta(minutes=5)) == "b"
    assert pool.select_next("a", T0 + timedelta(minutes=5, seconds=1)) == "b"


def test_select_next_is_round_robin_from_current(tmp_path):
    pool = AccountPool(["a", "b", "c"], ExhaustionLedger(tmp_path / "l.json"), timedelta(minutes=5))
    assert pool.select_next("b", T0) == "c"
    assert pool.select_next("c", T0) == "a"
    assert pool.select_next(None, T0) == "a"


# -- controller --------------------------------------------------------------

def test_not_exhausted_does_nothing(tmp_path):
    controller, switcher, terminator = _controller(tmp_path, ["a", "b"], "a")
    result = controller.handle_exit("all good\n")
    assert result.outcome == FailoverOutcome.NOT_EXHAUSTED
    assert switcher.activated == []
    assert terminator.terminated == []


def test_unknown_account_is_left_alone(tmp_path):
    controller, switcher, _ = _controller(tmp_path, ["a", "b"], None)
    assert controller.handle_exit(LIMIT_LINE).outcome == FailoverOutcome.UNKNOWN_ACCOUNT
    assert switcher.activated == []


def test_switch_marks_exhausted_and_restarts_agent(tmp_path):
    controller, switcher, terminator = _controller(tmp_path, ["a", "b"], "a")

    result = controller.handle_exit(LIMIT_LINE)

    assert result.outcome == FailoverOutcome.SWITCHED
    assert result.to_account == "b"
    assert switcher.activated == ["b"]
    assert terminator.terminated == [999]
    assert controller.ledger.exhausted_at("a") == T0
    pending = controller.pending_marker.read()
    assert pending["from"] == "a" and pending["to"] == "b"


def test_two_accounts_rotate_after_cooldown(tmp_path):
    clock = FakeClock()
    controller, switcher, _ = _controller(tmp_path, ["a", "b"], "a", clock=clock, flap_threshold=10)

    assert controller.handle_exit(LIMIT_LINE).to_account == "b"
    clock.advance(60)
    result = controller.handle_exit(LIMIT_LINE)
    assert result.outcome == FailoverOutcome.ALL_EXHAUSTED

    clock.advance(5 * 60)
    switcher.current = "b"
    assert controller.handle_exit(LIMIT_LINE).to_account == "a"


def test_all_exhausted_writes_sleep_marker(tmp_path):
    controller, switcher, terminator = _controller(tmp_path, ["a"], "a")

    result = controller.handle_exit(LIMIT_LINE)

    assert result.outcome == FailoverOutcome.ALL_EXHAUSTED
    assert switcher.activated == []
    assert terminator.terminated == [999]
    marker = SleepMarker(tmp_path / "account-sleep-mode.json")
    assert marker.read()["exhausted_account"] == "a"
    assert marker.retry_after() == T0 + timedelta(minutes=5)
    assert marker.active(T0 + timedelta(minutes=4))
    assert not marker.active(T0 + timedelta(minutes=5))


def test_fourth_switch_within_window_is_flapping(tmp_path):
    clock = FakeClock()
    accounts = ["a", "b", "c", "d", "e"]
    controller, switcher, _ = _controller(tmp_path, accounts, "a", clock=clock)

    outcomes = []
    for _ in range(4):
        outcomes.append(controller.handle_exit(LIMIT_LINE).outcome)
        clock.advance(10)

    assert outcomes == [FailoverOutcome.SWITCHED] * 3 + [FailoverOutcome.FLAPPING]
    assert len(switcher.activated) == 3
    assert (tmp_path / "account-sleep-mode.json").exists()


def test_switches_outside_window_are_not_flapping(tmp_path):
    clock = FakeClock()
    controller, _, _ = _controller(tmp_path, ["a", "b", "c", "d", "e"], "a", clock=clock)

    outcomes = []
    for _ in range(4):
        outcomes.append(controller.handle_exit(LIMIT_LINE).outcome)
        clock.advance(30)

    assert outcomes == [FailoverOutcome.SWITCHED] * 4


def test_successful_switch_clears_sleep_marker(tmp_path):
    marker = SleepMarker(tmp_path / "account-sleep-mode.json")
    marker.write("a", T0, 5, reason="all_accounts_exhausted")
    controller, _, _ = _controller(tmp_path, ["a", "b"], "a")

    controller.handle_exit(LIMIT_LINE)

    assert marker.read() is None


# -- terminator --------------------------------------------------------------

def test_terminator_escalates_to_sigkill(monkeypatch):
    sent = []

    def fake_kill(pid, sig):
        sent.append(sig)

    monkeypatch.setattr("nightshift.failover.os.kill", fake_kill)
    naps = []
    terminator = ProcessTerminator(grace_seconds=1.0, sleep=naps.append)

    assert terminator.terminate(1234)
    assert sent == [signal.SIGTERM, 0, signal.SIGKILL]
    assert naps == [1.0]


def test_terminator_stops_after_sigterm_when_process_exits(monkeypatch):
    sent = []

    def fake_kill(pid, sig):
        sent.append(sig)
        if sig == 0:
            raise ProcessLookupError

    monkeypatch.setattr("nightshift.failover.os.kill", fake_kill)
    terminator = ProcessTerminator(grace_seconds=1.0, sleep=lambda s: None)

    assert terminator.terminate(1234)
    assert sent == [signal.SIGTERM, 0]
