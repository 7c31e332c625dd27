"""
NIGHTSHIFT CLI - The Interface

  nightshift run --repo <path> [--scope all|label:x|12,15]
  nightshift wake-check --repo <path>      (should a sleeping session restart?)
  nightshift failover --transcript <file>  (agent exit interceptor)

Plus utilities:
  - nightshift status      (config, environment, session)
  - nightshift accounts    (credential pool and cooldowns)
  - nightshift init <path> (bootstrap .nightshift in a repo)
"""

from __future__ import annotations

import json
import shutil
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from nightshift.audit_logger import AuditLogger, read_events
from nightshift.ci import CIGate
from nightshift.config_loader import NightshiftConfig, load_config, validate_environment
from nightshift.escalation import FailureController
from nightshift.event_bus import EventBus, OrchestratorEvent
from nightshift.failover import (
    AccountPool,
    ExhaustionLedger,
    FailoverController,
    PendingSwitchMarker,
    SleepMarker,
    classifier_from_config,
    failover_paths,
)
from nightshift.github import GhClient, GhError, GitHubChangeHost, GitHubProjectTracker
from nightshift.identity import BANNER, __codename__, __tagline__, __version__
from nightshift.models import SessionStatus, utcnow
from nightshift.scheduler import LoopState, Scheduler
from nightshift.scope import ScopeDescriptor, ScopeResolver
from nightshift.session import SessionLock, SessionLockError, SessionStore, WakeAdvisor
from nightshift.store import StateStore
from nightshift.tracker import TrackerError
from nightshift.worker import WorkerSupervisor

load_dotenv()
load_dotenv(Path.home() / ".nightshift" / ".env")

app = typer.Typer(
    name="nightshift",
    help=f"{__codename__}: {__tagline__}\nAutonomous work orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


def _print_banner():
    console.print(f"[bright_blue]{BANNER}[/]")
    console.print(f"  [dim]v{__version__}: {__tagline__}[/]\n")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        lambda msg: console.print(f"[dim]{msg.rstrip()}[/]", highlight=False),
        level="DEBUG" if verbose else "INFO",
        format="{time:HH:mm:ss} | {level:<7} | {message}",
    )


_REPORTED_EVENTS = {
    "worker_spawned": "cyan",
    "completed": "green",
    "merged": "bold green",
    "handover": "blue",
    "research_started": "magenta",
    "deviation": "magenta",
    "blocked": "red",
    "ci_failed": "red",
    "review_missing": "yellow",
}


def _report_event(event: OrchestratorEvent) -> None:
    color = _REPORTED_EVENTS.get(event.event_type, "white")
    details = ", ".join(f"{k}={v}" for k, v in event.payload.items() if k != "item")
    item = event.payload.get("item", "")
    console.print(f"  [{color}]{event.event_type:<16}[/] {item:<6} [dim]{details}[/]", highlight=False)


def _state_dir(repo: Path, config: NightshiftConfig) -> Path:
    path = Path(config.workspace.state_dir)
    return path if path.is_absolute() else repo / path


def _resolve_path(repo: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else repo / path


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _github(repo: Path, config: NightshiftConfig) -> tuple[GhClient, str]:
    client = GhClient(cwd=repo)
    name = config.tracker.repo
    if not name:
        name = client.run("repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner").strip()
    return client, name


def _build_scheduler(repo: Path, config: NightshiftConfig, scope: str, bus: EventBus) -> Scheduler:
    tracker_cfg = config.tracker
    if not tracker_cfg.project_owner or tracker_cfg.project_number is None:
        raise TrackerError("No project configured. Set GITHUB_PROJECT=owner/number or tracker.project_* in config.")

    client, repo_name = _github(repo, config)
    tracker = GitHubProjectTracker(
        client,
        repo=repo_name,
        owner=tracker_cfg.project_owner,
        project_number=tracker_cfg.project_number,
        status_field=tracker_cfg.status_field,
        priority_field=tracker_cfg.priority_field,
    )
    state_dir = _state_dir(repo, config)
    store = StateStore(tracker)
    resolver = ScopeResolver(store, ScopeDescriptor.parse(scope))
    supervisor = WorkerSupervisor(
        store,
        config.worker,
        worker_dir=_resolve_path(repo, config.workspace.worker_dir),
        repo_path=repo,
        classifier=classifier_from_config(config.failover),
        event_bus=bus,
    )
    gate = CIGate(GitHubChangeHost(client, repo_name), store, config.ci, event_bus=bus)
    return Scheduler(
        store=store,
        resolver=resolver,
        supervisor=supervisor,
        escalation=FailureController(store, config.escalation, event_bus=bus),
        gate=gate,
        sessions=SessionStore(state_dir),
        config=config.scheduler,
        sleep_marker=SleepMarker(failover_paths(state_dir)["sleep"]),
        lock=SessionLock(state_dir),
        event_bus=bus,
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target repository"),
    scope: str = typer.Option("all", "--scope", "-s", help="all, label:<name>, or item ids (12,15)"),
    max_workers: Optional[int] = typer.Option(None, "--max-workers", "-w", help="Override max concurrent workers"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations", help="Stop after N loop iterations"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run the orchestrator until the scope is complete or it has to sleep."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    if max_workers is not None:
        config.scheduler.max_concurrency = max_workers
    if max_iterations is not None:
        config.scheduler.max_iterations = max_iterations

    bus = EventBus()
    try:
        scheduler = _build_scheduler(repo, config, scope, bus)
    except (TrackerError, ValueError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    AuditLogger(_resolve_path(repo, config.workspace.log_dir) / "events.jsonl", bus)
    bus.subscribe(_report_event, _REPORTED_EVENTS)

    try:
        result = scheduler.run()
    except SessionLockError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except TrackerError as e:
        console.print(f"[red]Tracker unavailable: {e}[/]")
        raise typer.Exit(1)

    session = result.session
    color = {LoopState.COMPLETE: "green", LoopState.SLEEPING: "yellow"}.get(result.state, "cyan")
    lines = [f"State: [bold {color}]{result.state.value}[/]", f"Iterations: {result.iterations}"]
    if session.sleep_reason:
        lines.append(f"Sleep reason: {session.sleep_reason.value}")
    if session.waiting_on:
        lines.append(f"Waiting on: {', '.join(sorted(session.waiting_on))}")
    if session.detail:
        lines.append(session.detail)
    console.print(Panel("\n".join(lines), title=f"Session {session.id}", border_style=color))


@app.command()
def status(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Check NIGHTSHIFT configuration, environment and session state."""
    _print_banner()
    repo = repo.resolve()
    config = load_config(repo)

    env_table = Table(title="Environment", border_style="cyan")
    env_table.add_column("Variable")
    env_table.add_column("Status")
    for var, available in validate_environment().items():
        env_table.add_row(var, "[green]set[/]" if available else "[red]missing[/]")
    console.print(env_table)

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    agent = config.worker.command_template.split()[0]
    for tool in ["git", "gh", agent]:
        found = shutil.which(tool)
        tools_table.add_row(tool, f"[green]{found}[/]" if found else "[dim]not found[/]")
    console.print(tools_table)

    console.print("\n[bold]Limits:[/]")
    console.print(f"  Max workers:          {config.scheduler.max_concurrency}")
    console.print(f"  Poll interval:        {config.scheduler.poll_interval_seconds:g}s")
    console.print(f"  Max research cycles:  {config.escalation.max_research_cycles}")
    console.print(f"  Max derivation depth: {config.escalation.max_depth}")

    session = SessionStore(_state_dir(repo, config)).load()
    if session is None:
        console.print("\n[dim]No orchestration session yet.[/]")
        return
    session_table = Table(title=f"Session {session.id}", border_style="magenta")
    session_table.add_column("Property")
    session_table.add_column("Value")
    session_table.add_row("Scope", session.scope)
    session_table.add_row("Status", session.status.value)
    session_table.add_row("Sleep reason", session.sleep_reason.value if session.sleep_reason else "-")
    session_table.add_row("Waiting on", ", ".join(sorted(session.waiting_on)) or "-")
    session_table.add_row("Since", session.since.isoformat() if session.since else "-")
    session_table.add_row("Updated", session.updated_at.isoformat())
    if session.detail:
        session_table.add_row("Detail", session.detail)
    console.print(session_table)

    events = read_events(_resolve_path(repo, config.workspace.log_dir) / "events.jsonl")
    if events:
        console.print("\n[bold]Recent events:[/]")
        for entry in events:
            item = entry.get("payload", {}).get("item", "")
            console.print(f"  [dim]{entry.get('timestamp', '')[:19]}[/] {entry.get('event_type')} {item}")


@app.command("wake-check")
def wake_check(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    as_json: bool = typer.Option(False, "--json", help="Print the decision as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Exit 0 if a sleeping session should be restarted, 1 otherwise."""
    _configure_logging(verbose)
    repo = repo.resolve()
    config = load_config(repo)
    state_dir = _state_dir(repo, config)
    sessions = SessionStore(state_dir)
    session = sessions.load()

    gate = None
    if session and session.status == SessionStatus.SLEEPING and session.waiting_on:
        try:
            client, repo_name = _github(repo, config)
            gate = CIGate(GitHubChangeHost(client, repo_name), store=None, config=config.ci)
        except GhError as e:
            logger.warning(f"[WAKE] {e}")

    retry_after = SleepMarker(failover_paths(state_dir)["sleep"]).retry_after()
    decision = WakeAdvisor(gate).check(session, retry_after=retry_after)

    if decision.wake and session is not None and session.status == SessionStatus.SLEEPING:
        session.wake(decision.reason)
        sessions.save(session)

    if as_json:
        console.print_json(decision.model_dump_json())
    else:
        color = "green" if decision.wake else "yellow"
        console.print(f"[{color}]{'wake' if decision.wake else 'sleep'}[/]: {decision.reason}")
        for ref in decision.pending:
            console.print(f"  [dim]pending: {ref}[/]")
    raise typer.Exit(0 if decision.wake else 1)


@app.command()
def failover(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    transcript: Optional[Path] = typer.Option(
        None, "--transcript", "-t", help="Agent transcript; read from hook JSON on stdin if omitted"
    ),
    pid: Optional[int] = typer.Option(None, "--pid", help="Agent process to terminate"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Detect plan limits in the agent's output and rotate credentials. Always exits 0."""
    _configure_logging(verbose)
    repo = repo.resolve()
    config = load_config(repo)

    if transcript is None and not sys.stdin.isatty():
        try:
            hook_input = json.loads(sys.stdin.read() or "{}")
        except json.JSONDecodeError:
            hook_input = {}
        if hook_input.get("transcript_path"):
            transcript = Path(hook_input["transcript_path"]).expanduser()

    if transcript is None or not transcript.exists():
        logger.debug("[FAILOVER] No transcript to inspect")
        raise typer.Exit(0)

    state_dir = _state_dir(repo, config)
    bus = EventBus()
    AuditLogger(_resolve_path(repo, config.workspace.log_dir) / "events.jsonl", bus)
    controller = FailoverController(config.failover, state_dir, event_bus=bus)
    result = controller.handle_exit(
        transcript.read_text(encoding="utf-8", errors="replace"),
        agent_pid=pid,
    )
    logger.debug(f"[FAILOVER] Outcome: {result.outcome.value}")
    raise typer.Exit(0)


@app.command()
def accounts(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Show the credential pool, cooldowns and recent switches."""
    repo = repo.resolve()
    config = load_config(repo)
    fo = config.failover
    state_dir = _state_dir(repo, config)
    paths = failover_paths(state_dir)
    ledger = ExhaustionLedger(paths["ledger"], fo.cooldown_minutes)
    pool = AccountPool(fo.accounts, ledger, timedelta(minutes=fo.cooldown_minutes))

    now = utcnow()
    table = Table(title="Accounts", border_style="cyan")
    table.add_column("Account")
    table.add_column("Exhausted at")
    table.add_column("Status")
    for account in pool.accounts():
        ready = account.available(now, pool.cooldown)
        table.add_row(
            account.id,
            account.exhausted_at.isoformat() if account.exhausted_at else "-",
            "[green]available[/]" if ready else "[yellow]cooling down[/]",
        )
    if not fo.accounts:
        console.print("[dim]No accounts configured (NIGHTSHIFT_ACCOUNT_<NAME>_ID).[/]")
    else:
        console.print(table)

    switches = ledger.switches()
    if switches:
        sw_table = Table(title=f"Recent switches (last {len(switches)})", border_style="dim")
        sw_table.add_column("Time")
        sw_table.add_column("From")
        sw_table.add_column("To")
        for event in switches:
            ts = datetime.fromtimestamp(event.timestamp, tz=timezone.utc).isoformat()
            sw_table.add_row(ts, event.from_account, event.to)
        console.print(sw_table)

    pending = PendingSwitchMarker(paths["pending"]).read()
    if pending:
        console.print(f"\n[cyan]Switched {pending.get('from')} -> {pending.get('to')} at {pending.get('timestamp')}[/]")

    until = SleepMarker(paths["sleep"]).retry_after()
    if until and until > now:
        console.print(f"\n[yellow]All accounts exhausted; retry after {until.isoformat()}[/]")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to repository"),
):
    """Initialize .nightshift directory in a repository."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    ns_dir = repo / ".nightshift"
    ns_dir.mkdir(exist_ok=True)
    (ns_dir / "logs").mkdir(exist_ok=True)
    (ns_dir / "workers").mkdir(exist_ok=True)

    config_path = ns_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# NIGHTSHIFT repo-level config overrides
# These merge with the built-in defaults.

# Which project board holds the work items:
# tracker:
#   project_owner: my-org
#   project_number: 7

# How the agent is started for each worker:
# worker:
#   command_template: "claude -p --max-turns {turn_budget} < {prompt_file_q}"

# scheduler:
#   max_concurrency: 5
#   poll_interval_seconds: 30

# escalation:
#   max_research_cycles: 3
#   max_depth: 5
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".nightshift/logs/", ".nightshift/workers/", ".nightshift/*.json", ".nightshift/*.lock"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# NIGHTSHIFT\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# NIGHTSHIFT\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]Initialized NIGHTSHIFT in {ns_dir}[/]")
    console.print(f"  Config:  {config_path}")


if __name__ == "__main__":
    app()
