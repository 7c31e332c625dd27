"""
Configuration loader for NIGHTSHIFT.
Merges defaults with per-repo .nightshift/config.yaml overrides,
then applies environment variable overrides.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class SchedulerConfig(BaseModel):
    max_concurrency: int = Field(default=5, ge=1)
    poll_interval_seconds: float = Field(default=30.0, ge=0)
    max_iterations: int | None = None


class EscalationConfig(BaseModel):
    max_research_cycles: int = Field(default=3, ge=1)
    max_depth: int = Field(default=5, ge=0)


class WorkerConfig(BaseModel):
    command_template: str = "claude -p --max-turns {turn_budget} < {prompt_file_q}"
    turn_budget: int = 200
    research_turn_budget: int = 40
    exit_conditions: list[str] = Field(
        default_factory=lambda: ["completed", "blocked", "handover", "failed"]
    )
    log_tail_lines: int = 200


class CIConfig(BaseModel):
    require_checks: bool = False
    merge_method: str = "squash"
    delete_branch: bool = True


class FailoverConfig(BaseModel):
    cooldown_minutes: float = 5.0
    flap_threshold: int = 3
    flap_window_seconds: float = 60.0
    grace_seconds: float = 1.0
    transcript_tail_lines: int = 50
    accounts: list[str] = Field(default_factory=list)
    extra_patterns: list[str] = Field(default_factory=list)
    extra_self_markers: list[str] = Field(default_factory=list)
    switch_command: str = "claude-account switch {account_q}"
    current_account_file: str = "~/.claude.json"
    current_account_key: str = "oauthAccount.emailAddress"
    agent_process_name: str = "claude"


class TrackerConfig(BaseModel):
    repo: str = ""
    project_owner: str = ""
    project_number: int | None = None
    status_field: str = "Status"
    priority_field: str = "Priority"


class WorkspaceConfig(BaseModel):
    state_dir: str = ".nightshift"
    log_dir: str = ".nightshift/logs"
    worker_dir: str = ".nightshift/workers"


class NightshiftConfig(BaseModel):
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    ci: CIConfig = Field(default_factory=CIConfig)
    failover: FailoverConfig = Field(default_factory=FailoverConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "NIGHTSHIFT_ACCOUNT_COOLDOWN_MINUTES": ("failover", "cooldown_minutes", float),
    "NIGHTSHIFT_ACCOUNT_FLAP_THRESHOLD": ("failover", "flap_threshold", int),
    "NIGHTSHIFT_ACCOUNT_FLAP_WINDOW": ("failover", "flap_window_seconds", float),
    "NIGHTSHIFT_MAX_WORKERS": ("scheduler", "max_concurrency", int),
    "NIGHTSHIFT_POLL_INTERVAL": ("scheduler", "poll_interval_seconds", float),
    "NIGHTSHIFT_WORKER_COMMAND": ("worker", "command_template", str),
}

_ACCOUNT_ENV_RE = re.compile(r"^NIGHTSHIFT_ACCOUNT_(.+)_ID$")


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            overrides.setdefault(section, {})[key] = cast(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {var}: {raw!r}") from e

    accounts = discover_accounts(environ)
    if accounts:
        overrides.setdefault("failover", {})["accounts"] = accounts

    project = environ.get("GITHUB_PROJECT", "")
    if "/" in project:
        owner, _, number = project.partition("/")
        if number.isdigit():
            overrides.setdefault("tracker", {}).update(
                {"project_owner": owner, "project_number": int(number)}
            )

    if environ.get("NIGHTSHIFT_STATE_DIR"):
        state_dir = environ["NIGHTSHIFT_STATE_DIR"]
        overrides["workspace"] = {
            "state_dir": state_dir,
            "log_dir": f"{state_dir}/logs",
            "worker_dir": f"{state_dir}/workers",
        }
    return overrides


def discover_accounts(environ: dict[str, str]) -> list[str]:
    """
    Collect accounts from NIGHTSHIFT_ACCOUNT_<NAME>_ID variables.
    Order follows the variable names so round-robin is stable across runs.
    """
    found = []
    for var in sorted(environ):
        if _ACCOUNT_ENV_RE.match(var):
            value = environ[var].strip().strip('"')
            if value and value not in found:
                found.append(value)
    return found


def load_config(repo_path: Path | None = None, environ: dict[str, str] | None = None) -> NightshiftConfig:
    """
    Load config by merging:
      1. Built-in defaults (nightshift/config.yaml)
      2. Repo-level overrides (<repo>/.nightshift/config.yaml)
      3. Environment variable overrides
    """
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    if repo_path:
        repo_config = repo_path / ".nightshift" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    env = os.environ if environ is None else environ
    base = _deep_merge(base, _env_overrides(dict(env)))
    return NightshiftConfig(**base)


def validate_environment() -> dict[str, bool]:
    """Check which integration variables are set."""
    return {
        "GITHUB_TOKEN": bool(os.environ.get("GITHUB_TOKEN") or os.environ.get("GH_TOKEN")),
        "GITHUB_PROJECT": bool(os.environ.get("GITHUB_PROJECT")),
        "NIGHTSHIFT_WORKER_COMMAND": bool(os.environ.get("NIGHTSHIFT_WORKER_COMMAND")),
    }
