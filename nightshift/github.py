"""
NIGHTSHIFT GitHub Backend

Talks to GitHub exclusively through the `gh` CLI:
  - Project V2 board as the work-item store (single-select Status field)
  - Issue comments as the structured record stream
  - Pull request checks / merge for the CI gate

The board snapshot is one paginated GraphQL query. Everything else is a
single-item round-trip. Transient CLI failures (rate limits, 5xx,
timeouts) are retried with backoff before surfacing.
"""

from __future__ import annotations

import json
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from nightshift.ci import ChangeHost, ChangeState, CheckRun
from nightshift.models import ItemStatus
from nightshift.tracker import RawItem, TrackerBackend, TrackerError


_TRANSIENT_MARKERS = (
    "rate limit",
    "secondary rate",
    "timed out",
    "timeout",
    "502",
    "503",
    "504",
    "connection reset",
    "could not resolve host",
)


class GhError(TrackerError):
    """The gh CLI returned a non-zero exit status."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"gh failed ({returncode}): {' '.join(cmd[:4])}\n{self.stderr}")

    @property
    def transient(self) -> bool:
        lower = self.stderr.lower()
        return any(marker in lower for marker in _TRANSIENT_MARKERS)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GhError) and exc.transient


class GhClient:
    """Thin wrapper around `gh` with JSON decoding and transient retries."""

    def __init__(self, cwd: Path | None = None, timeout: int = 60):
        self.cwd = cwd
        self.timeout = timeout

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    def run(self, *args: str, input: str | None = None, ok_codes: tuple[int, ...] = (0,)) -> str:
        cmd = ["gh", *args]
        logger.debug(f"[GH] {' '.join(cmd[:4])}")
        try:
            result = subprocess.run(
                cmd,
                cwd=self.cwd,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise GhError(cmd, -1, f"timed out after {self.timeout}s") from e
        if result.returncode not in ok_codes:
            raise GhError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout

    def json(self, *args: str, ok_codes: tuple[int, ...] = (0,)) -> Any:
        out = self.run(*args, ok_codes=ok_codes)
        try:
            return json.loads(out) if out.strip() else None
        except json.JSONDecodeError as e:
            raise TrackerError(f"gh returned invalid JSON for {' '.join(args[:3])}: {e}") from e

    def graphql(self, query: str, **variables: Any) -> dict[str, Any]:
        args = ["api", "graphql", "-f", f"query={query}"]
        for key, value in variables.items():
            if value is None:
                continue
            flag = "-F" if isinstance(value, int) else "-f"
            args += [flag, f"{key}={value}"]
        data = self.json(*args)
        if not isinstance(data, dict):
            raise TrackerError("gh api graphql returned no data")
        if data.get("errors"):
            raise TrackerError(f"GraphQL errors: {data['errors']}")
        return data.get("data") or {}


# ---------------------------------------------------------------------------
# GraphQL
# ---------------------------------------------------------------------------

_PROJECT_QUERY = """
query($owner: String!, $number: Int!) {
  repositoryOwner(login: $owner) {
    ... on User { projectV2(number: $number) { ...ProjectFields } }
    ... on Organization { projectV2(number: $number) { ...ProjectFields } }
  }
}
fragment ProjectFields on ProjectV2 {
  id
  fields(first: 50) {
    nodes {
      ... on ProjectV2SingleSelectField { id name options { id name } }
      ... on ProjectV2Field { id name dataType }
    }
  }
}
"""

_ISSUE_FIELDS = """
fragment IssueFields on Issue {
  number
  title
  createdAt
  repository { nameWithOwner }
  labels(first: 50) { nodes { name } }
  comments(last: 100) { pageInfo { hasPreviousPage startCursor } nodes { body } }
  closedByPullRequestsReferences(first: 5, includeClosedPrs: true) { nodes { number url } }
}
fragment ValueFields on ProjectV2ItemFieldValueConnection {
  nodes {
    ... on ProjectV2ItemFieldSingleSelectValue { name field { ... on ProjectV2FieldCommon { name } } }
    ... on ProjectV2ItemFieldNumberValue { number field { ... on ProjectV2FieldCommon { name } } }
  }
}
"""

_ITEMS_QUERY = """
query($projectId: ID!, $cursor: String) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          fieldValues(first: 20) { ...ValueFields }
          content { ... on Issue { ...IssueFields } }
        }
      }
    }
  }
}
""" + _ISSUE_FIELDS

_ISSUE_QUERY = """
query($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      ...IssueFields
      projectItems(first: 20) {
        nodes { id project { id } fieldValues(first: 20) { ...ValueFields } }
      }
    }
  }
}
""" + _ISSUE_FIELDS

_COMMENTS_QUERY = """
query($owner: String!, $name: String!, $number: Int!, $cursor: String) {
  repository(owner: $owner, name: $name) {
    issue(number: $number) {
      comments(last: 100, before: $cursor) {
        pageInfo { hasPreviousPage startCursor }
        nodes { body }
      }
    }
  }
}
"""

_PRIORITY_RE = re.compile(r"(\d+)")
_ISSUE_URL_RE = re.compile(r"/issues/(\d+)")


def _parse_priority(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = _PRIORITY_RE.search(str(value))
    return int(match.group(1)) if match else None


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Project Board Tracker
# ---------------------------------------------------------------------------

class GitHubProjectTracker(TrackerBackend):
    """
    Work items are issues on a Projects V2 board. Status is the board's
    single-select field; labels are reserved for lineage and priority.
    """

    def __init__(
        self,
        client: GhClient,
        repo: str,
        owner: str,
        project_number: int,
        status_field: str = "Status",
        priority_field: str = "Priority",
    ):
        if "/" not in repo:
            raise TrackerError(f"Repository must be owner/name, got {repo!r}")
        self.client = client
        self.repo = repo
        self.owner = owner
        self.project_number = project_number
        self.status_field = status_field
        self.priority_field = priority_field
        self._project_id: str | None = None
        self._status_field_id: str | None = None
        self._status_options: dict[str, str] = {}
        self._item_node_ids: dict[str, str] = {}

    # -- metadata ---------------------------------------------------------

    def _ensure_project(self) -> None:
        if self._project_id:
            return
        data = self.client.graphql(_PROJECT_QUERY, owner=self.owner, number=self.project_number)
        project = (data.get("repositoryOwner") or {}).get("projectV2")
        if not project:
            raise TrackerError(f"Project {self.owner}/{self.project_number} not found")

        self._project_id = project["id"]
        for node in project.get("fields", {}).get("nodes", []):
            if node and node.get("name") == self.status_field and "options" in node:
                self._status_field_id = node["id"]
                self._status_options = {opt["name"]: opt["id"] for opt in node["options"]}
        if not self._status_field_id:
            raise TrackerError(f"Single-select field {self.status_field!r} not found on project")

        missing = [s.value for s in ItemStatus if s.value not in self._status_options]
        if missing:
            logger.warning(f"[GITHUB] Status field lacks options: {missing}")

    # -- ids --------------------------------------------------------------

    def _item_id(self, repo: str, number: int) -> str:
        return str(number) if repo == self.repo else f"{repo}#{number}"

    def _split_id(self, item_id: str) -> tuple[str, int]:
        repo, _, number = item_id.rpartition("#")
        return (repo or self.repo), int(number)

    # -- parsing ----------------------------------------------------------

    def _to_raw(self, issue: dict[str, Any], values: list[dict[str, Any]]) -> RawItem:
        status = None
        priority = None
        for value in values:
            if not value:
                continue
            field_name = (value.get("field") or {}).get("name")
            if field_name == self.status_field:
                status = value.get("name")
            elif field_name == self.priority_field:
                priority = _parse_priority(value.get("name", value.get("number")))

        labels = [lbl["name"] for lbl in issue.get("labels", {}).get("nodes", [])]
        if priority is None:
            for label in labels:
                if label.startswith("priority:"):
                    priority = _parse_priority(label.split(":", 1)[1])

        prs = issue.get("closedByPullRequestsReferences", {}).get("nodes", [])
        return RawItem(
            id=self._item_id(issue["repository"]["nameWithOwner"], issue["number"]),
            title=issue.get("title", ""),
            status=status,
            labels=labels,
            comments=self._comments(issue),
            created_at=_parse_time(issue.get("createdAt")),
            priority=priority,
            linked_changes=[str(pr["number"]) for pr in prs if pr],
        )

    def _comments(self, issue: dict[str, Any]) -> list[str]:
        """Every comment body, oldest first. Queries carry only the newest page."""
        connection = issue.get("comments") or {}
        bodies = [c.get("body", "") for c in connection.get("nodes", [])]
        info = connection.get("pageInfo") or {}
        cursor = info.get("startCursor") if info.get("hasPreviousPage") else None
        if not cursor:
            return bodies

        owner, name = issue["repository"]["nameWithOwner"].split("/", 1)
        while cursor:
            data = self.client.graphql(
                _COMMENTS_QUERY, owner=owner, name=name, number=issue["number"], cursor=cursor
            )
            page = ((data.get("repository") or {}).get("issue") or {}).get("comments") or {}
            bodies = [c.get("body", "") for c in page.get("nodes", [])] + bodies
            info = page.get("pageInfo") or {}
            cursor = info.get("startCursor") if info.get("hasPreviousPage") else None
        return bodies

    # -- TrackerBackend -------------------------------------------------------

    def fetch_items(self) -> list[RawItem]:
        self._ensure_project()
        items: list[RawItem] = []
        cursor: str | None = None
        while True:
            data = self.client.graphql(_ITEMS_QUERY, projectId=self._project_id, cursor=cursor)
            page = (data.get("node") or {}).get("items") or {}
            for node in page.get("nodes", []):
                issue = node.get("content") or {}
                if "number" not in issue:
                    continue  # draft items and pull requests
                raw = self._to_raw(issue, node.get("fieldValues", {}).get("nodes", []))
                self._item_node_ids[raw.id] = node["id"]
                items.append(raw)
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                break
            cursor = info.get("endCursor")
        logger.debug(f"[GITHUB] Snapshot: {len(items)} items")
        return items

    def fetch_item(self, item_id: str) -> RawItem | None:
        self._ensure_project()
        repo, number = self._split_id(item_id)
        owner, name = repo.split("/", 1)
        data = self.client.graphql(_ISSUE_QUERY, owner=owner, name=name, number=number)
        issue = (data.get("repository") or {}).get("issue")
        if not issue:
            return None
        for node in issue.get("projectItems", {}).get("nodes", []):
            if node and node.get("project", {}).get("id") == self._project_id:
                self._item_node_ids[item_id] = node["id"]
                return self._to_raw(issue, node.get("fieldValues", {}).get("nodes", []))
        return None

    def update_status(self, item_id: str, status: ItemStatus) -> None:
        self._ensure_project()
        option = self._status_options.get(status.value)
        if not option:
            raise TrackerError(f"Status option {status.value!r} missing from {self.status_field!r}")
        node_id = self._item_node_ids.get(item_id)
        if not node_id:
            raise TrackerError(f"Item {item_id} is not on project {self.project_number}")
        self.client.run(
            "project", "item-edit",
            "--id", node_id,
            "--project-id", self._project_id,
            "--field-id", self._status_field_id,
            "--single-select-option-id", option,
        )

    def post_comment(self, item_id: str, body: str) -> None:
        repo, number = self._split_id(item_id)
        self.client.run(
            "issue", "comment", str(number),
            "--repo", repo,
            "--body-file", "-",
            input=body,
        )

    def create_item(self, title: str, body: str, labels: list[str], status: ItemStatus) -> str:
        for label in labels:
            self.client.run("label", "create", label, "--repo", self.repo, "--force")

        args = ["issue", "create", "--repo", self.repo, "--title", title, "--body-file", "-"]
        for label in labels:
            args += ["--label", label]
        url = self.client.run(*args, input=body).strip()
        match = _ISSUE_URL_RE.search(url)
        if not match:
            raise TrackerError(f"Could not parse issue URL from gh output: {url!r}")

        added = self.client.json(
            "project", "item-add", str(self.project_number),
            "--owner", self.owner,
            "--url", url,
            "--format", "json",
        ) or {}
        item_id = self._item_id(self.repo, int(match.group(1)))
        if added.get("id"):
            self._item_node_ids[item_id] = added["id"]
        self.update_status(item_id, status)
        logger.info(f"[GITHUB] Created {item_id}: {title}")
        return item_id


# ---------------------------------------------------------------------------
# Pull Requests
# ---------------------------------------------------------------------------

class GitHubChangeHost(ChangeHost):
    """Pull requests as change requests."""

    def __init__(self, client: GhClient, repo: str):
        self.client = client
        self.repo = repo

    def checks(self, change_ref: str) -> list[CheckRun]:
        # gh exits 8 while checks are pending and 1 when some failed.
        try:
            data = self.client.json(
                "pr", "checks", change_ref,
                "--repo", self.repo,
                "--json", "name,state,bucket",
                ok_codes=(0, 1, 8),
            )
        except GhError as e:
            if "no checks reported" in e.stderr.lower():
                return []
            raise
        return [CheckRun(name=c.get("name", "?"), state=c.get("state", ""), bucket=c.get("bucket", "")) for c in data or []]

    def state(self, change_ref: str) -> ChangeState:
        data = self.client.json(
            "pr", "view", change_ref,
            "--repo", self.repo,
            "--json", "state,mergeable,url",
        ) or {}
        return ChangeState(
            state=data.get("state", "OPEN"),
            mergeable=data.get("mergeable", "UNKNOWN"),
            url=data.get("url", ""),
        )

    def merge(self, change_ref: str, method: str = "squash", delete_branch: bool = True) -> None:
        args = ["pr", "merge", change_ref, "--repo", self.repo, f"--{method}"]
        if delete_branch:
            args.append("--delete-branch")
        self.client.run(*args)
