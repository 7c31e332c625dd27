"""
NIGHTSHIFT Records - Structured comments in the tracker stream

Every piece of orchestration state that is not a status lives in the
tracker's comment stream as a JSON object wrapped in sentinel markers:

    Worker assigned (attempt 2).

    <!-- WORKER:ASSIGNED -->
    {"attempt": 2, "research_cycles": 0, ...}
    <!-- /WORKER:ASSIGNED -->

A stateless reader only needs the latest record of a given kind, so
free-form prose around the markers is never parsed.
"""

from __future__ import annotations

import json
import re
from enum import Enum
from typing import Any, Iterable

from loguru import logger
from pydantic import BaseModel, Field


class RecordKind(str, Enum):
    ASSIGNED = "WORKER:ASSIGNED"
    HANDOVER = "WORKER:HANDOVER"
    COMPLETED = "WORKER:COMPLETED"
    RESULT = "WORKER:RESULT"
    BLOCKED = "ORCHESTRATOR:BLOCKED"
    SUSPENDED = "ORCHESTRATOR:SUSPENDED"
    REVIEW_COMPLETE = "REVIEW:COMPLETE"
    REVIEW_MISSING = "GATE:REVIEW_MISSING"
    CI_FAILED = "CI:FAILED"
    MERGED = "CI:MERGED"


_RECORD_RE = re.compile(
    r"<!--\s*([A-Z][A-Z_]*:[A-Z_]+)\s*-->(.*?)<!--\s*/\1\s*-->",
    re.DOTALL,
)


class Record(BaseModel):
    """One decoded record. `position` orders records across a comment stream."""
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)
    position: int = 0

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)


def render(kind: RecordKind | str, payload: dict[str, Any], summary: str = "") -> str:
    """Render a record as a comment body, with an optional human-readable lead line."""
    tag = kind.value if isinstance(kind, RecordKind) else kind
    body = json.dumps(payload, indent=2, sort_keys=True, default=str)
    block = f"<!-- {tag} -->\n{body}\n<!-- /{tag} -->"
    if summary:
        return f"{summary.strip()}\n\n{block}"
    return block


def extract(text: str) -> list[Record]:
    """Decode every well-formed record in `text`, in order of appearance."""
    records: list[Record] = []
    for match in _RECORD_RE.finditer(text or ""):
        kind, raw = match.group(1), match.group(2).strip()
        try:
            payload = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            logger.debug(f"[RECORDS] Skipping malformed {kind} record")
            continue
        if not isinstance(payload, dict):
            logger.debug(f"[RECORDS] Skipping non-object {kind} record")
            continue
        records.append(Record(kind=kind, payload=payload, position=len(records)))
    return records


def extract_stream(comments: Iterable[str]) -> list[Record]:
    """Decode records from a comment stream (oldest first)."""
    records: list[Record] = []
    for body in comments:
        for record in extract(body):
            records.append(record.model_copy(update={"position": len(records)}))
    return records


def latest(records: Iterable[Record], kind: RecordKind | str) -> Record | None:
    tag = kind.value if isinstance(kind, RecordKind) else kind
    found: Record | None = None
    for record in records:
        if record.kind == tag and (found is None or record.position >= found.position):
            found = record
    return found
