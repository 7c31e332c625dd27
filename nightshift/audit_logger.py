"""
Append-only JSONL audit trail of orchestration events.

One line per event. Lines are stamped with the session id, which is
learned from the scheduler's bootstrap event when not given up front.
"""

import json
from pathlib import Path
from typing import Any

from nightshift.event_bus import EventBus, OrchestratorEvent


class AuditLogger:
    def __init__(self, file_path: Path | str, event_bus: EventBus, session_id: str | None = None):
        self.path = Path(file_path)
        self.session_id = session_id
        self.path.parent.mkdir(parents=True, exist_ok=True)
        event_bus.subscribe(self.log_event)

    def log_event(self, event: OrchestratorEvent) -> None:
        if event.event_type == "bootstrap" and event.payload.get("session"):
            self.session_id = event.payload["session"]

        entry: dict[str, Any] = event.model_dump()
        if self.session_id:
            entry["session_id"] = self.session_id
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")


def read_events(file_path: Path, limit: int = 10) -> list[dict[str, Any]]:
    """The last `limit` decodable entries, oldest first."""
    if not file_path.exists():
        return []
    entries = []
    for line in file_path.read_text(encoding="utf-8").splitlines()[-limit:]:
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return entries
