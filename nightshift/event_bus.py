"""
NIGHTSHIFT Event Bus

Synchronous fan-out of orchestration events (spawns, merges, blocks,
sleeps). Components emit; the audit log and console reporter listen.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from loguru import logger
from pydantic import BaseModel, Field


class OrchestratorEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    component: str
    payload: Dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[OrchestratorEvent], None]


class EventBus:
    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[Set[str]]]] = []

    def subscribe(self, callback: Subscriber, event_types: Optional[Iterable[str]] = None) -> None:
        """Register a callback, optionally only for some event types."""
        self._subscribers.append((callback, set(event_types) if event_types else None))

    def emit(self, event_type: str, component: str, payload: Dict[str, Any] | None = None) -> None:
        event = OrchestratorEvent(
            event_type=event_type,
            component=component,
            payload=payload or {},
        )
        for callback, wanted in self._subscribers:
            if wanted is not None and event_type not in wanted:
                continue
            try:
                callback(event)
            except Exception as e:
                # A broken audit sink must not take the loop down with it
                logger.warning(f"[EVENTS] Subscriber failed on {event_type}: {e}")
