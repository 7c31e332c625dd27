"""
NIGHTSHIFT Tracker Interface

The boundary between the State Store and whatever system actually holds
work items. Backends speak in raw items and comment bodies; the State Store
turns those into typed WorkItems.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone

from nightshift.models import ItemStatus


class TrackerError(Exception):
    """A tracker round-trip failed."""
    pass


@dataclass
class RawItem:
    """An item as the tracker returns it, before record hydration."""
    id: str
    title: str = ""
    status: str | None = None
    labels: list[str] = field(default_factory=list)
    comments: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    priority: int | None = None
    linked_changes: list[str] = field(default_factory=list)


class TrackerBackend(ABC):
    """
    Minimal tracker surface the orchestrator needs.

    Implementations must treat `fetch_items` as the one bulk read per loop
    iteration; everything else is a single-item round-trip.
    """

    @abstractmethod
    def fetch_items(self) -> list[RawItem]:
        """Return every item on the board."""
        ...

    @abstractmethod
    def fetch_item(self, item_id: str) -> RawItem | None:
        """Live re-read of one item, used for write verification."""
        ...

    @abstractmethod
    def update_status(self, item_id: str, status: ItemStatus) -> None:
        ...

    @abstractmethod
    def post_comment(self, item_id: str, body: str) -> None:
        ...

    @abstractmethod
    def create_item(self, title: str, body: str, labels: list[str], status: ItemStatus) -> str:
        """Create an item on the board and return its id."""
        ...
