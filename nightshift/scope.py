"""
NIGHTSHIFT Scope Resolver

Turns a scope descriptor into the ordered queue of Ready work items a run
is responsible for. Descriptors:

  all              every item on the board
  label:<name>     items carrying a label
  12,15 / #12 #15  an explicit list of ids

Items derived from an in-scope item (spawned-from lineage, transitively)
are always in scope, so deviations never fall outside the run that created
them. Resolution reads the State Store snapshot only.
"""

from __future__ import annotations

import re
from enum import Enum

from pydantic import BaseModel, Field

from nightshift.models import ItemStatus, WorkItem
from nightshift.store import StateStore


class ScopeEmpty(Exception):
    """Nothing in scope is Ready. A signal, not a failure."""
    pass


class ScopeKind(str, Enum):
    ALL = "all"
    LABEL = "label"
    ITEMS = "items"


_ID_SPLIT_RE = re.compile(r"[\s,]+")


class ScopeDescriptor(BaseModel):
    kind: ScopeKind = ScopeKind.ALL
    label: str | None = None
    ids: list[str] = Field(default_factory=list)

    @classmethod
    def parse(cls, text: str | None) -> "ScopeDescriptor":
        text = (text or "").strip()
        if not text or text.lower() == "all":
            return cls(kind=ScopeKind.ALL)
        if text.lower().startswith("label:"):
            label = text.split(":", 1)[1].strip()
            if not label:
                raise ValueError("Empty label in scope descriptor")
            return cls(kind=ScopeKind.LABEL, label=label)
        ids = [part.lstrip("#") for part in _ID_SPLIT_RE.split(text) if part.strip("#")]
        if not ids:
            raise ValueError(f"Cannot parse scope descriptor: {text!r}")
        return cls(kind=ScopeKind.ITEMS, ids=ids)

    def __str__(self) -> str:
        if self.kind == ScopeKind.LABEL:
            return f"label:{self.label}"
        if self.kind == ScopeKind.ITEMS:
            return ",".join(self.ids)
        return "all"


class ScopeResolver:
    def __init__(self, store: StateStore, descriptor: ScopeDescriptor):
        self.store = store
        self.descriptor = descriptor

    def _roots(self) -> list[WorkItem]:
        d = self.descriptor
        if d.kind == ScopeKind.ALL:
            return self.store.items()
        if d.kind == ScopeKind.LABEL:
            return [item for item in self.store.items() if d.label in item.labels]
        return [item for item in (self.store.find(i) for i in d.ids) if item is not None]

    def members(self) -> list[WorkItem]:
        """Every in-scope item, regardless of status, in queue order."""
        selected = {item.id: item for item in self._roots()}
        if self.descriptor.kind != ScopeKind.ALL:
            frontier = list(selected)
            while frontier:
                parent = frontier.pop()
                for child in self.store.children_of(parent):
                    if child.id not in selected:
                        selected[child.id] = child
                        frontier.append(child.id)
        return sorted(selected.values(), key=WorkItem.sort_key)

    def member_ids(self) -> set[str]:
        return {item.id for item in self.members()}

    def resolve(self) -> list[str]:
        """Ready ids in scope, ordered by priority, then creation time."""
        ready = [item.id for item in self.members() if item.status == ItemStatus.READY]
        if not ready:
            raise ScopeEmpty(f"No Ready items in scope {self.descriptor}")
        return ready
