import pytest

from nightshift.models import ItemStatus
from nightshift.scope import ScopeDescriptor, ScopeEmpty, ScopeKind, ScopeResolver


@pytest.mark.parametrize(
    "text,kind,ids,label",
    [
        ("", ScopeKind.ALL, [], None),
        ("all", ScopeKind.ALL, [], None),
        ("label:backend", ScopeKind.LABEL, [], "backend"),
        ("12,15", ScopeKind.ITEMS, ["12", "15"], None),
        ("#12 #15", ScopeKind.ITEMS, ["12", "15"], None),
    ],
)
def test_parse_descriptor(text, kind, ids, label):
    d = ScopeDescriptor.parse(text)
    assert d.kind == kind
    assert d.ids == ids
    assert d.label == label


def test_parse_rejects_empty_label():
    with pytest.raises(ValueError):
        ScopeDescriptor.parse("label:")


def test_resolve_orders_ready_items(tracker, store):
    tracker.add("1", priority=3)
    tracker.add("2", priority=1)
    tracker.add("3", status=ItemStatus.BACKLOG, priority=0)
    tracker.add("4")
    store.refresh()

    resolver = ScopeResolver(store, ScopeDescriptor.parse("all"))
    assert resolver.resolve() == ["2", "1", "4"]


def test_label_scope_includes_derived_items_transitively(tracker, store):
    tracker.add("1", labels=["backend"])
    tracker.add("2", labels=["frontend"])
    tracker.add("20", labels=["spawned-from:1", "depth:1"])
    tracker.add("30", labels=["spawned-from:20", "depth:2"])
    store.refresh()

    resolver = ScopeResolver(store, ScopeDescriptor.parse("label:backend"))
    assert resolver.member_ids() == {"1", "20", "30"}


def test_explicit_ids_skip_unknown(tracker, store):
    tracker.add("1")
    tracker.add("2")
    store.refresh()

    resolver = ScopeResolver(store, ScopeDescriptor.parse("2, 99"))
    assert resolver.resolve() == ["2"]


def test_no_ready_items_raises_scope_empty(tracker, store):
    tracker.add("1", status=ItemStatus.DONE)
    store.refresh()

    with pytest.raises(ScopeEmpty):
        ScopeResolver(store, ScopeDescriptor.parse("all")).resolve()
