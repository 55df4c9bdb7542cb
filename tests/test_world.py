from __future__ import annotations

from conftest import make_snapshot
from scriptwarden.core.world import WorldRegistry, WorldStateStore


def test_store_starts_empty() -> None:
    store = WorldStateStore("alice")
    assert store.get_current_snapshot() is None
    assert store.get_state_age() is None


def test_publish_updates_snapshot_and_notifies() -> None:
    store = WorldStateStore("alice")
    seen = []
    store.subscribe(seen.append)
    snap = make_snapshot(tick=3)
    store.publish(snap)
    assert store.get_current_snapshot() is snap
    assert seen == [snap]
    assert store.get_state_age() >= 0


def test_unsubscribe_is_idempotent() -> None:
    store = WorldStateStore()
    seen = []
    unsubscribe = store.subscribe(seen.append)
    assert store.listener_count == 1
    unsubscribe()
    unsubscribe()
    assert store.listener_count == 0
    store.publish(make_snapshot())
    assert seen == []


def test_failing_listener_does_not_block_others() -> None:
    store = WorldStateStore()
    seen = []

    def _boom(_snap) -> None:
        raise RuntimeError("boom")

    store.subscribe(_boom)
    store.subscribe(seen.append)
    store.publish(make_snapshot())
    assert len(seen) == 1


def test_registry_creates_one_store_per_owner() -> None:
    worlds = WorldRegistry()
    a = worlds.get_or_create("alice")
    assert worlds.get_or_create("alice") is a
    assert worlds.get("bob") is None
    worlds.get_or_create("bob")
    assert sorted(worlds.owners()) == ["alice", "bob"]
