from __future__ import annotations

import time

import pytest

from recallmem.errors import ValidationError
from recallmem.store import MemoryStore

DAY = 86400


def _add(store: MemoryStore, narrative: str, age_days: float, now: int) -> int:
    return store.add_observation(
        "sess-1",
        type="context",
        narrative=narrative,
        created_at_epoch=int(now - age_days * DAY),
    ).id


def test_prune_by_age_keeps_favorites_and_archived(store: MemoryStore) -> None:
    now = int(time.time())
    store.start_session("sess-1", "proj")
    old = _add(store, "old and forgettable", 40, now)
    favorite = _add(store, "old but loved", 40, now)
    archived = _add(store, "old but archived", 40, now)
    fresh = _add(store, "fresh memory", 1, now)
    store.set_favorite(favorite)
    store.tag_observation(archived, "archived")

    report = store.prune(retention_days=30, max_observations=0, now=now)

    assert report.removed_by_age == 1
    assert report.removed_by_count == 0
    assert report.cutoff_epoch == now - 30 * DAY
    assert store.get_observation(old) is None
    for kept in (favorite, archived, fresh):
        assert store.get_observation(kept) is not None
    assert store.check_consistency()["orphans"] == 0


def test_prune_by_count_removes_oldest_first(store: MemoryStore) -> None:
    now = int(time.time())
    store.start_session("sess-1", "proj")
    ids = [_add(store, f"memory {i}", 10 - i, now) for i in range(5)]
    store.set_favorite(ids[0])

    report = store.prune(retention_days=0, max_observations=3, now=now)

    assert report.removed_by_count == 2
    assert report.cutoff_epoch is None
    remaining = {item.id for item in store.recent(10)}
    assert remaining == {ids[0], ids[3], ids[4]}


def test_prune_dry_run_deletes_nothing(store: MemoryStore) -> None:
    now = int(time.time())
    store.start_session("sess-1", "proj")
    _add(store, "ancient", 100, now)

    report = store.prune(retention_days=30, max_observations=0, now=now, dry_run=True)

    assert report.removed == 1
    assert report.dry_run
    assert store.count_observations() == 1


def test_prune_disabled_by_default(store: MemoryStore) -> None:
    now = int(time.time())
    store.start_session("sess-1", "proj")
    _add(store, "ancient", 1000, now)
    report = store.prune(now=now)
    assert report.removed == 0
    assert report.to_dict()["removed"] == 0


def test_prune_rejects_negative_values(store: MemoryStore) -> None:
    with pytest.raises(ValidationError):
        store.prune(retention_days=-1)
    with pytest.raises(ValidationError):
        store.prune(max_observations=-1)
