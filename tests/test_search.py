from __future__ import annotations

import time

import pytest

from recallmem.errors import ValidationError
from recallmem.store import MemoryStore
from recallmem.store.search import SearchWeights, _expand_query, resolve_weights


def _seed(store: MemoryStore) -> dict[str, int]:
    store.start_session("sess-a", "alpha")
    store.start_session("sess-b", "beta")
    ids = {
        "pytest": store.add_observation(
            "sess-a", type="preference", narrative="I prefer pytest fixtures over unittest classes"
        ).id,
        "sqlite": store.add_observation(
            "sess-a", type="decision", narrative="Store memories in sqlite with an fts5 index"
        ).id,
        "beta": store.add_observation(
            "sess-b", type="learning", narrative="pytest parametrize keeps tables readable"
        ).id,
    }
    return ids


def test_expand_query_drops_stopwords_and_operators() -> None:
    assert _expand_query("the pytest AND fixtures") == '"pytest" OR "fixtures"'
    assert _expand_query("the") == '"the"'
    assert _expand_query("  ") == ""


def test_search_matches_text(store: MemoryStore) -> None:
    ids = _seed(store)
    results = store.search("sqlite index", limit=10)
    assert [item.id for item in results] == [ids["sqlite"]]
    assert results[0].score > 0


def test_search_type_filter_excludes(store: MemoryStore) -> None:
    ids = _seed(store)
    results = store.search("pytest", limit=10, types=["learning"])
    assert [item.id for item in results] == [ids["beta"]]
    assert store.search("pytest", limit=10, types="decision") == []


def test_search_project_filter(store: MemoryStore) -> None:
    ids = _seed(store)
    results = store.search("pytest", limit=10, project="alpha")
    assert [item.id for item in results] == [ids["pytest"]]


def test_expand_query_keeps_accented_words() -> None:
    assert _expand_query("naïve résumé") == '"naïve" OR "résumé"'


def test_search_round_trips_accented_title(store: MemoryStore) -> None:
    store.start_session("sess-u", "alpha")
    saved = store.add_observation(
        "sess-u", type="learning", title="Ünïcödé naïve résumé", narrative="Ünïcödé naïve résumé"
    )
    results = store.search(saved.title, limit=10)
    assert [item.id for item in results] == [saved.id]


def test_search_limit(store: MemoryStore) -> None:
    _seed(store)
    assert store.search("pytest", limit=0) == []
    assert len(store.search("pytest", limit=1)) == 1


def test_empty_query_falls_back_to_recent(store: MemoryStore) -> None:
    ids = _seed(store)
    results = store.search("", limit=2)
    assert [item.id for item in results] == [ids["beta"], ids["sqlite"]]


def test_ties_break_newest_first(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    now = int(time.time())
    older = store.add_observation(
        "sess-1", type="context", narrative="deploy with docker compose", created_at_epoch=now - 3600
    )
    newer = store.add_observation(
        "sess-1", type="context", narrative="deploy with docker compose", created_at_epoch=now
    )
    results = store.search("docker compose", limit=5)
    assert [item.id for item in results] == [newer.id, older.id]


def test_weights_default_without_similarity(store: MemoryStore) -> None:
    assert resolve_weights(store) == SearchWeights(text=1.0, similarity=0.0, recency=0.25)


def test_timeline_merges_summaries(store: MemoryStore) -> None:
    from recallmem.summarizer import Summary

    store.start_session("sess-1", "proj")
    store.add_observation("sess-1", type="context", narrative="first thing")
    store.add_summary("sess-1", Summary(completed="wrapped up"))
    items = store.timeline(project="proj")
    assert {item["kind"] for item in items} == {"observation", "summary"}
    with pytest.raises(ValidationError):
        store.timeline(days=-1)
