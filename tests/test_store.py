from __future__ import annotations

from pathlib import Path

import pytest

from recallmem.config import RecallConfig
from recallmem.errors import ConsistencyError, NotFoundError, ValidationError
from recallmem.store import MemoryStore
from recallmem.summarizer import Summary


def test_store_roundtrip(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    prompt_number = store.record_prompt("sess-1", "set up the database")
    obs = store.add_observation(
        "sess-1",
        type="discovery",
        narrative="The schema uses WAL mode for concurrent readers",
        facts=["wal enabled"],
        files_read=["db.py"],
        display_id="obs_1_abcdefghi",
    )

    assert prompt_number == 1
    fetched = store.get_observation(obs.id)
    assert fetched is not None
    assert fetched.type == "discovery"
    assert fetched.project == "proj"
    assert fetched.session_id == "sess-1"
    assert fetched.title == "The schema uses WAL mode for concurrent readers"
    assert fetched.facts == ["wal enabled"]
    assert fetched.files_read == ["db.py"]
    assert fetched.prompt_number == 1
    assert store.get_by_display_id("obs_1_abcdefghi") is not None
    assert [item.id for item in store.search("WAL readers", limit=5)] == [obs.id]


def test_start_session_is_idempotent(store: MemoryStore) -> None:
    first = store.start_session("sess-1", "proj")
    second = store.start_session("sess-1", "proj")
    assert first.id == second.id
    assert len(store.list_sessions()) == 1


def test_record_prompt_counts_up(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    assert store.record_prompt("sess-1", "one") == 1
    assert store.record_prompt("sess-1", "two") == 2
    assert store.require_session("sess-1").prompt_count == 2


def test_add_observation_validates(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    with pytest.raises(ValidationError):
        store.add_observation("sess-1", type="custom", narrative="x")
    with pytest.raises(ValidationError):
        store.add_observation("sess-1", type="context", narrative="   ")
    with pytest.raises(NotFoundError):
        store.add_observation("missing", type="context", narrative="hello")


def test_title_defaults_to_truncated_narrative(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    obs = store.add_observation("sess-1", type="context", narrative="x" * 200)
    assert obs.title == "x" * MemoryStore.TITLE_MAX_CHARS


def test_delete_session_cascades(store: MemoryStore) -> None:
    store.start_session("keep", "proj")
    kept = store.add_observation("keep", type="context", narrative="kept observation")

    store.start_session("sess-1", "proj")
    store.record_prompt("sess-1", "hello")
    first = store.add_observation("sess-1", type="decision", narrative="use sqlite for storage")
    second = store.add_observation("sess-1", type="learning", narrative="fts5 needs triggers")
    store.tag_observation(first.id, "important")
    store.set_favorite(second.id, note="keep")
    store.tag_session("sess-1", "todo")
    store.add_summary("sess-1", Summary(completed="storage picked"))
    session = store.require_session("sess-1")
    store.enqueue_pending(session.id, "summarize", {"content_session_id": "sess-1"})

    counts = store.delete_session("sess-1")

    assert counts["observations"] == 2
    assert counts["observation_tags"] == 1
    assert counts["favorites"] == 1
    assert counts["summaries"] == 1
    assert counts["prompts"] == 1
    assert counts["pending_messages"] == 1
    assert counts["session_tags"] == 1
    assert store.get_session("sess-1") is None
    assert store.get_observation(first.id) is None
    assert store.get_observation(kept.id) is not None
    report = store.check_consistency()
    assert report == {"observations": 1, "indexed": 1, "orphans": 0}
    assert [item.id for item in store.search("sqlite storage")] == []


def test_delete_unknown_session(store: MemoryStore) -> None:
    with pytest.raises(NotFoundError):
        store.delete_session("nope")


def test_inconsistent_store_rejects_writes_until_repaired(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    store.mark_inconsistent("test")
    assert not store.writable
    with pytest.raises(ConsistencyError):
        store.add_observation("sess-1", type="context", narrative="blocked")

    report = store.repair()

    assert store.writable
    assert report["orphans"] == 0
    store.add_observation("sess-1", type="context", narrative="allowed again")
    assert store.count_observations() == 1


def test_diverged_index_blocks_writes_after_reopen(
    store: MemoryStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    store.start_session("sess-1", "proj")
    obs = store.add_observation("sess-1", type="context", narrative="indexed once")
    row = store.conn.execute("SELECT * FROM observations WHERE id = ?", (obs.id,)).fetchone()
    store.conn.execute(
        """
        INSERT INTO observations_fts(observations_fts, rowid, title, subtitle, narrative, facts, concepts)
        VALUES ('delete', ?, ?, ?, ?, ?, ?)
        """,
        (row["id"], row["title"], row["subtitle"], row["narrative"], row["facts"], row["concepts"]),
    )
    store.conn.commit()
    # A fresh process has no in-memory writer state for this file.
    monkeypatch.setattr("recallmem.store._store._WRITERS", {})

    reopened = MemoryStore(store.db_path, similarity=None, config=RecallConfig())
    try:
        assert not reopened.writable
        assert "full-text index" in (reopened.inconsistency or "")
        with pytest.raises(ConsistencyError):
            reopened.add_observation("sess-1", type="context", narrative="blocked")

        report = reopened.repair()

        assert report["indexed"] == report["observations"] == 1
        assert reopened.writable
    finally:
        reopened.close()


def test_writer_state_is_shared_per_file(tmp_path: Path) -> None:
    path = tmp_path / "shared.sqlite"
    first = MemoryStore(path, similarity=None, config=RecallConfig())
    second = MemoryStore(path, similarity=None, config=RecallConfig())
    try:
        first.mark_inconsistent("shared")
        assert not second.writable
        second.repair()
        assert first.writable
    finally:
        first.close()
        second.close()


def test_tags_and_favorites(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    obs = store.add_observation("sess-1", type="context", narrative="tag me")

    assert store.tag_observation(obs.id, "Follow Up")
    assert not store.tag_observation(obs.id, "follow-up")
    store.set_favorite(obs.id)

    fetched = store.require_observation(obs.id)
    assert fetched.tags == ["follow-up"]
    assert fetched.is_favorite
    assert store.untag_observation(obs.id, "follow-up")
    assert store.clear_favorite(obs.id)
    assert not store.require_observation(obs.id).is_favorite
    with pytest.raises(ValidationError):
        store.tag_observation(obs.id, "!!!")
    with pytest.raises(NotFoundError):
        store.set_favorite(9999)


def test_summaries_listed_newest_first(store: MemoryStore) -> None:
    store.start_session("sess-1", "proj")
    store.add_summary("sess-1", Summary(learned="first"))
    store.add_summary("sess-1", Summary(learned="second"))
    summaries = store.list_summaries(project="proj")
    assert [item["learned"] for item in summaries] == ["second", "first"]
