from __future__ import annotations

import threading
import time
from collections.abc import Sequence
from pathlib import Path

import pytest

from recallmem.cache import QueryCache
from recallmem.config import RecallConfig
from recallmem.dispatch import SUMMARIZE_MESSAGE, SummaryDispatcher
from recallmem.errors import ProviderError, ValidationError
from recallmem.store import MemoryStore
from recallmem.store.types import ObservationResult
from recallmem.summarizer import HeuristicSummaryProvider, Summary, parse_summary
from recallmem.worker_tasks import PendingMessageWorker, RetentionSweeper


class FailingProvider:
    name = "failing"

    def __init__(self) -> None:
        self.calls = 0

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary:
        self.calls += 1
        raise ProviderError("upstream unavailable")


class BlockingProvider:
    name = "blocking"

    def __init__(self) -> None:
        self.release = threading.Event()

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary:
        self.release.wait(5)
        return Summary(notes="late")


def _store_factory(path: Path):
    def factory() -> MemoryStore:
        return MemoryStore(path, similarity=None, config=RecallConfig())

    return factory


def _seed_session(store: MemoryStore, count: int = 3) -> list[int]:
    store.start_session("sess-1", "proj")
    return [
        store.add_observation("sess-1", type="decision", narrative=f"decision number {i}").id
        for i in range(count)
    ]


def test_heuristic_summary(store: MemoryStore) -> None:
    ids = _seed_session(store, count=2)
    summary = HeuristicSummaryProvider().summarize(store.get_many(ids))
    assert summary.completed == "decision number 0; decision number 1"
    assert summary.notes == "2 observations (decision=2)"
    with pytest.raises(ValidationError):
        HeuristicSummaryProvider().summarize([])


def test_parse_summary_accepts_json_and_plain_text() -> None:
    summary = parse_summary('```json\n{"learned": "fts5 triggers", "extra": 1}\n```')
    assert summary.learned == "fts5 triggers"
    assert parse_summary("just some notes").notes == "just some notes"


def test_dispatcher_writes_summary(store: MemoryStore, tmp_path: Path) -> None:
    ids = _seed_session(store)
    dispatcher = SummaryDispatcher(_store_factory(tmp_path / "mem.sqlite"), HeuristicSummaryProvider())
    try:
        outcome = dispatcher.submit("sess-1", ids).result(timeout=10)
    finally:
        dispatcher.shutdown()

    assert outcome.status == "written"
    summaries = store.list_summaries(content_session_id="sess-1")
    assert len(summaries) == 1
    assert "decision number 0" in summaries[0]["completed"]


def test_provider_failure_defers_to_pending(store: MemoryStore, tmp_path: Path) -> None:
    ids = _seed_session(store)
    dispatcher = SummaryDispatcher(_store_factory(tmp_path / "mem.sqlite"), FailingProvider())
    try:
        outcome = dispatcher.submit("sess-1", ids).result(timeout=10)
    finally:
        dispatcher.shutdown()

    assert outcome.status == "deferred"
    assert outcome.pending_id is not None
    pending = store.list_pending()
    assert len(pending) == 1
    assert pending[0]["message_type"] == SUMMARIZE_MESSAGE
    assert pending[0]["payload"]["observation_ids"] == ids
    assert store.list_summaries() == []


def test_slow_provider_times_out_to_pending(store: MemoryStore, tmp_path: Path) -> None:
    ids = _seed_session(store)
    provider = BlockingProvider()
    dispatcher = SummaryDispatcher(
        _store_factory(tmp_path / "mem.sqlite"), provider, timeout_s=0.05
    )
    try:
        outcome = dispatcher.submit("sess-1", ids).result(timeout=10)
    finally:
        provider.release.set()
        dispatcher.shutdown()

    assert outcome.status == "deferred"
    assert outcome.error == "timeout"
    pending = store.list_pending()
    assert [item["id"] for item in pending] == [outcome.pending_id]
    assert pending[0]["payload"]["first_error"] == "timeout"


def test_pending_worker_retries_then_fails(store: MemoryStore) -> None:
    ids = _seed_session(store)
    session = store.require_session("sess-1")
    message_id = store.enqueue_pending(
        session.id, SUMMARIZE_MESSAGE, {"content_session_id": "sess-1", "observation_ids": ids}
    )
    provider = FailingProvider()
    worker = PendingMessageWorker(store, provider, max_attempts=2)
    now = int(time.time())

    first = worker.tick(now=now)
    assert first.retried == [message_id]
    message = store.list_pending()[0]
    assert message["attempts"] == 1
    assert message["status"] == "pending"
    assert message["next_attempt_epoch"] >= now + 60

    assert worker.tick(now=now).retried == []

    second = worker.tick(now=now + 3600)
    assert second.failed == [message_id]
    assert store.list_pending(status="failed")[0]["attempts"] == 2
    assert worker.tick(now=now + 7200).failed == []
    assert provider.calls == 2

    assert store.requeue_failed() == 1
    assert store.pending_counts()["pending"] == 1


def test_pending_worker_completes_and_deletes(store: MemoryStore) -> None:
    ids = _seed_session(store)
    session = store.require_session("sess-1")
    message_id = store.enqueue_pending(
        session.id, SUMMARIZE_MESSAGE, {"content_session_id": "sess-1", "observation_ids": ids}
    )

    result = PendingMessageWorker(store, HeuristicSummaryProvider()).tick(now=int(time.time()) + 1)

    assert result.completed == [message_id]
    assert store.list_pending() == []
    assert len(store.list_summaries(content_session_id="sess-1")) == 1


def test_retention_sweeper_tick(tmp_path: Path) -> None:
    path = tmp_path / "mem.sqlite"
    factory = _store_factory(path)
    store = factory()
    try:
        store.start_session("sess-1", "proj")
        store.add_observation(
            "sess-1", type="context", narrative="ancient", created_at_epoch=int(time.time()) - 90 * 86400
        )
    finally:
        store.close()

    cache = QueryCache(ttl_s=60)
    cache.put("ancient", {"project": "proj"}, 10, ["stale"])
    config = RecallConfig(retention_days=30)
    sweeper = RetentionSweeper(factory, config, HeuristicSummaryProvider(), cache=cache)
    report, pending = sweeper.tick()

    assert report.removed_by_age == 1
    assert pending.completed == []
    assert cache.get("ancient", {"project": "proj"}, 10) is None


def test_retention_sweeper_start_stop(tmp_path: Path) -> None:
    sweeper = RetentionSweeper(_store_factory(tmp_path / "mem.sqlite"), RecallConfig())
    sweeper.start()
    assert sweeper.running
    sweeper.stop()
    assert not sweeper.running
