from __future__ import annotations

import pytest

from recallmem import __version__
from recallmem.cache import QueryCache
from recallmem.config import RecallConfig
from recallmem.errors import NotFoundError, ValidationError
from recallmem.service import MemoryService
from recallmem.store import MemoryStore


@pytest.fixture
def service(store: MemoryStore) -> MemoryService:
    return MemoryService(store, RecallConfig(), cache=QueryCache(ttl_s=60))


def test_save_memory_defaults(service: MemoryService) -> None:
    memory = service.save_memory("Prefer small commits", "preference")
    assert memory["project"] == "default"
    assert memory["session_id"] == "manual-default"
    assert service.store.get_by_display_id(memory["display_id"]).id == memory["id"]


def test_save_memory_metadata(service: MemoryService) -> None:
    memory = service.save_memory(
        "Ruff replaces flake8 and isort",
        "decision",
        metadata={
            "title": "Linting",
            "facts": ["ruff is fast"],
            "files_modified": "pyproject.toml",
            "tags": ["tooling"],
            "favorite": True,
        },
        project="proj",
    )
    assert memory["title"] == "Linting"
    assert memory["facts"] == ["ruff is fast"]
    assert memory["files_modified"] == ["pyproject.toml"]
    assert memory["tags"] == ["tooling"]
    assert memory["is_favorite"] is True


@pytest.mark.parametrize(
    ("content", "kind", "metadata"),
    [
        ("", "decision", None),
        ("text", "", None),
        ("text", "decision", {"facts": [1, 2]}),
        ("text", "nonsense", None),
    ],
)
def test_save_memory_validation(
    service: MemoryService, content: str, kind: str, metadata: dict | None
) -> None:
    with pytest.raises(ValidationError):
        service.save_memory(content, kind, metadata=metadata)


def test_writes_invalidate_cached_reads(service: MemoryService) -> None:
    assert service.search_memories("pytest", project="proj") == []
    service.save_memory("Use pytest fixtures", "decision", project="proj")
    results = service.search_memories("pytest", project="proj")
    assert [item["narrative"] for item in results] == ["Use pytest fixtures"]


def test_recall_context(service: MemoryService) -> None:
    service.save_memory("I prefer pytest fixtures", "preference", project="proj")
    service.save_memory("I prefer pytest fixtures", "preference", project="proj")

    result = service.recall_context("pytest fixtures", project="proj")

    assert result["context"].startswith("<recalled_context>")
    assert len(result["memories"]) == 1
    assert result["skipped_duplicates"] == 1
    assert result["token_count"] <= service.config.context_max_tokens
    with pytest.raises(ValidationError):
        service.recall_context("   ")
    with pytest.raises(ValidationError):
        service.recall_context("x", max_results=-1)


def test_forget_and_favorites(service: MemoryService) -> None:
    memory = service.save_memory("temporary note", "context", project="proj")
    assert service.set_favorite(memory["id"], note="keep")["is_favorite"] is True
    assert service.clear_favorite(memory["id"])["is_favorite"] is False
    assert service.tag_memory(memory["id"], "todo")["tags"] == ["todo"]
    assert service.forget(memory["id"]) is True
    with pytest.raises(NotFoundError):
        service.get_memory(memory["id"])


def test_capture_through_service(service: MemoryService) -> None:
    started = service.start_session("sess-1", "proj")
    assert started["working_set"] == []
    saved = service.record_event("sess-1", "I never use tabs", "Let's configure the editor for spaces")
    assert [item["type"] for item in saved] == ["preference", "decision"]
    ended = service.end_session("sess-1")
    assert ended == {"session_id": "sess-1", "observation_count": 2, "summary": "skipped"}


def test_health(service: MemoryService) -> None:
    health = service.health()
    assert health["status"] == "ok"
    assert health["version"] == __version__
    assert health["store"]["reachable"] is True
    assert health["store"]["schema_version"] == 4
    assert health["store"]["writable"] is True


def test_export_formats(service: MemoryService) -> None:
    service.save_memory("exported memory", "learning", project="proj")
    assert "exported memory" in service.export("json", project="proj")
    assert "id,session_id,type,title,project,created_at" in service.export("csv")
    with pytest.raises(ValidationError):
        service.export("xml")


def test_writes_invalidate_path_filtered_reads(service: MemoryService) -> None:
    service.save_memory("Use pytest markers", "decision", project="proj")
    assert len(service.search_memories("pytest", project="/work/proj")) == 1

    service.save_memory("Use pytest tmp_path", "decision", project="proj")

    assert len(service.search_memories("pytest", project="/work/proj")) == 2


def test_rejected_save_leaves_nothing_behind(service: MemoryService) -> None:
    with pytest.raises(ValidationError):
        service.save_memory("tagged badly", "decision", metadata={"tags": ["!!!"]}, project="proj")
    with pytest.raises(ValidationError):
        service.save_memory("wrong kind", "nonsense", project="proj")

    assert service.store.count_observations() == 0
    assert service.store.get_session("manual-proj") is None


def test_health_reports_inconsistent_store(service: MemoryService) -> None:
    service.store.mark_inconsistent("index drift")
    health = service.health()
    assert health["status"] == "degraded"
    assert health["store"]["writable"] is False
    assert health["store"]["inconsistency"] == "index drift"
