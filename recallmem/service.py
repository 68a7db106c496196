from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from typing import Any

from . import __version__
from .cache import QueryCache
from .capture import CapturePipeline, generate_display_id
from .config import RecallConfig
from .errors import ValidationError
from .observation_types import validate_observation_type
from .store import MemoryStore
from .store.tags import normalize_tag

logger = logging.getLogger(__name__)

DEFAULT_PROJECT = "default"
MANUAL_SESSION_PREFIX = "manual-"
_METADATA_LIST_KEYS = ("facts", "concepts", "files_read", "files_modified")


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def _positive_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValidationError(f"{name} must be >= 0")
    return parsed


def _str_list(value: Any, name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ValidationError(f"metadata.{name} must be a list of strings")


class MemoryService:
    """Operations shared by the HTTP worker, JSON-RPC and MCP surfaces."""

    def __init__(
        self,
        store: MemoryStore,
        config: RecallConfig,
        *,
        cache: QueryCache | None = None,
        pipeline: CapturePipeline | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.cache = cache if cache is not None else QueryCache(config.cache_ttl_s)
        self.pipeline = pipeline

    # reads

    def recall_context(
        self,
        context: str,
        max_results: int = 10,
        max_tokens: int | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        context = _require_text(context, "context")
        max_results = _positive_int(max_results, "max_results")
        budget = self.config.context_max_tokens if max_tokens is None else _positive_int(
            max_tokens, "max_tokens"
        )
        filters = {"op": "recall", "project": project, "max_tokens": budget}
        cached = self.cache.get(context, filters, max_results)
        if cached is not None:
            return cached
        candidates = self.store.search(context, max_results, project=project)
        block = self.store.build_context(
            candidates, max_observations=max_results, max_tokens=budget
        )
        by_id = {item.id: item for item in candidates}
        result = {
            "context": block.text,
            "memories": [by_id[item.observation_id].to_dict() for item in block.items],
            "token_count": block.token_count,
            "skipped_duplicates": block.skipped_duplicates,
        }
        self.cache.put(context, filters, max_results, result)
        return result

    def search_memories(
        self,
        query: str,
        limit: int = 20,
        types: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[dict[str, Any]]:
        limit = _positive_int(limit, "limit")
        query = query if isinstance(query, str) else ""
        filters = {"op": "search", "project": project, "types": list(types) if types else None}
        cached = self.cache.get(query, filters, limit)
        if cached is not None:
            return cached
        results = [
            item.to_dict()
            for item in self.store.search(query, limit, types=types, project=project)
        ]
        self.cache.put(query, filters, limit, results)
        return results

    def get_memory(self, observation_id: int) -> dict[str, Any]:
        return self.store.require_observation(_positive_int(observation_id, "id")).to_dict()

    def timeline(
        self, project: str | None = None, days: int | None = None, limit: int = 200
    ) -> list[dict[str, Any]]:
        return self.store.timeline(
            project=project,
            days=None if days is None else _positive_int(days, "days"),
            limit=limit,
        )

    def stats(self) -> dict[str, Any]:
        return self.store.stats()

    def export(self, format: str = "json", project: str | None = None, days: int | None = None) -> str:
        return self.store.export(
            format, project=project, days=None if days is None else _positive_int(days, "days")
        )

    def health(self) -> dict[str, Any]:
        try:
            version = self.store.schema_version()
        except sqlite3.Error as exc:
            logger.warning("store unreachable", extra={"db_path": str(self.store.db_path)}, exc_info=exc)
            return {
                "status": "unavailable",
                "version": __version__,
                "store": {"reachable": False, "error": str(exc)},
            }
        return {
            "status": "ok" if self.store.writable else "degraded",
            "version": __version__,
            "store": {
                "reachable": True,
                "schema_version": version,
                "writable": self.store.writable,
                "inconsistency": self.store.inconsistency,
            },
        }

    # writes

    def save_memory(
        self,
        content: str,
        type: str,
        metadata: dict[str, Any] | None = None,
        project: str | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any]:
        content = _require_text(content, "content")
        type = validate_observation_type(
            _require_text(type, "type"), self.config.observation_types
        )
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        metadata = metadata or {}
        lists = {key: _str_list(metadata.get(key), key) for key in _METADATA_LIST_KEYS}
        tags = _str_list(metadata.get("tags"), "tags")
        for tag in tags:
            if not normalize_tag(tag):
                raise ValidationError(f"invalid tag name: {tag!r}")
        project = (project or "").strip() or DEFAULT_PROJECT
        content_session_id = (session_id or "").strip() or f"{MANUAL_SESSION_PREFIX}{project}"
        # One transaction: a failure leaves neither the row nor its tags behind.
        with self.store.write_transaction():
            self.store.start_session(content_session_id, project)
            observation = self.store.add_observation(
                content_session_id,
                type=type,
                narrative=content,
                title=metadata.get("title") if isinstance(metadata.get("title"), str) else None,
                subtitle=metadata.get("subtitle") if isinstance(metadata.get("subtitle"), str) else None,
                display_id=generate_display_id(),
                **lists,
            )
            for tag in tags:
                self.store.tag_observation(observation.id, tag)
            if metadata.get("favorite"):
                self.store.set_favorite(observation.id)
        self.cache.invalidate_project(observation.project)
        logger.info("saved memory %s (%s)", observation.id, observation.type)
        return self.store.require_observation(observation.id).to_dict()

    def forget(self, observation_id: int) -> bool:
        observation = self.store.require_observation(_positive_int(observation_id, "id"))
        removed = self.store.delete_observation(observation.id)
        self.cache.invalidate_project(observation.project)
        return removed

    def set_favorite(self, observation_id: int, note: str | None = None) -> dict[str, Any]:
        observation = self.store.require_observation(_positive_int(observation_id, "id"))
        self.store.set_favorite(observation.id, note=note)
        self.cache.invalidate_project(observation.project)
        return self.store.require_observation(observation.id).to_dict()

    def clear_favorite(self, observation_id: int) -> dict[str, Any]:
        observation = self.store.require_observation(_positive_int(observation_id, "id"))
        self.store.clear_favorite(observation.id)
        self.cache.invalidate_project(observation.project)
        return self.store.require_observation(observation.id).to_dict()

    def tag_memory(self, observation_id: int, tag: str) -> dict[str, Any]:
        observation = self.store.require_observation(_positive_int(observation_id, "id"))
        self.store.tag_observation(observation.id, _require_text(tag, "tag"))
        self.cache.invalidate_project(observation.project)
        return self.store.require_observation(observation.id).to_dict()

    # capture

    def _require_pipeline(self) -> CapturePipeline:
        if self.pipeline is None:
            self.pipeline = CapturePipeline(self.store, config=self.config)
        return self.pipeline

    def start_session(self, session_id: str, project: str) -> dict[str, Any]:
        state = self._require_pipeline().on_session_start(
            _require_text(session_id, "session_id"), _require_text(project, "project")
        )
        return {
            "session_id": state.session.content_session_id,
            "project": state.session.project,
            "working_set": [item.to_dict() for item in state.working_set],
        }

    def record_event(
        self,
        session_id: str,
        message: str,
        response: str = "",
        project: str | None = None,
    ) -> list[dict[str, Any]]:
        saved = self._require_pipeline().on_event(
            _require_text(session_id, "session_id"),
            message if isinstance(message, str) else "",
            response if isinstance(response, str) else "",
            project=project,
        )
        if saved:
            self.cache.invalidate_project(saved[0].project)
        return [item.to_dict() for item in saved]

    def end_session(self, session_id: str) -> dict[str, Any]:
        result = self._require_pipeline().on_session_end(_require_text(session_id, "session_id"))
        return {
            "session_id": result.content_session_id,
            "observation_count": result.observation_count,
            "summary": result.status,
        }
