from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass
from typing import Any

from .store.utils import project_basename

CacheKey = tuple[str, frozenset[tuple[str, Hashable]], int]


def _freeze(value: Any) -> Hashable:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(sorted(str(item) for item in value))
    return value


def _project_key(project: Any) -> str | None:
    # "/work/proj" and "proj" filter the same rows.
    if not isinstance(project, str) or not project.strip():
        return None
    return project_basename(project.strip()) or None


def make_key(query: str, filters: Mapping[str, Any] | None, limit: int) -> CacheKey:
    frozen = frozenset(
        (key, _freeze(value)) for key, value in (filters or {}).items() if value is not None
    )
    return (query.strip().lower(), frozen, int(limit))


@dataclass
class _Entry:
    value: Any
    project: str | None
    expires_at: float


class QueryCache:
    """TTL cache for read results, keyed by query, filters and limit.

    Entries remember the project they were filtered on so a write to that
    project can drop them; unfiltered entries are dropped by every write.
    """

    def __init__(self, ttl_s: float = 30.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self.clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, query: str, filters: Mapping[str, Any] | None, limit: int) -> Any | None:
        key = make_key(query, filters, limit)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self.clock():
                del self._entries[key]
                return None
            return entry.value

    def put(self, query: str, filters: Mapping[str, Any] | None, limit: int, value: Any) -> None:
        if self.ttl_s <= 0:
            return
        key = make_key(query, filters, limit)
        project = _project_key((filters or {}).get("project"))
        with self._lock:
            self._entries[key] = _Entry(
                value=value, project=project, expires_at=self.clock() + self.ttl_s
            )

    def invalidate_project(self, project: str | None) -> int:
        project = _project_key(project)
        with self._lock:
            stale = [
                key
                for key, entry in self._entries.items()
                if entry.project is None or project is None or entry.project == project
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
