from __future__ import annotations

import json
from collections import Counter
from typing import TYPE_CHECKING, Any

from . import pending as store_pending
from . import utils as store_utils

if TYPE_CHECKING:
    from ._store import MemoryStore

TOP_CONCEPTS = 10


def _count(store: MemoryStore, sql: str, params: tuple[Any, ...] = ()) -> int:
    row = store.conn.execute(sql, params).fetchone()
    return int(row[0] or 0) if row else 0


def _top_concepts(store: MemoryStore) -> list[dict[str, Any]]:
    counter: Counter[str] = Counter()
    for row in store.conn.execute("SELECT concepts FROM observations WHERE concepts IS NOT NULL"):
        try:
            values = json.loads(row["concepts"])
        except json.JSONDecodeError:
            continue
        if isinstance(values, list):
            counter.update(str(value) for value in values if value)
    return [{"concept": name, "count": count} for name, count in counter.most_common(TOP_CONCEPTS)]


def stats(store: MemoryStore) -> dict[str, Any]:
    now = store_utils.now_epoch()
    total_observations = _count(store, "SELECT COUNT(*) FROM observations")
    total_sessions = _count(store, "SELECT COUNT(*) FROM sessions")
    by_type = {
        row["type"]: int(row["n"])
        for row in store.conn.execute(
            "SELECT type, COUNT(*) AS n FROM observations GROUP BY type ORDER BY n DESC"
        )
    }
    by_project = {
        row["project"]: int(row["n"])
        for row in store.conn.execute(
            "SELECT project, COUNT(*) AS n FROM observations GROUP BY project ORDER BY n DESC"
        )
    }
    bounds = store.conn.execute(
        "SELECT MIN(created_at_epoch) AS oldest, MAX(created_at_epoch) AS newest FROM observations"
    ).fetchone()
    recent_activity = {
        label: _count(
            store, "SELECT COUNT(*) FROM observations WHERE created_at_epoch >= ?", (now - seconds,)
        )
        for label, seconds in (("today", 86400), ("this_week", 7 * 86400), ("this_month", 30 * 86400))
    }
    return {
        "database": {
            "path": str(store.db_path),
            "size_bytes": store.db_path.stat().st_size if store.db_path.exists() else 0,
            "schema_version": store.schema_version(),
        },
        "total_observations": total_observations,
        "total_sessions": total_sessions,
        "total_summaries": _count(store, "SELECT COUNT(*) FROM summaries"),
        "total_projects": _count(store, "SELECT COUNT(DISTINCT project) FROM sessions"),
        "tokens_used": _count(store, "SELECT COALESCE(SUM(tokens_used), 0) FROM observations"),
        "favorites": _count(store, "SELECT COUNT(*) FROM favorites"),
        "observations_by_type": by_type,
        "observations_by_project": by_project,
        "recent_activity": recent_activity,
        "top_concepts": _top_concepts(store),
        "average_observations_per_session": (
            round(total_observations / total_sessions, 2) if total_sessions else 0.0
        ),
        "oldest_observation": (
            store_utils.iso_from_epoch(bounds["oldest"]) if bounds["oldest"] else None
        ),
        "newest_observation": (
            store_utils.iso_from_epoch(bounds["newest"]) if bounds["newest"] else None
        ),
        "pending_messages": store_pending.counts(store),
    }
