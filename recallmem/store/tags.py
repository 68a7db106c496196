from __future__ import annotations

import re
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from .. import db
from ..errors import NotFoundError, ValidationError
from . import utils as store_utils
from .types import ObservationResult

if TYPE_CHECKING:
    from ._store import MemoryStore

ARCHIVED_TAG = "archived"
DEFAULT_TAG_COLOR = "#6b7280"
_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


def normalize_tag(value: str) -> str:
    lowered = (value or "").strip().lower()
    if not lowered:
        return ""
    lowered = re.sub(r"[^a-z0-9_]+", "-", lowered)
    lowered = re.sub(r"-+", "-", lowered).strip("-")
    if len(lowered) > 40:
        lowered = lowered[:40].rstrip("-")
    return lowered


def _require_tag_name(name: str) -> str:
    normalized = normalize_tag(name)
    if not normalized:
        raise ValidationError(f"invalid tag name: {name!r}")
    return normalized


def _tag_id(store: MemoryStore, name: str) -> int | None:
    row = store.conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
    return int(row["id"]) if row else None


def list_tags(store: MemoryStore) -> list[dict[str, Any]]:
    rows = store.conn.execute(
        """
        SELECT tags.id, tags.name, tags.color, tags.description, tags.created_at,
               COUNT(observation_tags.observation_id) AS observation_count
        FROM tags
        LEFT JOIN observation_tags ON observation_tags.tag_id = tags.id
        GROUP BY tags.id
        ORDER BY tags.name
        """
    ).fetchall()
    return db.rows_to_dicts(rows)


def create_tag(
    store: MemoryStore, name: str, *, color: str | None = None, description: str | None = None
) -> int:
    normalized = _require_tag_name(name)
    color = color or DEFAULT_TAG_COLOR
    if not _COLOR_RE.match(color):
        raise ValidationError(f"invalid tag color: {color!r}")
    with store.write_transaction() as conn:
        conn.execute(
            """
            INSERT INTO tags(name, color, description) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                color = excluded.color,
                description = COALESCE(excluded.description, tags.description)
            """,
            (normalized, color, description),
        )
        tag_id = _tag_id(store, normalized)
    if tag_id is None:
        raise RuntimeError("Failed to create tag")
    return tag_id


def _ensure_tag(store: MemoryStore, name: str) -> int:
    tag_id = _tag_id(store, name)
    if tag_id is not None:
        return tag_id
    cur = store.conn.execute(
        "INSERT INTO tags(name, color) VALUES (?, ?)", (name, DEFAULT_TAG_COLOR)
    )
    if cur.lastrowid is None:
        raise RuntimeError("Failed to create tag")
    return int(cur.lastrowid)


def tag_observation(store: MemoryStore, observation_id: int, tag_name: str) -> bool:
    normalized = _require_tag_name(tag_name)
    store.require_observation(observation_id)
    with store.write_transaction() as conn:
        tag_id = _ensure_tag(store, normalized)
        cur = conn.execute(
            "INSERT OR IGNORE INTO observation_tags(observation_id, tag_id) VALUES (?, ?)",
            (observation_id, tag_id),
        )
        return cur.rowcount > 0


def untag_observation(store: MemoryStore, observation_id: int, tag_name: str) -> bool:
    normalized = normalize_tag(tag_name)
    tag_id = _tag_id(store, normalized)
    if tag_id is None:
        return False
    with store.write_transaction() as conn:
        cur = conn.execute(
            "DELETE FROM observation_tags WHERE observation_id = ? AND tag_id = ?",
            (observation_id, tag_id),
        )
        return cur.rowcount > 0


def tag_session(store: MemoryStore, content_session_id: str, tag_name: str) -> bool:
    normalized = _require_tag_name(tag_name)
    session = store.require_session(content_session_id)
    with store.write_transaction() as conn:
        tag_id = _ensure_tag(store, normalized)
        cur = conn.execute(
            "INSERT OR IGNORE INTO session_tags(session_id, tag_id) VALUES (?, ?)",
            (session.id, tag_id),
        )
        return cur.rowcount > 0


def attach_tags(store: MemoryStore, results: Sequence[ObservationResult]) -> None:
    if not results:
        return
    ids = [item.id for item in results]
    placeholders = ",".join("?" for _ in ids)
    rows = store.conn.execute(
        f"""
        SELECT observation_tags.observation_id, tags.name
        FROM observation_tags
        JOIN tags ON tags.id = observation_tags.tag_id
        WHERE observation_tags.observation_id IN ({placeholders})
        ORDER BY tags.name
        """,
        ids,
    ).fetchall()
    by_id: dict[int, list[str]] = {}
    for row in rows:
        by_id.setdefault(int(row["observation_id"]), []).append(row["name"])
    for item in results:
        item.tags = by_id.get(item.id, [])


def set_favorite(store: MemoryStore, observation_id: int, *, note: str | None = None) -> None:
    if store.get_observation(observation_id) is None:
        raise NotFoundError(f"unknown observation: {observation_id}")
    with store.write_transaction() as conn:
        conn.execute(
            """
            INSERT INTO favorites(observation_id, note) VALUES (?, ?)
            ON CONFLICT(observation_id) DO UPDATE SET note = COALESCE(excluded.note, favorites.note)
            """,
            (observation_id, note),
        )
        conn.execute("UPDATE observations SET is_favorite = 1 WHERE id = ?", (observation_id,))


def clear_favorite(store: MemoryStore, observation_id: int) -> bool:
    with store.write_transaction() as conn:
        cur = conn.execute("DELETE FROM favorites WHERE observation_id = ?", (observation_id,))
        conn.execute("UPDATE observations SET is_favorite = 0 WHERE id = ?", (observation_id,))
        return cur.rowcount > 0


def list_favorites(store: MemoryStore, *, project: str | None = None) -> list[dict[str, Any]]:
    params: list[Any] = []
    where = "1=1"
    if project:
        clause, clause_params = store_utils.project_column_clause("observations.project", project)
        if clause:
            where = clause
            params.extend(clause_params)
    rows = store.conn.execute(
        f"""
        SELECT observations.id, observations.type, observations.title, observations.project,
               favorites.note, favorites.created_at AS favorited_at
        FROM favorites
        JOIN observations ON observations.id = favorites.observation_id
        WHERE {where}
        ORDER BY favorites.created_at DESC, favorites.id DESC
        """,
        params,
    ).fetchall()
    return db.rows_to_dicts(rows)
