from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, Protocol

from .. import db
from ..semantic import EMBEDDING_DIMENSIONS, Embedder, content_hash, get_embedder

if TYPE_CHECKING:
    from ._store import MemoryStore

logger = logging.getLogger(__name__)


class SimilarityBackend(Protocol):
    """Nearest-neighbour lookup over observation embeddings."""

    def index(self, observation_id: int, text: str) -> None: ...

    def remove(self, observation_ids: Sequence[int]) -> None: ...

    def query(self, text: str, limit: int) -> list[tuple[int, float]]: ...


class SqliteVecBackend:
    def __init__(self, conn: sqlite3.Connection, embedder: Embedder) -> None:
        self.conn = conn
        self.embedder = embedder
        db.load_sqlite_vec(conn)
        conn.execute(
            f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS observation_vectors USING vec0(
                embedding float[{EMBEDDING_DIMENSIONS}],
                observation_id INTEGER,
                content_hash TEXT,
                model TEXT
            )
            """
        )
        conn.commit()

    def index(self, observation_id: int, text: str) -> None:
        cleaned = text.strip()
        if not cleaned:
            return
        digest = content_hash(cleaned)
        existing = self.conn.execute(
            "SELECT content_hash FROM observation_vectors WHERE observation_id = ?",
            (observation_id,),
        ).fetchone()
        if existing and existing["content_hash"] == digest:
            return
        vectors = self.embedder.embed([cleaned])
        if not vectors:
            return
        if existing:
            self.conn.execute(
                "DELETE FROM observation_vectors WHERE observation_id = ?", (observation_id,)
            )
        self.conn.execute(
            """
            INSERT INTO observation_vectors(embedding, observation_id, content_hash, model)
            VALUES (?, ?, ?, ?)
            """,
            (vectors[0], observation_id, digest, self.embedder.model),
        )

    def remove(self, observation_ids: Sequence[int]) -> None:
        if not observation_ids:
            return
        placeholders = ",".join("?" for _ in observation_ids)
        self.conn.execute(
            f"DELETE FROM observation_vectors WHERE observation_id IN ({placeholders})",
            [int(observation_id) for observation_id in observation_ids],
        )

    def query(self, text: str, limit: int) -> list[tuple[int, float]]:
        cleaned = text.strip()
        if not cleaned or limit <= 0:
            return []
        vectors = self.embedder.embed([cleaned])
        if not vectors:
            return []
        rows = self.conn.execute(
            """
            SELECT observation_id, distance
            FROM observation_vectors
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance ASC
            """,
            (vectors[0], limit),
        ).fetchall()
        return [(int(row["observation_id"]), float(row["distance"])) for row in rows]


def build_similarity_backend(conn: sqlite3.Connection) -> SimilarityBackend | None:
    embedder = get_embedder()
    if embedder is None:
        return None
    try:
        return SqliteVecBackend(conn, embedder)
    except RuntimeError as exc:
        logger.warning("sqlite-vec unavailable; semantic recall disabled", exc_info=exc)
        return None


def backfill_vectors(
    store: MemoryStore,
    *,
    project: str | None = None,
    limit: int | None = None,
    observation_ids: Iterable[int] | None = None,
) -> dict[str, int]:
    backend = store.similarity
    if backend is None:
        return {"checked": 0, "embedded": 0}
    clauses: list[str] = []
    params: list[Any] = []
    if project:
        clauses.append("project = ?")
        params.append(project)
    ids = list(observation_ids or [])
    if ids:
        clauses.append(f"id IN ({','.join('?' for _ in ids)})")
        params.extend(ids)
    where = " AND ".join(clauses) if clauses else "1=1"
    limit_clause = "LIMIT ?" if limit else ""
    if limit:
        params.append(limit)
    rows = store.conn.execute(
        f"""
        SELECT id, title, narrative FROM observations
        WHERE {where}
        ORDER BY created_at_epoch ASC
        {limit_clause}
        """,
        params,
    ).fetchall()
    checked = 0
    embedded = 0
    with store.write_transaction():
        for row in rows:
            checked += 1
            text = f"{row['title'] or ''}\n{row['narrative'] or ''}".strip()
            if not text:
                continue
            backend.index(int(row["id"]), text)
            embedded += 1
    return {"checked": checked, "embedded": embedded}
