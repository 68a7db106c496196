from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .. import db
from ..config import RecallConfig, load_config
from ..errors import ConsistencyError, NotFoundError, ValidationError, from_sqlite_error
from ..observation_types import validate_observation_type
from ..summarizer import Summary
from . import context as store_context
from . import export as store_export
from . import pending as store_pending
from . import retention as store_retention
from . import search as store_search
from . import stats as store_stats
from . import tags as store_tags
from . import utils as store_utils
from . import vectors as store_vectors
from .types import ContextBlock, ObservationResult, PendingMessage, PruneReport, SessionRecord

logger = logging.getLogger(__name__)

_AUTO = object()


@dataclass
class _WriterState:
    lock: threading.RLock
    fatal_reason: str | None = None


_WRITERS: dict[str, _WriterState] = {}
_WRITERS_GUARD = threading.Lock()


def _writer_state(path: Path) -> _WriterState:
    key = str(path.resolve())
    with _WRITERS_GUARD:
        state = _WRITERS.get(key)
        if state is None:
            state = _WriterState(lock=threading.RLock())
            _WRITERS[key] = state
        return state


class MemoryStore:
    """Single entry point to the on-disk memory state.

    Every write runs inside ``write_transaction()``, which serializes writers
    per database file. Reads use the WAL snapshot and never take the lock.
    """

    TITLE_MAX_CHARS = 80

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        check_same_thread: bool = True,
        config: RecallConfig | None = None,
        similarity: Any = _AUTO,
    ):
        self.db_path = Path(db_path or db.default_db_path()).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.apply_migrations(self.conn)
        self.config = config or load_config()
        self._writer = _writer_state(self.db_path)
        self._tx_depth = 0
        if similarity is _AUTO:
            self.similarity = store_vectors.build_similarity_backend(self.conn)
        else:
            self.similarity = similarity
        if self._writer.fatal_reason is None:
            _, problem = self._consistency_problem()
            if problem:
                self.mark_inconsistent(problem)

    # transactions and consistency

    @contextlib.contextmanager
    def write_transaction(self) -> Iterator[sqlite3.Connection]:
        with self._writer.lock:
            if self._writer.fatal_reason:
                raise ConsistencyError(
                    f"store is read-only until repaired: {self._writer.fatal_reason}"
                )
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self.conn
                finally:
                    self._tx_depth -= 1
                return
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise from_sqlite_error(exc) from exc
            self._tx_depth = 1
            try:
                yield self.conn
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise from_sqlite_error(exc) from exc
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()
            finally:
                self._tx_depth = 0

    @property
    def writable(self) -> bool:
        return self._writer.fatal_reason is None

    def mark_inconsistent(self, reason: str) -> ConsistencyError:
        self._writer.fatal_reason = reason
        logger.error("store marked inconsistent", extra={"db_path": str(self.db_path), "reason": reason})
        return ConsistencyError(reason)

    def _consistency_problem(self) -> tuple[dict[str, int], str | None]:
        observations, indexed = db.fts_row_counts(self.conn)
        orphans = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM observations o
                 LEFT JOIN sessions s ON s.id = o.memory_session_id WHERE s.id IS NULL)
                + (SELECT COUNT(*) FROM observation_tags ot
                   LEFT JOIN observations o ON o.id = ot.observation_id WHERE o.id IS NULL)
                + (SELECT COUNT(*) FROM favorites f
                   LEFT JOIN observations o ON o.id = f.observation_id WHERE o.id IS NULL)
                AS n
            """
        ).fetchone()["n"]
        report = {"observations": observations, "indexed": indexed, "orphans": int(orphans)}
        if observations != indexed:
            return report, f"full-text index has {indexed} rows for {observations} observations"
        if orphans:
            return report, f"{orphans} orphaned child rows"
        return report, None

    def check_consistency(self) -> dict[str, int]:
        report, problem = self._consistency_problem()
        if problem:
            raise self.mark_inconsistent(problem)
        return report

    @property
    def inconsistency(self) -> str | None:
        return self._writer.fatal_reason

    def repair(self) -> dict[str, int]:
        """Rebuild the shadow index, drop orphans and clear the read-only flag."""
        with self._writer.lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                self.conn.execute(
                    """
                    DELETE FROM observations WHERE memory_session_id NOT IN (SELECT id FROM sessions)
                    """
                )
                self.conn.execute(
                    "DELETE FROM observation_tags WHERE observation_id NOT IN (SELECT id FROM observations)"
                )
                self.conn.execute(
                    "DELETE FROM favorites WHERE observation_id NOT IN (SELECT id FROM observations)"
                )
                self.conn.execute("INSERT INTO observations_fts(observations_fts) VALUES ('rebuild')")
            except BaseException:
                self.conn.rollback()
                raise
            self.conn.commit()
            self._writer.fatal_reason = None
        return self.check_consistency()

    # sessions

    def start_session(self, content_session_id: str, project: str) -> SessionRecord:
        content_session_id = (content_session_id or "").strip()
        project = (project or "").strip()
        if not content_session_id:
            raise ValidationError("session id is required")
        if not project:
            raise ValidationError("project is required")
        iso = self._now_iso()
        epoch = store_utils.now_epoch()
        with self.write_transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions(content_session_id, project, created_at, created_at_epoch, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(content_session_id) DO UPDATE SET updated_at = excluded.updated_at
                """,
                (content_session_id, project, iso, epoch, iso),
            )
        session = self.get_session(content_session_id)
        if session is None:
            raise RuntimeError("Failed to create session")
        return session

    def get_session(self, content_session_id: str) -> SessionRecord | None:
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE content_session_id = ?", (content_session_id,)
        ).fetchone()
        return store_utils.session_from_row(row) if row else None

    def require_session(self, content_session_id: str) -> SessionRecord:
        session = self.get_session(content_session_id)
        if session is None:
            raise NotFoundError(f"unknown session: {content_session_id}")
        return session

    def list_sessions(self, project: str | None = None, limit: int = 20) -> list[SessionRecord]:
        params: list[Any] = []
        where = "1=1"
        if project:
            clause, clause_params = store_utils.project_column_clause("project", project)
            if clause:
                where = clause
                params.extend(clause_params)
        params.append(limit)
        rows = self.conn.execute(
            f"SELECT * FROM sessions WHERE {where} ORDER BY created_at_epoch DESC, id DESC LIMIT ?",
            params,
        ).fetchall()
        return [store_utils.session_from_row(row) for row in rows]

    def record_prompt(self, content_session_id: str, content: str) -> int:
        session = self.require_session(content_session_id)
        iso = self._now_iso()
        with self.write_transaction() as conn:
            conn.execute(
                "UPDATE sessions SET prompt_count = prompt_count + 1, updated_at = ? WHERE id = ?",
                (iso, session.id),
            )
            prompt_number = int(
                conn.execute(
                    "SELECT prompt_count FROM sessions WHERE id = ?", (session.id,)
                ).fetchone()["prompt_count"]
            )
            if content and content.strip():
                conn.execute(
                    """
                    INSERT INTO prompts(session_id, prompt_number, content, project, created_at, created_at_epoch)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        content_session_id,
                        prompt_number,
                        content,
                        session.project,
                        iso,
                        store_utils.now_epoch(),
                    ),
                )
        return prompt_number

    def end_session(self, content_session_id: str) -> SessionRecord:
        session = self.require_session(content_session_id)
        with self.write_transaction() as conn:
            conn.execute(
                "UPDATE sessions SET is_complete = 1, updated_at = ? WHERE id = ?",
                (self._now_iso(), session.id),
            )
        return self.require_session(content_session_id)

    def delete_session(self, content_session_id: str) -> dict[str, int]:
        """Delete a session and every row that hangs off it, in one transaction."""
        session = self.require_session(content_session_id)
        with self.write_transaction() as conn:
            observation_ids = [
                int(row["id"])
                for row in conn.execute(
                    "SELECT id FROM observations WHERE memory_session_id = ?", (session.id,)
                ).fetchall()
            ]
            counts = self._delete_observations_locked(observation_ids)
            counts["summaries"] = conn.execute(
                "DELETE FROM summaries WHERE session_id = ?", (content_session_id,)
            ).rowcount
            counts["prompts"] = conn.execute(
                "DELETE FROM prompts WHERE session_id = ?", (content_session_id,)
            ).rowcount
            counts["pending_messages"] = conn.execute(
                "DELETE FROM pending_messages WHERE session_db_id = ?", (session.id,)
            ).rowcount
            counts["session_tags"] = conn.execute(
                "DELETE FROM session_tags WHERE session_id = ?", (session.id,)
            ).rowcount
            conn.execute("DELETE FROM sessions WHERE id = ?", (session.id,))
            remaining = conn.execute(
                "SELECT COUNT(*) AS n FROM observations WHERE memory_session_id = ?", (session.id,)
            ).fetchone()["n"]
            if remaining:
                raise self.mark_inconsistent(
                    f"cascade left {remaining} observations for session {content_session_id}"
                )
        logger.info("deleted session %s", content_session_id, extra={"counts": counts})
        return counts

    # observations

    def add_observation(
        self,
        content_session_id: str,
        *,
        type: str,
        narrative: str,
        title: str | None = None,
        subtitle: str | None = None,
        facts: Sequence[str] | None = None,
        concepts: Sequence[str] | None = None,
        files_read: Sequence[str] | None = None,
        files_modified: Sequence[str] | None = None,
        prompt_number: int | None = None,
        display_id: str | None = None,
        created_at_epoch: int | None = None,
    ) -> ObservationResult:
        observation_type = validate_observation_type(type, self.config.observation_types)
        narrative = (narrative or "").strip()
        title = (title or "").strip() or narrative[: self.TITLE_MAX_CHARS]
        if not narrative and not title:
            raise ValidationError("observation content is required")
        session = self.require_session(content_session_id)
        epoch = created_at_epoch if created_at_epoch is not None else store_utils.now_epoch()
        with self.write_transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO observations(
                    memory_session_id, session_id, display_id, type, title, subtitle, narrative,
                    facts, concepts, files_read, files_modified, project, prompt_number,
                    created_at, created_at_epoch, tokens_used
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.content_session_id,
                    display_id,
                    observation_type,
                    title,
                    subtitle,
                    narrative,
                    db.to_json(list(facts or [])),
                    db.to_json(list(concepts or [])),
                    db.to_json(list(files_read or [])),
                    db.to_json(list(files_modified or [])),
                    session.project,
                    prompt_number or max(session.prompt_count, 1),
                    store_utils.iso_from_epoch(epoch),
                    epoch,
                    store_utils.estimate_tokens(narrative),
                ),
            )
            observation_id = cur.lastrowid
            if observation_id is None:
                raise RuntimeError("Failed to insert observation")
            conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ?", (self._now_iso(), session.id)
            )
        if self.similarity is not None:
            try:
                with self.write_transaction():
                    self.similarity.index(int(observation_id), f"{title}\n{narrative}")
            except Exception as exc:
                logger.warning(
                    "embedding index failed", extra={"observation_id": observation_id}, exc_info=exc
                )
        result = self.get_observation(int(observation_id))
        if result is None:
            raise RuntimeError("Failed to read back observation")
        return result

    def get_observation(self, observation_id: int) -> ObservationResult | None:
        row = self.conn.execute(
            "SELECT * FROM observations WHERE id = ?", (observation_id,)
        ).fetchone()
        if row is None:
            return None
        result = store_utils.observation_from_row(row)
        store_tags.attach_tags(self, [result])
        return result

    def get_by_display_id(self, display_id: str) -> ObservationResult | None:
        row = self.conn.execute(
            "SELECT id FROM observations WHERE display_id = ?", (display_id,)
        ).fetchone()
        return self.get_observation(int(row["id"])) if row else None

    def require_observation(self, observation_id: int) -> ObservationResult:
        result = self.get_observation(observation_id)
        if result is None:
            raise NotFoundError(f"unknown observation: {observation_id}")
        return result

    def get_many(self, ids: Iterable[int]) -> list[ObservationResult]:
        id_list = [int(item) for item in ids]
        if not id_list:
            return []
        placeholders = ",".join("?" for _ in id_list)
        rows = self.conn.execute(
            f"SELECT * FROM observations WHERE id IN ({placeholders})", id_list
        ).fetchall()
        by_id = {int(row["id"]): store_utils.observation_from_row(row) for row in rows}
        results = [by_id[item] for item in id_list if item in by_id]
        store_tags.attach_tags(self, results)
        return results

    def session_observations(self, content_session_id: str) -> list[ObservationResult]:
        rows = self.conn.execute(
            "SELECT * FROM observations WHERE session_id = ? ORDER BY created_at_epoch, id",
            (content_session_id,),
        ).fetchall()
        return [store_utils.observation_from_row(row) for row in rows]

    def count_observations(self, project: str | None = None) -> int:
        if project:
            clause, params = store_utils.project_column_clause("project", project)
            row = self.conn.execute(
                f"SELECT COUNT(*) AS n FROM observations WHERE {clause}", params
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM observations").fetchone()
        return int(row["n"])

    def delete_observation(self, observation_id: int) -> bool:
        with self.write_transaction():
            counts = self._delete_observations_locked([observation_id])
        return counts["observations"] > 0

    def delete_observations(self, observation_ids: Sequence[int]) -> dict[str, int]:
        with self.write_transaction():
            return self._delete_observations_locked(observation_ids)

    def _delete_observations_locked(self, observation_ids: Sequence[int]) -> dict[str, int]:
        # Caller holds the write transaction.
        counts = {"observations": 0, "observation_tags": 0, "favorites": 0}
        ids = [int(item) for item in observation_ids]
        for start in range(0, len(ids), 500):
            chunk = ids[start : start + 500]
            placeholders = ",".join("?" for _ in chunk)
            counts["observation_tags"] += self.conn.execute(
                f"DELETE FROM observation_tags WHERE observation_id IN ({placeholders})", chunk
            ).rowcount
            counts["favorites"] += self.conn.execute(
                f"DELETE FROM favorites WHERE observation_id IN ({placeholders})", chunk
            ).rowcount
            if self.similarity is not None:
                self.similarity.remove(chunk)
            counts["observations"] += self.conn.execute(
                f"DELETE FROM observations WHERE id IN ({placeholders})", chunk
            ).rowcount
        return counts

    # summaries

    def add_summary(
        self, content_session_id: str, summary: Summary, *, prompt_number: int | None = None
    ) -> int:
        session = self.require_session(content_session_id)
        epoch = store_utils.now_epoch()
        text = " ".join(
            part
            for part in (
                summary.request,
                summary.investigated,
                summary.learned,
                summary.completed,
                summary.next_steps,
                summary.notes,
            )
            if part
        )
        with self.write_transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO summaries(
                    session_id, request, investigated, learned, completed, next_steps, notes,
                    project, prompt_number, created_at, created_at_epoch, tokens_used
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    content_session_id,
                    summary.request,
                    summary.investigated,
                    summary.learned,
                    summary.completed,
                    summary.next_steps,
                    summary.notes,
                    session.project,
                    prompt_number or max(session.prompt_count, 1),
                    store_utils.iso_from_epoch(epoch),
                    epoch,
                    store_utils.estimate_tokens(text),
                ),
            )
            if cur.lastrowid is None:
                raise RuntimeError("Failed to insert summary")
            return int(cur.lastrowid)

    def list_summaries(
        self,
        *,
        project: str | None = None,
        since_epoch: int | None = None,
        content_session_id: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if project:
            clause, clause_params = store_utils.project_column_clause("project", project)
            if clause:
                clauses.append(clause)
                params.extend(clause_params)
        if since_epoch is not None:
            clauses.append("created_at_epoch >= ?")
            params.append(since_epoch)
        if content_session_id:
            clauses.append("session_id = ?")
            params.append(content_session_id)
        where = " AND ".join(clauses) if clauses else "1=1"
        limit_clause = ""
        if limit:
            limit_clause = "LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(
            f"SELECT * FROM summaries WHERE {where} ORDER BY created_at_epoch DESC, id DESC {limit_clause}",
            params,
        ).fetchall()
        return db.rows_to_dicts(rows)

    # retrieval

    def search(
        self,
        query: str,
        limit: int = 10,
        *,
        types: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[ObservationResult]:
        return store_search.search(self, query, limit, types=types, project=project)

    def recent(
        self,
        limit: int = 10,
        *,
        types: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[ObservationResult]:
        return store_search.recent(self, limit, types=types, project=project)

    def timeline(
        self, *, project: str | None = None, days: int | None = None, limit: int = 200
    ) -> list[dict[str, Any]]:
        return store_search.timeline(self, project=project, days=days, limit=limit)

    def build_context(
        self,
        candidates: Sequence[ObservationResult],
        *,
        max_observations: int | None = None,
        max_tokens: int | None = None,
    ) -> ContextBlock:
        return store_context.build_context(
            candidates,
            max_observations=(
                self.config.context_observations if max_observations is None else max_observations
            ),
            max_tokens=self.config.context_max_tokens if max_tokens is None else max_tokens,
        )

    estimate_tokens = staticmethod(store_utils.estimate_tokens)

    # retention

    def prune(
        self,
        *,
        retention_days: int | None = None,
        max_observations: int | None = None,
        now: int | None = None,
        dry_run: bool = False,
    ) -> PruneReport:
        return store_retention.prune(
            self,
            retention_days=(
                self.config.retention_days if retention_days is None else retention_days
            ),
            max_observations=(
                self.config.retention_max_observations
                if max_observations is None
                else max_observations
            ),
            now=now,
            dry_run=dry_run,
        )

    # tags and favorites

    def list_tags(self) -> list[dict[str, Any]]:
        return store_tags.list_tags(self)

    def create_tag(self, name: str, color: str | None = None, description: str | None = None) -> int:
        return store_tags.create_tag(self, name, color=color, description=description)

    def tag_observation(self, observation_id: int, tag_name: str) -> bool:
        return store_tags.tag_observation(self, observation_id, tag_name)

    def untag_observation(self, observation_id: int, tag_name: str) -> bool:
        return store_tags.untag_observation(self, observation_id, tag_name)

    def tag_session(self, content_session_id: str, tag_name: str) -> bool:
        return store_tags.tag_session(self, content_session_id, tag_name)

    def set_favorite(self, observation_id: int, note: str | None = None) -> None:
        store_tags.set_favorite(self, observation_id, note=note)

    def clear_favorite(self, observation_id: int) -> bool:
        return store_tags.clear_favorite(self, observation_id)

    def list_favorites(self, project: str | None = None) -> list[dict[str, Any]]:
        return store_tags.list_favorites(self, project=project)

    # pending messages

    def enqueue_pending(
        self, session_db_id: int, message_type: str, payload: dict[str, Any]
    ) -> int:
        return store_pending.enqueue(self, session_db_id, message_type, payload)

    def due_pending(self, *, limit: int = 10, now: int | None = None) -> list[PendingMessage]:
        return store_pending.due(self, limit=limit, now=now)

    def complete_pending(self, message_id: int) -> None:
        store_pending.complete(self, message_id)

    def fail_pending(self, message_id: int, error: str, *, max_attempts: int) -> str:
        return store_pending.record_failure(self, message_id, error, max_attempts=max_attempts)

    def list_pending(self, status: str | None = None, limit: int = 50) -> list[PendingMessage]:
        return store_pending.list_messages(self, status=status, limit=limit)

    def pending_counts(self) -> dict[str, int]:
        return store_pending.counts(self)

    def requeue_failed(self, message_ids: Sequence[int] | None = None) -> int:
        return store_pending.requeue_failed(self, message_ids)

    # reporting

    def stats(self) -> dict[str, Any]:
        return store_stats.stats(self)

    def export(self, fmt: str, *, project: str | None = None, days: int | None = None) -> str:
        return store_export.export(self, fmt, project=project, days=days)

    def backfill_vectors(self, *, project: str | None = None, limit: int | None = None) -> dict[str, int]:
        return store_vectors.backfill_vectors(self, project=project, limit=limit)

    def schema_version(self) -> int:
        return db.current_version(self.conn)

    def close(self) -> None:
        self.conn.close()

    def _now_iso(self) -> str:
        return store_utils.iso_from_epoch(store_utils.now_epoch())
