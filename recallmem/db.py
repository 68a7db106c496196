from __future__ import annotations

import json
import logging
import os
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import MigrationError

DEFAULT_DB_PATH = Path.home() / ".recallmem" / "memory.sqlite"

logger = logging.getLogger(__name__)


def default_db_path() -> Path:
    return Path(os.environ.get("RECALLMEM_DB") or DEFAULT_DB_PATH).expanduser()


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    sql: str


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        1,
        "Initial schema",
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            content_session_id TEXT NOT NULL UNIQUE,
            memory_session_id TEXT,
            project TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            created_at_epoch INTEGER,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            is_complete INTEGER DEFAULT 0,
            prompt_count INTEGER DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project);
        CREATE INDEX IF NOT EXISTS idx_sessions_created_at ON sessions(created_at_epoch);

        CREATE TABLE IF NOT EXISTS observations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            memory_session_id INTEGER NOT NULL,
            session_id TEXT NOT NULL,
            type TEXT NOT NULL,
            title TEXT,
            subtitle TEXT,
            narrative TEXT,
            facts TEXT,
            concepts TEXT,
            files_read TEXT,
            files_modified TEXT,
            project TEXT NOT NULL,
            prompt_number INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            created_at_epoch INTEGER,
            tokens_used INTEGER DEFAULT 0,
            FOREIGN KEY (memory_session_id) REFERENCES sessions(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_observations_session ON observations(memory_session_id);
        CREATE INDEX IF NOT EXISTS idx_observations_project ON observations(project);
        CREATE INDEX IF NOT EXISTS idx_observations_type ON observations(type);
        CREATE INDEX IF NOT EXISTS idx_observations_created_at ON observations(created_at_epoch);

        CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
            title, subtitle, narrative, facts, concepts,
            content='observations',
            content_rowid='id'
        );
        CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
            INSERT INTO observations_fts(rowid, title, subtitle, narrative, facts, concepts)
            VALUES (new.id, new.title, new.subtitle, new.narrative, new.facts, new.concepts);
        END;
        CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, title, subtitle, narrative, facts, concepts)
            VALUES ('delete', old.id, old.title, old.subtitle, old.narrative, old.facts, old.concepts);
        END;
        CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
            INSERT INTO observations_fts(observations_fts, rowid, title, subtitle, narrative, facts, concepts)
            VALUES ('delete', old.id, old.title, old.subtitle, old.narrative, old.facts, old.concepts);
            INSERT INTO observations_fts(rowid, title, subtitle, narrative, facts, concepts)
            VALUES (new.id, new.title, new.subtitle, new.narrative, new.facts, new.concepts);
        END;

        CREATE TABLE IF NOT EXISTS summaries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            request TEXT,
            investigated TEXT,
            learned TEXT,
            completed TEXT,
            next_steps TEXT,
            notes TEXT,
            project TEXT NOT NULL,
            prompt_number INTEGER DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            created_at_epoch INTEGER,
            tokens_used INTEGER DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_summaries_session ON summaries(session_id);
        CREATE INDEX IF NOT EXISTS idx_summaries_project ON summaries(project);

        CREATE TABLE IF NOT EXISTS prompts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_id TEXT NOT NULL,
            prompt_number INTEGER NOT NULL,
            content TEXT NOT NULL,
            project TEXT NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            created_at_epoch INTEGER
        );
        CREATE INDEX IF NOT EXISTS idx_prompts_session ON prompts(session_id);

        CREATE TABLE IF NOT EXISTS pending_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_db_id INTEGER NOT NULL,
            message_type TEXT NOT NULL,
            payload TEXT NOT NULL,
            created_at_epoch INTEGER NOT NULL,
            attempts INTEGER DEFAULT 0,
            status TEXT DEFAULT 'pending',
            error TEXT,
            FOREIGN KEY (session_db_id) REFERENCES sessions(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_pending_session ON pending_messages(session_db_id);
        CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_messages(status);
        """,
    ),
    Migration(
        2,
        "Add favorites support",
        """
        ALTER TABLE observations ADD COLUMN is_favorite INTEGER DEFAULT 0;
        CREATE INDEX IF NOT EXISTS idx_observations_favorite
            ON observations(is_favorite) WHERE is_favorite = 1;

        CREATE TABLE IF NOT EXISTS favorites (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            observation_id INTEGER NOT NULL UNIQUE,
            note TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (observation_id) REFERENCES observations(id) ON DELETE CASCADE
        );
        """,
    ),
    Migration(
        3,
        "Add custom tags",
        """
        CREATE TABLE IF NOT EXISTS tags (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            color TEXT DEFAULT '#6b7280',
            description TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS observation_tags (
            observation_id INTEGER NOT NULL,
            tag_id INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (observation_id, tag_id),
            FOREIGN KEY (observation_id) REFERENCES observations(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_observation_tags_tag ON observation_tags(tag_id);

        CREATE TABLE IF NOT EXISTS session_tags (
            session_id INTEGER NOT NULL,
            tag_id INTEGER NOT NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (session_id, tag_id),
            FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE,
            FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
        );

        INSERT OR IGNORE INTO tags (name, color, description) VALUES
            ('important', '#ef4444', 'High priority items'),
            ('todo', '#f59e0b', 'Items to follow up on'),
            ('reference', '#3b82f6', 'Reference material'),
            ('archived', '#6b7280', 'Archived items');
        """,
    ),
    Migration(
        4,
        "Add display ids and pending retry scheduling",
        """
        ALTER TABLE observations ADD COLUMN display_id TEXT;
        CREATE INDEX IF NOT EXISTS idx_observations_display_id ON observations(display_id);

        ALTER TABLE pending_messages ADD COLUMN next_attempt_epoch INTEGER DEFAULT 0;
        ALTER TABLE pending_messages ADD COLUMN updated_at_epoch INTEGER;
        """,
    ),
)

LATEST_VERSION = MIGRATIONS[-1].version


def sqlite_vec_version(conn: sqlite3.Connection) -> str | None:
    try:
        row = conn.execute("select vec_version()").fetchone()
    except sqlite3.Error:
        return None
    if not row or row[0] is None:
        return None
    return str(row[0])


def load_sqlite_vec(conn: sqlite3.Connection) -> None:
    import sqlite_vec

    try:
        conn.enable_load_extension(True)
    except AttributeError as exc:
        raise RuntimeError(
            "sqlite-vec requires a Python SQLite build that supports extension loading. "
            "Disable semantic recall with RECALLMEM_EMBEDDING_DISABLED=1."
        ) from exc
    try:
        sqlite_vec.load(conn)
        if sqlite_vec_version(conn) is None:
            raise RuntimeError("sqlite-vec loaded but version check failed")
    except Exception as exc:  # pragma: no cover
        raise RuntimeError(
            "Failed to load sqlite-vec extension. "
            "If you need to run without embeddings, set RECALLMEM_EMBEDDING_DISABLED=1."
        ) from exc
    finally:
        try:
            conn.enable_load_extension(False)
        except AttributeError:
            pass


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
        """
    )
    conn.commit()


def current_version(conn: sqlite3.Connection) -> int:
    _ensure_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    if row is None or row["version"] is None:
        return 0
    return int(row["version"])


def applied_migrations(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    _ensure_version_table(conn)
    rows = conn.execute(
        "SELECT version, description, applied_at FROM schema_version ORDER BY version"
    ).fetchall()
    return rows_to_dicts(rows)


def _sql_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def apply_migrations(
    conn: sqlite3.Connection,
    migrations: Iterable[Migration] = MIGRATIONS,
) -> list[int]:
    """Bring the store up to the latest schema version.

    Migrations run in increasing version order. Each one, together with its
    schema_version row, executes in a single transaction; on failure that
    transaction is rolled back and the store stays at the previous version.
    """
    ordered = sorted(migrations, key=lambda migration: migration.version)
    versions = [migration.version for migration in ordered]
    if len(set(versions)) != len(versions):
        raise MigrationError(f"duplicate migration versions: {versions}")
    version = current_version(conn)
    applied: list[int] = []
    for migration in ordered:
        if migration.version <= version:
            continue
        script = (
            "BEGIN IMMEDIATE;\n"
            f"{migration.sql}\n"
            "INSERT INTO schema_version (version, description) "
            f"VALUES ({int(migration.version)}, {_sql_literal(migration.description)});\n"
            "COMMIT;"
        )
        try:
            conn.executescript(script)
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            logger.exception(
                "migration failed",
                extra={"version": migration.version, "description": migration.description},
            )
            raise MigrationError(
                f"migration {migration.version} ({migration.description}) failed: {exc}",
                detail={"version": migration.version, "current_version": version},
            ) from exc
        version = migration.version
        applied.append(migration.version)
        logger.info("applied migration %s: %s", migration.version, migration.description)
    return applied


def fts_row_counts(conn: sqlite3.Connection) -> tuple[int, int]:
    observations = conn.execute("SELECT COUNT(*) AS n FROM observations").fetchone()["n"]
    indexed = conn.execute("SELECT COUNT(*) AS n FROM observations_fts_docsize").fetchone()["n"]
    return int(observations), int(indexed)


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = []
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False)


def from_json(text: str | None) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def json_list(text: str | None) -> list[str]:
    value = from_json(text)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]
