from __future__ import annotations

from pathlib import Path

import pytest

from recallmem import db
from recallmem.errors import MigrationError


def _tables(conn) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')").fetchall()
    return {row["name"] for row in rows}


def test_fresh_database_reaches_latest_version(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        applied = db.apply_migrations(conn)
        assert applied == [migration.version for migration in db.MIGRATIONS]
        assert db.current_version(conn) == db.LATEST_VERSION == 4
        tables = _tables(conn)
        for name in (
            "sessions",
            "observations",
            "observations_fts",
            "summaries",
            "prompts",
            "pending_messages",
            "favorites",
            "tags",
            "observation_tags",
            "session_tags",
            "schema_version",
        ):
            assert name in tables
        versions = [row["version"] for row in db.applied_migrations(conn)]
        assert versions == [1, 2, 3, 4]
    finally:
        conn.close()


def test_apply_migrations_is_idempotent(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.apply_migrations(conn)
        assert db.apply_migrations(conn) == []
        assert db.current_version(conn) == db.LATEST_VERSION
    finally:
        conn.close()


def test_default_tags_seeded(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.apply_migrations(conn)
        names = {row["name"] for row in conn.execute("SELECT name FROM tags").fetchall()}
        assert {"important", "todo", "reference", "archived"} <= names
    finally:
        conn.close()


def test_failed_migration_rolls_back(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        db.apply_migrations(conn)
        broken = db.Migration(
            5,
            "broken",
            "CREATE TABLE half_done (x INTEGER); INSERT INTO missing_table VALUES (1);",
        )
        with pytest.raises(MigrationError):
            db.apply_migrations(conn, [*db.MIGRATIONS, broken])
        assert db.current_version(conn) == 4
        assert "half_done" not in _tables(conn)
    finally:
        conn.close()


def test_duplicate_versions_rejected(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "mem.sqlite")
    try:
        duplicate = db.Migration(1, "again", "SELECT 1;")
        with pytest.raises(MigrationError):
            db.apply_migrations(conn, [*db.MIGRATIONS, duplicate])
        assert db.current_version(conn) == 0
    finally:
        conn.close()


def test_default_db_path_honors_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECALLMEM_DB", str(tmp_path / "custom.sqlite"))
    assert db.default_db_path() == tmp_path / "custom.sqlite"
