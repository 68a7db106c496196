from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from recallmem import __version__
from recallmem.cli import app

runner = CliRunner()


def test_root_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("recall", "remember", "search", "prune", "serve", "rpc", "db"):
        assert command in result.stdout


def test_db_help_lists_maintenance_commands() -> None:
    result = runner.invoke(app, ["db", "--help"])
    assert result.exit_code == 0
    for command in ("migrate", "version", "rebuild-index", "delete-session"):
        assert command in result.stdout


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_init_db_creates_database(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.sqlite"
    result = runner.invoke(app, ["init-db", "--db-path", str(db_path)])
    assert result.exit_code == 0
    assert "Initialized database" in result.stdout
    assert db_path.exists()


def test_remember_then_search(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    remembered = runner.invoke(
        app,
        ["remember", "decision", "Use ruff for linting", "--db-path", db_path, "--project", "proj"],
    )
    assert remembered.exit_code == 0
    assert "Stored observation" in remembered.stdout

    found = runner.invoke(
        app, ["search", "ruff", "--db-path", db_path, "--project", "proj", "--json"]
    )
    assert found.exit_code == 0
    results = json.loads(found.stdout)
    assert [item["narrative"] for item in results] == ["Use ruff for linting"]

    recalled = runner.invoke(app, ["recall", "linting", "--db-path", db_path, "--project", "proj"])
    assert recalled.exit_code == 0
    assert "- [decision] Use ruff for linting" in recalled.stdout


def test_remember_rejects_unknown_type(tmp_path: Path) -> None:
    result = runner.invoke(
        app, ["remember", "custom", "anything", "--db-path", str(tmp_path / "cli.sqlite")]
    )
    assert result.exit_code == 1
    assert "validation" in result.stdout


def test_show_missing_observation(tmp_path: Path) -> None:
    result = runner.invoke(app, ["show", "42", "--db-path", str(tmp_path / "cli.sqlite")])
    assert result.exit_code == 1
    assert "not_found" in result.stdout


def test_invalid_config_exits(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"worker_port": "nope"}))
    monkeypatch.setenv("RECALLMEM_CONFIG", str(config_path))
    result = runner.invoke(app, ["stats", "--db-path", str(tmp_path / "cli.sqlite")])
    assert result.exit_code == 1
    assert "Invalid config" in result.stdout


def test_db_version_lists_migrations(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    assert runner.invoke(app, ["db", "migrate", "--db-path", db_path]).exit_code == 0
    result = runner.invoke(app, ["db", "version", "--db-path", db_path])
    assert result.exit_code == 0
    assert "v4" in result.stdout


def test_delete_session_with_yes(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    runner.invoke(app, ["remember", "context", "throwaway", "--db-path", db_path, "--project", "proj"])
    result = runner.invoke(app, ["db", "delete-session", "manual-proj", "--yes", "--db-path", db_path])
    assert result.exit_code == 0
    assert "Deleted session manual-proj" in result.stdout


def test_tags_create_and_favorites(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    created = runner.invoke(
        app, ["tags", "--create", "perf", "--description", "Performance notes", "--db-path", db_path]
    )
    assert created.exit_code == 0
    assert "perf (0) - Performance notes" in created.stdout

    runner.invoke(app, ["remember", "learning", "WAL helps readers", "--db-path", db_path, "--project", "proj"])
    assert runner.invoke(app, ["favorite", "1", "--note", "keep", "--db-path", db_path]).exit_code == 0
    listed = runner.invoke(app, ["favorites", "--db-path", db_path, "--project", "proj"])
    assert listed.exit_code == 0
    assert "#1 [learning] WAL helps readers - keep" in listed.stdout


def test_show_accepts_display_id(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    runner.invoke(app, ["remember", "decision", "Pin ruff in CI", "--db-path", db_path, "--project", "proj"])
    by_id = json.loads(runner.invoke(app, ["show", "1", "--db-path", db_path]).stdout)
    assert by_id["display_id"].startswith("obs_")

    by_display = runner.invoke(app, ["show", by_id["display_id"], "--db-path", db_path])
    assert by_display.exit_code == 0
    assert json.loads(by_display.stdout)["id"] == 1

    missing = runner.invoke(app, ["show", "obs_0_missing", "--db-path", db_path])
    assert missing.exit_code == 1
    assert "not_found" in missing.stdout


def test_sessions_and_session_tags(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.sqlite")
    runner.invoke(app, ["remember", "context", "first note", "--db-path", db_path, "--project", "proj"])

    listed = runner.invoke(app, ["sessions", "--json", "--db-path", db_path, "--all-projects"])
    assert listed.exit_code == 0
    sessions = json.loads(listed.stdout)
    assert [item["content_session_id"] for item in sessions] == ["manual-proj"]

    tagged = runner.invoke(app, ["tag-session", "manual-proj", "Sprint 4", "--db-path", db_path])
    assert tagged.exit_code == 0
    assert "Added tag 'Sprint 4' on session manual-proj" in tagged.stdout
    again = runner.invoke(app, ["tag-session", "manual-proj", "sprint-4", "--db-path", db_path])
    assert "(no change)" in again.stdout

    unknown = runner.invoke(app, ["tag-session", "nope", "x", "--db-path", db_path])
    assert unknown.exit_code == 1
    assert "not_found" in unknown.stdout
