from __future__ import annotations

import os
from pathlib import Path

import typer
from rich import print

from .. import db
from ..errors import ConsistencyError
from .common import exit_on_error, print_json


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        version = store.schema_version()
    finally:
        store.close()
    print(f"Initialized database at {store.db_path} (schema v{version})")


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


def stats_cmd(*, store_from_path, db_path: str | None, as_json: bool = False) -> None:
    store = store_from_path(db_path)
    try:
        stats_data = store.stats()
    finally:
        store.close()
    if as_json:
        print_json(stats_data)
        return

    db_stats = stats_data["database"]
    print("[bold]Database[/bold]")
    print(f"- Path: {db_stats['path']}")
    print(f"- Size: {_format_bytes(int(db_stats['size_bytes']))}")
    print(f"- Schema version: {db_stats['schema_version']}")

    print("\n[bold]Contents[/bold]")
    print(f"- Sessions: {stats_data['total_sessions']} across {stats_data['total_projects']} projects")
    print(
        f"- Observations: {stats_data['total_observations']} "
        f"(~{stats_data['average_observations_per_session']} per session)"
    )
    print(f"- Summaries: {stats_data['total_summaries']}")
    print(f"- Favorites: {stats_data['favorites']}")
    print(f"- Tokens stored: ~{stats_data['tokens_used']:,}")
    activity = stats_data["recent_activity"]
    print(
        f"- Activity: {activity['today']} today, {activity['this_week']} this week, "
        f"{activity['this_month']} this month"
    )
    if stats_data["observations_by_type"]:
        print("\n[bold]By type[/bold]")
        for kind, count in stats_data["observations_by_type"].items():
            print(f"- {kind}: {count}")
    pending = stats_data["pending_messages"]
    if any(pending.values()):
        print("\n[bold]Pending messages[/bold]")
        for status, count in pending.items():
            print(f"- {status}: {count}")


def export_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    fmt: str,
    project: str | None,
    all_projects: bool,
    days: int | None,
    output: Path | None,
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
            body = store.export(fmt, project=resolved_project, days=days)
    finally:
        store.close()
    if output is None:
        typer.echo(body, nl=False)
        return
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(body, encoding="utf-8")
    print(f"Exported to {output}")


def prune_cmd(
    *,
    store_from_path,
    db_path: str | None,
    days: int | None,
    max_observations: int | None,
    dry_run: bool,
) -> None:
    """Apply the retention policy now."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            report = store.prune(
                retention_days=days, max_observations=max_observations, dry_run=dry_run
            )
    finally:
        store.close()
    action = "Would remove" if dry_run else "Removed"
    print(
        f"{action} {report.removed} observations "
        f"({report.removed_by_age} by age, {report.removed_by_count} over the ceiling)"
    )
    if report.cutoff_iso:
        print(f"Age cutoff: {report.cutoff_iso}")


def db_migrate_cmd(*, db_path: str | None) -> None:
    path = Path(db_path) if db_path else db.default_db_path()
    conn = db.connect(path)
    try:
        with exit_on_error():
            applied = db.apply_migrations(conn)
        version = db.current_version(conn)
    finally:
        conn.close()
    if applied:
        print(f"Applied migrations {', '.join(str(v) for v in applied)}; now at v{version}")
    else:
        print(f"Already at v{version}")


def db_version_cmd(*, db_path: str | None) -> None:
    path = Path(db_path) if db_path else db.default_db_path()
    conn = db.connect(path)
    try:
        rows = db.applied_migrations(conn)
        observations, indexed = db.fts_row_counts(conn) if rows else (0, 0)
    finally:
        conn.close()
    if not rows:
        print("No migrations applied")
        return
    for row in rows:
        print(f"v{row['version']}  {row['applied_at']}  {row['description']}")
    print(f"Latest known version: v{db.LATEST_VERSION}")
    if observations != indexed:
        print(
            f"[yellow]Full-text index has {indexed} rows for {observations} observations; "
            "run `recallmem db rebuild-index`[/yellow]"
        )


def db_rebuild_index_cmd(*, store_from_path, db_path: str | None) -> None:
    """Rebuild the full-text index, drop orphans and re-enable writes."""

    store = store_from_path(db_path)
    try:
        try:
            report = store.repair()
        except ConsistencyError as exc:
            print(f"[red]Store still inconsistent after rebuild: {exc.message}[/red]")
            raise typer.Exit(code=1) from exc
        embedded = store.backfill_vectors()
    finally:
        store.close()
    print(f"Index rebuilt: {report['indexed']} of {report['observations']} observations indexed")
    if embedded.get("embedded"):
        print(f"Re-embedded {embedded['embedded']} observations")


def db_delete_session_cmd(
    *, store_from_path, db_path: str | None, session_id: str, yes: bool
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            session = store.require_session(session_id)
            if not yes and not typer.confirm(
                f"Delete session {session_id} ({session.project}) and everything recorded in it?"
            ):
                raise typer.Exit(code=1)
            counts = store.delete_session(session_id)
    finally:
        store.close()
    details = ", ".join(f"{name}={count}" for name, count in counts.items())
    print(f"Deleted session {session_id} ({details})")
