from __future__ import annotations

from pathlib import Path

import typer
from rich import print

from . import __version__
from .commands.common import load_config_or_exit, resolve_project_for_cli, store_from_path
from .commands.maintenance_cmds import (
    db_delete_session_cmd,
    db_migrate_cmd,
    db_rebuild_index_cmd,
    db_version_cmd,
    export_cmd,
    init_db_cmd,
    prune_cmd,
    stats_cmd,
)
from .commands.memory_cmds import (
    favorite_cmd,
    favorites_cmd,
    forget_cmd,
    recall_cmd,
    remember_cmd,
    search_cmd,
    sessions_cmd,
    show_cmd,
    tag_cmd,
    tag_session_cmd,
    tags_cmd,
    timeline_cmd,
    unfavorite_cmd,
)
from .commands.pending_cmds import pending_cmd, pending_retry_cmd
from .commands.worker_cmds import mcp_cmd, rpc_cmd, serve_cmd
from .config import RecallConfig, load_config
from .errors import RecallError
from .logging_setup import configure_logging
from .store import MemoryStore

app = typer.Typer(help="recallmem: persistent memory for coding assistants")
db_app = typer.Typer(help="Database maintenance")
app.add_typer(db_app, name="db")


def _store(db_path: str | None, config: RecallConfig | None = None) -> MemoryStore:
    return store_from_path(db_path, config)


def _resolve_project(cwd: str, project: str | None, all_projects: bool = False) -> str | None:
    return resolve_project_for_cli(cwd, project, all_projects=all_projects)


@app.callback()
def main_callback(
    log_level: str = typer.Option(None, help="Override the configured log level"),
) -> None:
    level = log_level
    if level is None:
        try:
            level = load_config().log_level
        except RecallError:
            # Reported by the command itself when it loads the config.
            level = "INFO"
    configure_logging(level)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database and apply migrations."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def stats(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show database statistics."""
    stats_cmd(store_from_path=_store, db_path=db_path, as_json=as_json)


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10, help="Max results"),
    types: list[str] = typer.Option(None, "--type", help="Repeat to filter by several types"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Search across all projects"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Search observations by keyword and semantic recall."""
    search_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        query=query,
        limit=limit,
        types=types,
        project=project,
        all_projects=all_projects,
        as_json=as_json,
    )


@app.command()
def recall(
    context: str,
    max_results: int = typer.Option(10, help="Max observations in the block"),
    max_tokens: int = typer.Option(None, help="Token budget (defaults to context_max_tokens)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Recall across all projects"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Build the context block for a prompt."""
    recall_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        context=context,
        max_results=max_results,
        max_tokens=max_tokens,
        project=project,
        all_projects=all_projects,
        as_json=as_json,
    )


@app.command()
def remember(
    type: str,
    content: str,
    title: str = typer.Option(None, help="Short title (defaults to the first 80 chars)"),
    tags: list[str] = typer.Option(None, "--tag", help="Repeat for multiple tags"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
) -> None:
    """Manually add an observation."""
    remember_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        type=type,
        content=content,
        title=title,
        tags=tags,
        project=project,
    )


@app.command()
def show(
    observation: str = typer.Argument(..., help="Numeric id or obs_ display id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print an observation as JSON."""
    show_cmd(store_from_path=_store, db_path=db_path, observation=observation)


@app.command()
def forget(
    observation_id: int, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Delete an observation by id."""
    forget_cmd(store_from_path=_store, db_path=db_path, observation_id=observation_id)


@app.command()
def timeline(
    days: int = typer.Option(None, help="Only the last N days"),
    limit: int = typer.Option(50, help="Max entries"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Include all projects"),
) -> None:
    """Show observations and summaries, newest first."""
    timeline_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        project=project,
        all_projects=all_projects,
        days=days,
        limit=limit,
    )


@app.command()
def export(
    fmt: str = typer.Option("json", "--format", help="json, csv or markdown"),
    output: Path = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
    days: int = typer.Option(None, help="Only the last N days"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="Export all projects"),
) -> None:
    """Export observations and summaries."""
    export_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        fmt=fmt,
        project=project,
        all_projects=all_projects,
        days=days,
        output=output,
    )


@app.command()
def prune(
    days: int = typer.Option(None, help="Retention in days (defaults to retention_days)"),
    max_observations: int = typer.Option(
        None, help="Count ceiling (defaults to retention_max_observations)"
    ),
    dry_run: bool = typer.Option(False, help="Report without deleting"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Apply the retention policy now."""
    prune_cmd(
        store_from_path=_store,
        db_path=db_path,
        days=days,
        max_observations=max_observations,
        dry_run=dry_run,
    )


@app.command()
def favorite(
    observation_id: int,
    note: str = typer.Option(None, help="Optional note"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Mark an observation as a favorite (never pruned)."""
    favorite_cmd(store_from_path=_store, db_path=db_path, observation_id=observation_id, note=note)


@app.command()
def unfavorite(
    observation_id: int, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Clear an observation's favorite flag."""
    unfavorite_cmd(store_from_path=_store, db_path=db_path, observation_id=observation_id)


@app.command()
def tag(
    observation_id: int,
    name: str,
    remove: bool = typer.Option(False, "--remove", help="Remove the tag instead"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Add or remove a tag on an observation."""
    tag_cmd(
        store_from_path=_store,
        db_path=db_path,
        observation_id=observation_id,
        tag=name,
        remove=remove,
    )


@app.command("tag-session")
def tag_session(
    session_id: str,
    name: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Tag a whole session."""
    tag_session_cmd(store_from_path=_store, db_path=db_path, session_id=session_id, tag=name)


@app.command()
def sessions(
    limit: int = typer.Option(20, help="Max sessions"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="List sessions across all projects"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List recent sessions."""
    sessions_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        project=project,
        all_projects=all_projects,
        limit=limit,
        as_json=as_json,
    )


@app.command()
def tags(
    create: str = typer.Option(None, "--create", help="Create or update a tag first"),
    color: str = typer.Option(None, help="Hex color for --create"),
    description: str = typer.Option(None, help="Description for --create"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List tags and how many observations carry each."""
    tags_cmd(
        store_from_path=_store,
        db_path=db_path,
        create=create,
        color=color,
        description=description,
    )


@app.command()
def favorites(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    project: str = typer.Option(None, help="Project identifier (defaults to git repo root)"),
    all_projects: bool = typer.Option(False, help="List favorites across all projects"),
) -> None:
    """List favorite observations."""
    favorites_cmd(
        store_from_path=_store,
        resolve_project=_resolve_project,
        db_path=db_path,
        project=project,
        all_projects=all_projects,
    )


@app.command()
def pending(
    status: str = typer.Option(None, help="pending, sent or failed"),
    limit: int = typer.Option(20, help="Max messages"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show queued summary retries."""
    pending_cmd(store_from_path=_store, db_path=db_path, status=status, limit=limit)


@app.command("pending-retry")
def pending_retry(
    ids: list[int] = typer.Argument(None, help="Message ids (defaults to all failed)"),
    run_now: bool = typer.Option(False, "--run", help="Process the queue once after requeueing"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Requeue failed summary messages."""
    pending_retry_cmd(store_from_path=_store, db_path=db_path, ids=ids, run_now=run_now)


@app.command()
def serve(
    host: str = typer.Option(None, help="Bind host (defaults to worker_host)"),
    port: int = typer.Option(None, help="Bind port (defaults to worker_port)"),
) -> None:
    """Run the HTTP worker."""
    serve_cmd(load_config=load_config_or_exit, host=host, port=port)


@app.command()
def rpc(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Serve JSON-RPC over stdio."""
    rpc_cmd(store_from_path=_store, load_config=load_config_or_exit, db_path=db_path)


@app.command()
def mcp() -> None:
    """Run the MCP server over stdio."""
    mcp_cmd()


@db_app.command("migrate")
def db_migrate(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Apply pending schema migrations."""
    db_migrate_cmd(db_path=db_path)


@db_app.command("version")
def db_version(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """List applied schema migrations."""
    db_version_cmd(db_path=db_path)


@db_app.command("rebuild-index")
def db_rebuild_index(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Rebuild the full-text index and clear the read-only flag."""
    db_rebuild_index_cmd(store_from_path=_store, db_path=db_path)


@db_app.command("delete-session")
def db_delete_session(
    session_id: str,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete a session and everything recorded in it."""
    db_delete_session_cmd(store_from_path=_store, db_path=db_path, session_id=session_id, yes=yes)


@app.command("version")
def version() -> None:
    """Print version."""
    print(__version__)


def main() -> None:
    try:
        app()
    except RecallError as exc:
        print(f"[red]{exc.kind}: {exc.message}[/red]")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
