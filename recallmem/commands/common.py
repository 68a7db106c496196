from __future__ import annotations

import contextlib
import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import typer
from rich import print

from ..config import RecallConfig, load_config
from ..db import default_db_path
from ..errors import RecallError
from ..store import MemoryStore
from ..utils import resolve_project


def load_config_or_exit() -> RecallConfig:
    try:
        return load_config()
    except RecallError as exc:
        print(f"[red]Invalid config: {exc.message}[/red]")
        raise typer.Exit(code=1) from exc


def store_from_path(db_path: str | None, config: RecallConfig | None = None) -> MemoryStore:
    return MemoryStore(
        Path(db_path) if db_path else default_db_path(),
        config=config or load_config_or_exit(),
    )


def resolve_project_for_cli(cwd: str, project: str | None, *, all_projects: bool = False) -> str | None:
    if all_projects:
        return None
    return resolve_project(cwd, project)


@contextlib.contextmanager
def exit_on_error() -> Iterator[None]:
    """Render domain errors as a red line and exit 1 instead of a traceback."""
    try:
        yield
    except RecallError as exc:
        print(f"[red]{exc.kind}: {exc.message}[/red]")
        raise typer.Exit(code=1) from exc


def print_json(data: Any) -> None:
    typer.echo(json.dumps(data, ensure_ascii=False, indent=2))
