from __future__ import annotations

import os
from dataclasses import asdict

import typer
from rich import print

from ..errors import NotFoundError
from ..service import MemoryService
from .common import exit_on_error, print_json


def search_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    query: str,
    limit: int,
    types: list[str] | None,
    project: str | None,
    all_projects: bool,
    as_json: bool = False,
) -> None:
    """Search observations by keyword and semantic recall."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
            results = store.search(query, limit, types=types or None, project=resolved_project)
    finally:
        store.close()
    if as_json:
        print_json([item.to_dict() for item in results])
        return
    if not results:
        print("No matching observations")
        return
    for item in results:
        print(f"[{item.id}] ({item.type}) {item.title}\n{item.narrative}\nscore={item.score:.2f}\n")


def recall_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    context: str,
    max_results: int,
    max_tokens: int | None,
    project: str | None,
    all_projects: bool,
    as_json: bool = False,
) -> None:
    """Print the context block that would be injected for ``context``."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
            result = MemoryService(store, store.config).recall_context(
                context, max_results=max_results, max_tokens=max_tokens, project=resolved_project
            )
    finally:
        store.close()
    if as_json:
        print_json(result)
        return
    if not result["context"]:
        print("No relevant memories")
        return
    # Bypass rich markup: "- [type]" lines would be read as style tags.
    typer.echo(result["context"])
    print(f"[dim]~{result['token_count']} tokens, {len(result['memories'])} memories[/dim]")


def remember_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    type: str,
    content: str,
    title: str | None,
    tags: list[str] | None,
    project: str | None,
) -> None:
    """Manually add an observation."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=False)
            metadata: dict[str, object] = {}
            if title:
                metadata["title"] = title
            if tags:
                metadata["tags"] = list(tags)
            memory = MemoryService(store, store.config).save_memory(
                content, type, metadata=metadata, project=resolved_project
            )
    finally:
        store.close()
    print(f"Stored observation {memory['id']} ({memory['type']}) in {memory['project']}")


def show_cmd(*, store_from_path, db_path: str | None, observation: str) -> None:
    """Print an observation, by numeric id or ``obs_`` display id, as JSON."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            if observation.isdigit():
                item = store.require_observation(int(observation))
            else:
                found = store.get_by_display_id(observation)
                if found is None:
                    raise NotFoundError(f"unknown observation: {observation}")
                item = found
    finally:
        store.close()
    print_json(item.to_dict())


def forget_cmd(*, store_from_path, db_path: str | None, observation_id: int) -> None:
    """Delete an observation together with its tags and favorite."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            store.require_observation(observation_id)
            store.delete_observation(observation_id)
    finally:
        store.close()
    print(f"Deleted observation {observation_id}")


def timeline_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    project: str | None,
    all_projects: bool,
    days: int | None,
    limit: int,
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
            items = store.timeline(project=resolved_project, days=days, limit=limit)
    finally:
        store.close()
    if not items:
        print("Nothing recorded yet")
        return
    for item in items:
        stamp = str(item.get("created_at") or "")[:16].replace("T", " ")
        if item["kind"] == "summary":
            text = item.get("completed") or item.get("learned") or item.get("notes") or ""
            print(f"{stamp}  [bold]summary[/bold] {item['session_id']}: {text}")
        else:
            print(f"{stamp}  [{item['id']}] ({item['type']}) {item['title']}")


def favorite_cmd(
    *, store_from_path, db_path: str | None, observation_id: int, note: str | None
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            store.set_favorite(observation_id, note=note)
    finally:
        store.close()
    print(f"Observation {observation_id} marked as favorite")


def unfavorite_cmd(*, store_from_path, db_path: str | None, observation_id: int) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            store.require_observation(observation_id)
            removed = store.clear_favorite(observation_id)
    finally:
        store.close()
    if removed:
        print(f"Observation {observation_id} is no longer a favorite")
    else:
        print(f"Observation {observation_id} was not a favorite")


def tag_cmd(
    *,
    store_from_path,
    db_path: str | None,
    observation_id: int,
    tag: str,
    remove: bool,
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            store.require_observation(observation_id)
            if remove:
                changed = store.untag_observation(observation_id, tag)
            else:
                changed = store.tag_observation(observation_id, tag)
    finally:
        store.close()
    action = "Removed" if remove else "Added"
    suffix = "" if changed else " (no change)"
    print(f"{action} tag {tag!r} on observation {observation_id}{suffix}")


def tags_cmd(
    *,
    store_from_path,
    db_path: str | None,
    create: str | None = None,
    color: str | None = None,
    description: str | None = None,
) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            if create:
                store.create_tag(create, color=color, description=description)
                print(f"Saved tag {create!r}")
            tags = store.list_tags()
    finally:
        store.close()
    if not tags:
        print("No tags defined")
        return
    for tag in tags:
        description = f" - {tag['description']}" if tag.get("description") else ""
        print(f"{tag['name']} ({tag['observation_count']}){description}")


def favorites_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    project: str | None,
    all_projects: bool,
) -> None:
    store = store_from_path(db_path)
    try:
        resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
        favorites = store.list_favorites(project=resolved_project)
    finally:
        store.close()
    if not favorites:
        print("No favorites")
        return
    for item in favorites:
        note = f" - {item['note']}" if item.get("note") else ""
        typer.echo(f"#{item['id']} [{item['type']}] {item['title']}{note}")


def tag_session_cmd(*, store_from_path, db_path: str | None, session_id: str, tag: str) -> None:
    store = store_from_path(db_path)
    try:
        with exit_on_error():
            changed = store.tag_session(session_id, tag)
    finally:
        store.close()
    suffix = "" if changed else " (no change)"
    print(f"Added tag {tag!r} on session {session_id}{suffix}")


def sessions_cmd(
    *,
    store_from_path,
    resolve_project,
    db_path: str | None,
    project: str | None,
    all_projects: bool,
    limit: int,
    as_json: bool = False,
) -> None:
    """List recent sessions, newest first."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            resolved_project = resolve_project(os.getcwd(), project, all_projects=all_projects)
            sessions = store.list_sessions(project=resolved_project, limit=limit)
    finally:
        store.close()
    if as_json:
        print_json([asdict(session) for session in sessions])
        return
    if not sessions:
        print("No sessions")
        return
    for session in sessions:
        state = "complete" if session.is_complete else "open"
        stamp = session.created_at[:16].replace("T", " ")
        typer.echo(
            f"{stamp}  {session.content_session_id} ({session.project}) "
            f"{session.prompt_count} prompts, {state}"
        )
