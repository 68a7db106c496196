from __future__ import annotations

import csv
import io
import json
from typing import TYPE_CHECKING, Any

from .. import __version__
from ..errors import ValidationError
from . import utils as store_utils

if TYPE_CHECKING:
    from ._store import MemoryStore

EXPORT_FORMATS = ("json", "csv", "markdown")


def collect(store: MemoryStore, *, project: str | None = None, days: int | None = None) -> dict[str, Any]:
    if days is not None and days < 0:
        raise ValidationError("days must be >= 0")
    since_epoch = store_utils.now_epoch() - days * 86400 if days else None
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
    where = " AND ".join(clauses) if clauses else "1=1"
    rows = store.conn.execute(
        f"SELECT * FROM observations WHERE {where} ORDER BY created_at_epoch ASC, id ASC", params
    ).fetchall()
    observations = [store_utils.observation_from_row(row).to_dict() for row in rows]
    for item in observations:
        item.pop("score", None)
    summaries = list(
        reversed(store.list_summaries(project=project, since_epoch=since_epoch))
    )
    return {
        "exported_at": store._now_iso(),
        "version": __version__,
        "filters": {"project": project, "days": days},
        "observations": observations,
        "summaries": summaries,
    }


def render_json(data: dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2)


def render_csv(data: dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if data["observations"]:
        buffer.write("# Observations\n")
        writer.writerow(["id", "session_id", "type", "title", "project", "created_at"])
        for obs in data["observations"]:
            writer.writerow(
                [obs["id"], obs["session_id"], obs["type"], obs["title"], obs["project"], obs["created_at"]]
            )
        buffer.write("\n")
    if data["summaries"]:
        buffer.write("# Summaries\n")
        writer.writerow(["id", "session_id", "project", "created_at", "completed"])
        for summary in data["summaries"]:
            writer.writerow(
                [
                    summary["id"],
                    summary["session_id"],
                    summary["project"],
                    summary["created_at"],
                    summary.get("completed") or "",
                ]
            )
    return buffer.getvalue()


def render_markdown(data: dict[str, Any]) -> str:
    lines = ["# recallmem export", "", f"Exported: {data['exported_at']}"]
    filters = data["filters"]
    if filters.get("project"):
        lines.append(f"Project: {filters['project']}")
    if filters.get("days"):
        lines.append(f"Period: Last {filters['days']} days")
    lines.extend(["", "---", ""])
    if data["observations"]:
        lines.extend(["## Observations", ""])
        for obs in data["observations"]:
            lines.extend([f"### {obs['type']}: {obs['title']}", ""])
            if obs.get("subtitle"):
                lines.extend([f"*{obs['subtitle']}*", ""])
            lines.extend([obs["narrative"], ""])
            if obs["concepts"]:
                lines.extend([f"**Concepts:** {', '.join(obs['concepts'])}", ""])
            lines.extend([f"*{obs['project']} | {obs['created_at'][:10]}*", "", "---", ""])
    if data["summaries"]:
        lines.extend(["## Session Summaries", ""])
        for summary in data["summaries"]:
            lines.extend([f"### Session: {summary['session_id'][:8]}", ""])
            for key, label in (
                ("completed", "Completed"),
                ("learned", "Learned"),
                ("next_steps", "Next Steps"),
            ):
                if summary.get(key):
                    lines.extend([f"**{label}:**", summary[key], ""])
    return "\n".join(lines).rstrip() + "\n"


def export(store: MemoryStore, fmt: str, *, project: str | None = None, days: int | None = None) -> str:
    fmt = (fmt or "json").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"invalid export format {fmt!r}; expected one of {EXPORT_FORMATS}")
    data = collect(store, project=project, days=days)
    if fmt == "csv":
        return render_csv(data)
    if fmt == "markdown":
        return render_markdown(data)
    return render_json(data)
