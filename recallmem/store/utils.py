from __future__ import annotations

import datetime as dt
import math
import re
import sqlite3
import time
from typing import Any

from .. import db
from .types import ObservationResult, SessionRecord

_WHITESPACE_RE = re.compile(r"\s+")


def now_epoch() -> int:
    return int(time.time())


def iso_from_epoch(epoch: int | float) -> str:
    return dt.datetime.fromtimestamp(epoch, dt.UTC).isoformat()


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def normalize_content(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", (text or "").strip().lower())


def project_basename(value: str) -> str:
    normalized = value.replace("\\", "/").rstrip("/")
    if not normalized:
        return ""
    return normalized.split("/")[-1]


def project_column_clause(column_expr: str, project: str) -> tuple[str, list[Any]]:
    project = project.strip()
    if not project:
        return "", []
    value = project
    if "/" in project or "\\" in project:
        value = project_basename(project)
        if not value:
            return "", []
    return (
        f"({column_expr} = ? OR {column_expr} LIKE ? OR {column_expr} LIKE ?)",
        [value, f"%/{value}", f"%\\{value}"],
    )


def type_column_clause(column_expr: str, types: list[str] | None) -> tuple[str, list[Any]]:
    if not types:
        return "", []
    placeholders = ",".join("?" for _ in types)
    return f"{column_expr} IN ({placeholders})", list(types)


def observation_from_row(row: sqlite3.Row, score: float = 0.0) -> ObservationResult:
    keys = row.keys()
    return ObservationResult(
        id=int(row["id"]),
        display_id=row["display_id"] if "display_id" in keys else None,
        type=row["type"],
        title=row["title"] or "",
        subtitle=row["subtitle"],
        narrative=row["narrative"] or "",
        facts=db.json_list(row["facts"]),
        concepts=db.json_list(row["concepts"]),
        files_read=db.json_list(row["files_read"]),
        files_modified=db.json_list(row["files_modified"]),
        project=row["project"],
        session_id=row["session_id"],
        memory_session_id=int(row["memory_session_id"]),
        prompt_number=int(row["prompt_number"] or 1),
        created_at=row["created_at"] or "",
        created_at_epoch=int(row["created_at_epoch"] or 0),
        tokens_used=int(row["tokens_used"] or 0),
        is_favorite=bool(row["is_favorite"]),
        score=score,
    )


def session_from_row(row: sqlite3.Row) -> SessionRecord:
    return SessionRecord(
        id=int(row["id"]),
        content_session_id=row["content_session_id"],
        project=row["project"],
        created_at=row["created_at"] or "",
        created_at_epoch=int(row["created_at_epoch"] or 0),
        updated_at=row["updated_at"] or "",
        is_complete=bool(row["is_complete"]),
        prompt_count=int(row["prompt_count"] or 0),
    )
