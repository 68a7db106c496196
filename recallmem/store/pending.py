from __future__ import annotations

import json
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from ..errors import NotFoundError, ValidationError
from . import utils as store_utils
from .types import PendingMessage

if TYPE_CHECKING:
    from ._store import MemoryStore

PENDING_STATUSES = ("pending", "sent", "failed")
RETRY_DELAY_S = 60
MAX_ERROR_CHARS = 2000


def _message_from_row(row: Any) -> PendingMessage:
    try:
        payload = json.loads(row["payload"] or "{}")
    except json.JSONDecodeError:
        payload = {}
    return PendingMessage(
        id=int(row["id"]),
        session_db_id=int(row["session_db_id"]),
        message_type=row["message_type"],
        payload=payload if isinstance(payload, dict) else {},
        created_at_epoch=int(row["created_at_epoch"] or 0),
        attempts=int(row["attempts"] or 0),
        status=row["status"],
        error=row["error"],
        next_attempt_epoch=int(row["next_attempt_epoch"] or 0),
    )


def enqueue(
    store: MemoryStore, session_db_id: int, message_type: str, payload: dict[str, Any]
) -> int:
    if not message_type:
        raise ValidationError("message_type is required")
    now = store_utils.now_epoch()
    with store.write_transaction() as conn:
        cur = conn.execute(
            """
            INSERT INTO pending_messages(
                session_db_id, message_type, payload, created_at_epoch, updated_at_epoch,
                attempts, status, next_attempt_epoch
            )
            VALUES (?, ?, ?, ?, ?, 0, 'pending', ?)
            """,
            (session_db_id, message_type, json.dumps(payload, ensure_ascii=False), now, now, now),
        )
        if cur.lastrowid is None:
            raise RuntimeError("Failed to enqueue pending message")
        return int(cur.lastrowid)


def due(store: MemoryStore, *, limit: int = 10, now: int | None = None) -> list[PendingMessage]:
    current = now if now is not None else store_utils.now_epoch()
    rows = store.conn.execute(
        """
        SELECT * FROM pending_messages
        WHERE status = 'pending' AND COALESCE(next_attempt_epoch, 0) <= ?
        ORDER BY next_attempt_epoch ASC, id ASC
        LIMIT ?
        """,
        (current, limit),
    ).fetchall()
    return [_message_from_row(row) for row in rows]


def complete(store: MemoryStore, message_id: int) -> None:
    with store.write_transaction() as conn:
        conn.execute("DELETE FROM pending_messages WHERE id = ?", (message_id,))


def record_failure(store: MemoryStore, message_id: int, error: str, *, max_attempts: int) -> str:
    """Count a failed attempt; returns the resulting status."""
    now = store_utils.now_epoch()
    with store.write_transaction() as conn:
        row = conn.execute(
            "SELECT attempts FROM pending_messages WHERE id = ?", (message_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError(f"unknown pending message: {message_id}")
        attempts = int(row["attempts"] or 0) + 1
        status = "failed" if attempts >= max_attempts else "pending"
        conn.execute(
            """
            UPDATE pending_messages
            SET attempts = ?, status = ?, error = ?, updated_at_epoch = ?, next_attempt_epoch = ?
            WHERE id = ?
            """,
            (
                attempts,
                status,
                error[:MAX_ERROR_CHARS],
                now,
                now + RETRY_DELAY_S * attempts,
                message_id,
            ),
        )
    return status


def list_messages(
    store: MemoryStore, *, status: str | None = None, limit: int = 50
) -> list[PendingMessage]:
    if status is not None and status not in PENDING_STATUSES:
        raise ValidationError(f"invalid status {status!r}; expected one of {PENDING_STATUSES}")
    if status:
        rows = store.conn.execute(
            "SELECT * FROM pending_messages WHERE status = ? ORDER BY id DESC LIMIT ?",
            (status, limit),
        ).fetchall()
    else:
        rows = store.conn.execute(
            "SELECT * FROM pending_messages ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
    return [_message_from_row(row) for row in rows]


def counts(store: MemoryStore) -> dict[str, int]:
    rows = store.conn.execute(
        "SELECT status, COUNT(*) AS n FROM pending_messages GROUP BY status"
    ).fetchall()
    result = {status: 0 for status in PENDING_STATUSES}
    for row in rows:
        result[row["status"]] = int(row["n"])
    return result


def requeue_failed(store: MemoryStore, message_ids: Sequence[int] | None = None) -> int:
    now = store_utils.now_epoch()
    with store.write_transaction() as conn:
        if message_ids:
            ids = [int(item) for item in message_ids]
            placeholders = ",".join("?" for _ in ids)
            cur = conn.execute(
                f"""
                UPDATE pending_messages
                SET status = 'pending', attempts = 0, next_attempt_epoch = ?, updated_at_epoch = ?
                WHERE status = 'failed' AND id IN ({placeholders})
                """,
                [now, now, *ids],
            )
        else:
            cur = conn.execute(
                """
                UPDATE pending_messages
                SET status = 'pending', attempts = 0, next_attempt_epoch = ?, updated_at_epoch = ?
                WHERE status = 'failed'
                """,
                (now, now),
            )
        return cur.rowcount
