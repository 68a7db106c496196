from __future__ import annotations

from rich import print

from ..summarizer import build_summary_provider
from ..worker_tasks import PendingMessageWorker
from .common import exit_on_error


def pending_cmd(
    *, store_from_path, db_path: str | None, status: str | None, limit: int
) -> None:
    """List queued summary retries."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            counts = store.pending_counts()
            messages = store.list_pending(status=status, limit=limit)
    finally:
        store.close()
    print(", ".join(f"{name}: {count}" for name, count in counts.items()))
    for message in messages:
        error = f" - {message['error']}" if message["error"] else ""
        print(
            f"[{message['id']}] {message['message_type']} status={message['status']} "
            f"attempts={message['attempts']}{error}"
        )


def pending_retry_cmd(
    *, store_from_path, db_path: str | None, ids: list[int] | None, run_now: bool
) -> None:
    """Move failed messages back to pending, optionally draining the queue once."""

    store = store_from_path(db_path)
    try:
        with exit_on_error():
            requeued = store.requeue_failed(ids or None)
            print(f"Requeued {requeued} failed messages")
            if not run_now:
                return
            worker = PendingMessageWorker(
                store,
                build_summary_provider(store.config),
                max_attempts=store.config.pending_max_attempts,
            )
            result = worker.tick()
    finally:
        store.close()
    print(
        f"Processed queue: {len(result.completed)} completed, "
        f"{len(result.retried)} retried, {len(result.failed)} failed"
    )
