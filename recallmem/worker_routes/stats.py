from __future__ import annotations

from typing import Any, Protocol

from ..service import MemoryService


class _WorkerHandler(Protocol):
    def _send_json(self, payload: Any, status: int = 200) -> None: ...


def handle_get(handler: _WorkerHandler, service: MemoryService, path: str, query: str) -> bool:
    if path == "/api/stats":
        handler._send_json(service.stats())
        return True
    if path == "/api/pending":
        store = service.store
        handler._send_json(
            {"counts": store.pending_counts(), "items": store.list_pending(limit=50)}
        )
        return True
    return False
