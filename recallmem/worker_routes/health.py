from __future__ import annotations

from typing import Any, Protocol

from ..service import MemoryService


class _WorkerHandler(Protocol):
    def _send_json(self, payload: Any, status: int = 200) -> None: ...


def handle_get(handler: _WorkerHandler, service: MemoryService, path: str, query: str) -> bool:
    if path != "/health":
        return False
    payload = service.health()
    handler._send_json(payload, status=200 if payload["store"]["reachable"] else 503)
    return True
