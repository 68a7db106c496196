from __future__ import annotations

from typing import Protocol
from urllib.parse import parse_qs

from ..service import MemoryService
from ..worker_http import query_int, query_value


class _WorkerHandler(Protocol):
    def _send_text(self, text: str, status: int = 200) -> None: ...


def handle_get(handler: _WorkerHandler, service: MemoryService, path: str, query: str) -> bool:
    if path != "/api/export":
        return False
    params = parse_qs(query)
    fmt = (query_value(params, "format") or "json").lower()
    body = service.export(
        fmt,
        project=query_value(params, "project"),
        days=query_int(params, "days", None),
    )
    handler._send_text(body)
    return True
