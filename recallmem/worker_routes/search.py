from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import parse_qs

from ..errors import ValidationError
from ..service import MemoryService
from ..worker_http import query_int, query_list, query_value


class _WorkerHandler(Protocol):
    def _send_json(self, payload: Any, status: int = 200) -> None: ...


def handle_get(handler: _WorkerHandler, service: MemoryService, path: str, query: str) -> bool:
    params = parse_qs(query)

    if path == "/api/search":
        results = service.search_memories(
            query_value(params, "q") or "",
            limit=query_int(params, "limit", 20) or 0,
            types=query_list(params, "type"),
            project=query_value(params, "project"),
        )
        handler._send_json({"results": results, "count": len(results)})
        return True

    if path == "/api/recall":
        context = query_value(params, "context") or query_value(params, "q")
        if not context:
            raise ValidationError("context is required")
        handler._send_json(
            service.recall_context(
                context,
                max_results=query_int(params, "max_results", 10) or 0,
                max_tokens=query_int(params, "max_tokens", None),
                project=query_value(params, "project"),
            )
        )
        return True

    if path == "/api/timeline":
        items = service.timeline(
            project=query_value(params, "project"),
            days=query_int(params, "days", None),
            limit=query_int(params, "limit", 200) or 0,
        )
        handler._send_json({"items": items})
        return True

    return False
