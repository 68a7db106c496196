from __future__ import annotations

from typing import Any, Protocol

from ..service import MemoryService


class _WorkerHandler(Protocol):
    def _send_json(self, payload: Any, status: int = 200) -> None: ...


def handle_post(
    handler: _WorkerHandler, service: MemoryService, path: str, payload: dict[str, Any]
) -> bool:
    if path == "/api/sessions/start":
        handler._send_json(
            service.start_session(payload.get("session_id"), payload.get("project"))  # type: ignore[arg-type]
        )
        return True

    if path == "/api/sessions/event":
        saved = service.record_event(
            payload.get("session_id"),  # type: ignore[arg-type]
            payload.get("message") or "",
            payload.get("response") or "",
            project=payload.get("project"),
        )
        handler._send_json({"observations": saved, "count": len(saved)})
        return True

    if path == "/api/sessions/end":
        handler._send_json(service.end_session(payload.get("session_id")))  # type: ignore[arg-type]
        return True

    return False
