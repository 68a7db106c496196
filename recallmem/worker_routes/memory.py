from __future__ import annotations

import re
from typing import Any, Protocol

from ..errors import ValidationError
from ..service import MemoryService

_MEMORY_PATH = re.compile(r"^/api/memories/(\d+)$")
_FAVORITE_PATH = re.compile(r"^/api/observations/(\d+)/favorite$")
_TAGS_PATH = re.compile(r"^/api/observations/(\d+)/tags$")


class _WorkerHandler(Protocol):
    def _send_json(self, payload: Any, status: int = 200) -> None: ...


def _optional_str(payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{name} must be a string")
    return value


def handle_get(handler: _WorkerHandler, service: MemoryService, path: str, query: str) -> bool:
    match = _MEMORY_PATH.match(path)
    if match:
        handler._send_json({"memory": service.get_memory(int(match.group(1)))})
        return True
    if path == "/api/tags":
        handler._send_json({"items": service.store.list_tags()})
        return True
    return False


def handle_post(
    handler: _WorkerHandler, service: MemoryService, path: str, payload: dict[str, Any]
) -> bool:
    if path == "/api/memories":
        metadata = payload.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be an object")
        memory = service.save_memory(
            payload.get("content"),  # type: ignore[arg-type]
            payload.get("type"),  # type: ignore[arg-type]
            metadata=metadata,
            project=_optional_str(payload, "project"),
            session_id=_optional_str(payload, "session_id"),
        )
        handler._send_json({"memory": memory}, status=201)
        return True

    match = _FAVORITE_PATH.match(path)
    if match:
        memory = service.set_favorite(int(match.group(1)), note=_optional_str(payload, "note"))
        handler._send_json({"memory": memory})
        return True

    match = _TAGS_PATH.match(path)
    if match:
        memory = service.tag_memory(int(match.group(1)), payload.get("tag"))  # type: ignore[arg-type]
        handler._send_json({"memory": memory})
        return True

    return False


def handle_delete(handler: _WorkerHandler, service: MemoryService, path: str) -> bool:
    match = _FAVORITE_PATH.match(path)
    if match:
        handler._send_json({"memory": service.clear_favorite(int(match.group(1)))})
        return True

    match = _MEMORY_PATH.match(path)
    if match:
        handler._send_json({"deleted": service.forget(int(match.group(1)))})
        return True

    return False
