from __future__ import annotations

import json
from http.server import BaseHTTPRequestHandler
from typing import Any, Literal
from urllib.parse import urlparse

from .errors import ValidationError

_LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}

MissingOriginPolicy = Literal["allow", "reject", "reject_if_unsafe"]


def is_loopback_origin(url: str) -> bool:
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        _ = parsed.port
    except ValueError:
        return False
    if parsed.scheme != "http" or parsed.username is not None or parsed.password is not None:
        return False
    if hostname not in _LOOPBACK_HOSTS:
        return False
    return parsed.path in ("", "/") and not (parsed.params or parsed.query or parsed.fragment)


def _unsafe_without_origin(handler: BaseHTTPRequestHandler) -> bool:
    fetch_site = (handler.headers.get("Sec-Fetch-Site") or "").strip().lower()
    if fetch_site and fetch_site not in {"same-origin", "same-site", "none"}:
        return True
    referer = handler.headers.get("Referer")
    return bool(referer) and not is_loopback_origin(referer)


def send_json_response(handler: BaseHTTPRequestHandler, payload: Any, status: int = 200) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    """Parse the request body as a JSON object; an empty body is ``{}``."""
    length = int(handler.headers.get("Content-Length", "0") or 0)
    raw = handler.rfile.read(length).decode("utf-8") if length else ""
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid json body: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("json body must be an object")
    return payload


def reject_cross_origin(
    handler: BaseHTTPRequestHandler,
    *,
    missing_origin_policy: MissingOriginPolicy = "reject_if_unsafe",
) -> bool:
    """Send 403 and return True when a browser request comes from elsewhere."""
    origin = handler.headers.get("Origin")
    if origin:
        forbidden = not is_loopback_origin(origin)
    elif missing_origin_policy == "allow":
        forbidden = False
    elif missing_origin_policy == "reject":
        forbidden = True
    else:
        forbidden = _unsafe_without_origin(handler)
    if forbidden:
        send_json_response(handler, {"error": "forbidden", "kind": "forbidden"}, status=403)
    return forbidden


def query_value(params: dict[str, list[str]], name: str) -> str | None:
    values = params.get(name)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def query_int(params: dict[str, list[str]], name: str, default: int | None) -> int | None:
    value = query_value(params, name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {value!r}") from exc
    if parsed < 0:
        raise ValidationError(f"{name} must be >= 0")
    return parsed


def query_list(params: dict[str, list[str]], name: str) -> list[str] | None:
    items = [
        part.strip()
        for value in params.get(name, [])
        for part in value.split(",")
        if part.strip()
    ]
    return items or None
