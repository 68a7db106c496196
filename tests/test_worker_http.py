from __future__ import annotations

import io
import json
import threading
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from recallmem.config import RecallConfig
from recallmem.errors import ConsistencyError, NotFoundError, TransientIOError, ValidationError
from recallmem.payloads import StructuredPayload, TextPayload, parse_payload
from recallmem.worker import WorkerServer, status_for
from recallmem.worker_http import (
    is_loopback_origin,
    query_int,
    query_list,
    read_json_body,
    reject_cross_origin,
    send_json_response,
)


class DummyHandler:
    def __init__(self, body: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.headers = headers or {}
        self.rfile = io.BytesIO(body)
        self.wfile = io.BytesIO()
        self.status: int | None = None
        self.response_headers: list[tuple[str, str]] = []
        self.headers_ended = False

    def send_response(self, status: int) -> None:
        self.status = status

    def send_header(self, key: str, value: str) -> None:
        self.response_headers.append((key, value))

    def end_headers(self) -> None:
        self.headers_ended = True


def _header_value(handler: DummyHandler, name: str) -> str | None:
    for key, value in handler.response_headers:
        if key == name:
            return value
    return None


def test_send_json_response() -> None:
    handler = DummyHandler()
    payload = {"ok": True, "count": 2}
    expected_body = json.dumps(payload, ensure_ascii=False).encode("utf-8")

    send_json_response(handler, payload, status=201)

    assert handler.status == 201
    assert _header_value(handler, "Content-Type") == "application/json; charset=utf-8"
    assert _header_value(handler, "Content-Length") == str(len(expected_body))
    assert handler.headers_ended is True
    assert handler.wfile.getvalue() == expected_body


def test_read_json_body() -> None:
    body = b'{"content": "hi"}'
    handler = DummyHandler(body, {"Content-Length": str(len(body))})
    assert read_json_body(handler) == {"content": "hi"}
    assert read_json_body(DummyHandler()) == {}


def test_read_json_body_rejects_bad_input() -> None:
    for body in (b"{oops", b"[1, 2]"):
        handler = DummyHandler(body, {"Content-Length": str(len(body))})
        with pytest.raises(ValidationError):
            read_json_body(handler)


def test_is_loopback_origin() -> None:
    assert is_loopback_origin("http://127.0.0.1:37777")
    assert is_loopback_origin("http://localhost")
    assert not is_loopback_origin("https://127.0.0.1")
    assert not is_loopback_origin("http://evil.example")
    assert not is_loopback_origin("http://user@localhost")


def test_reject_cross_origin() -> None:
    allowed = DummyHandler(headers={"Origin": "http://127.0.0.1:37777"})
    assert reject_cross_origin(allowed) is False
    assert allowed.status is None

    blocked = DummyHandler(headers={"Origin": "http://evil.example"})
    assert reject_cross_origin(blocked) is True
    assert blocked.status == 403
    assert json.loads(blocked.wfile.getvalue()) == {"error": "forbidden", "kind": "forbidden"}

    assert reject_cross_origin(DummyHandler()) is False
    assert reject_cross_origin(DummyHandler(headers={"Sec-Fetch-Site": "cross-site"})) is True
    assert reject_cross_origin(DummyHandler(), missing_origin_policy="reject") is True


def test_query_helpers() -> None:
    params = {"limit": ["5"], "type": ["decision,learning", "issue"], "bad": ["x"], "neg": ["-1"]}
    assert query_int(params, "limit", 20) == 5
    assert query_int(params, "missing", 20) == 20
    assert query_list(params, "type") == ["decision", "learning", "issue"]
    assert query_list(params, "missing") is None
    with pytest.raises(ValidationError):
        query_int(params, "bad", None)
    with pytest.raises(ValidationError):
        query_int(params, "neg", None)


def test_status_for() -> None:
    assert status_for(ValidationError("x")) == 400
    assert status_for(NotFoundError("x")) == 404
    assert status_for(TransientIOError("x")) == 503
    assert status_for(ConsistencyError("x")) == 500


def _data(response: httpx.Response) -> dict:
    payload = parse_payload(response.json())
    assert isinstance(payload, StructuredPayload)
    return payload.data


@pytest.fixture
def worker_url(tmp_path: Path) -> Iterator[str]:
    server = WorkerServer(("127.0.0.1", 0), config=RecallConfig(), db_path=tmp_path / "mem.sqlite")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        host, port = server.server_address[:2]
        yield f"http://{host}:{port}"
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


def test_worker_endpoints(worker_url: str) -> None:
    with httpx.Client(base_url=worker_url, timeout=5) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert _data(health)["store"]["reachable"] is True

        created = client.post(
            "/api/memories",
            json={"content": "Use ruff for linting", "type": "decision", "project": "proj"},
        )
        assert created.status_code == 201
        memory_id = _data(created)["memory"]["id"]

        search = client.get("/api/search", params={"q": "ruff", "project": "proj"})
        assert search.status_code == 200
        assert _data(search)["count"] == 1

        recall = client.get("/api/recall", params={"context": "linting ruff"})
        assert "- [decision] Use ruff for linting" in _data(recall)["context"]

        fetched = client.get(f"/api/memories/{memory_id}")
        assert _data(fetched)["memory"]["type"] == "decision"

        exported = client.get("/api/export", params={"format": "markdown"})
        assert exported.status_code == 200
        text = parse_payload(exported.json())
        assert isinstance(text, TextPayload)
        assert "Use ruff for linting" in text.text

        deleted = client.delete(f"/api/memories/{memory_id}")
        assert _data(deleted) == {"deleted": True}


def test_worker_error_statuses(worker_url: str) -> None:
    with httpx.Client(base_url=worker_url, timeout=5) as client:
        missing = client.get("/api/memories/999")
        assert missing.status_code == 404
        assert missing.json()["kind"] == "not_found"

        invalid = client.post("/api/memories", json={"content": "x", "type": "custom"})
        assert invalid.status_code == 400
        assert invalid.json()["kind"] == "validation"

        bad_limit = client.get("/api/search", params={"q": "x", "limit": "lots"})
        assert bad_limit.status_code == 400

        unknown = client.get("/api/nothing-here")
        assert unknown.status_code == 404

        forbidden = client.post(
            "/api/memories",
            json={"content": "x", "type": "decision"},
            headers={"Origin": "http://evil.example"},
        )
        assert forbidden.status_code == 403


def test_worker_session_lifecycle(worker_url: str) -> None:
    with httpx.Client(base_url=worker_url, timeout=5) as client:
        started = client.post("/api/sessions/start", json={"session_id": "s1", "project": "proj"})
        assert _data(started)["session_id"] == "s1"

        event = client.post(
            "/api/sessions/event",
            json={"session_id": "s1", "message": "I prefer small commits", "response": "ok"},
        )
        assert _data(event)["count"] == 1

        ended = client.post("/api/sessions/end", json={"session_id": "s1"})
        assert _data(ended) == {"session_id": "s1", "observation_count": 1, "summary": "skipped"}
