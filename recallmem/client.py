from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from .config import RecallConfig
from .errors import (
    ConsistencyError,
    NotFoundError,
    ProviderError,
    RecallError,
    TransientIOError,
    ValidationError,
)
from .payloads import Payload, parse_payload
from .retry import RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)

_ERRORS_BY_KIND: dict[str, type[RecallError]] = {
    "validation": ValidationError,
    "not_found": NotFoundError,
    "transient_io": TransientIOError,
    "consistency": ConsistencyError,
}


def _error_from_response(response: httpx.Response) -> RecallError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = str(body.get("error") or f"HTTP {response.status_code}")
    kind = str(body.get("kind") or "")
    error_type = _ERRORS_BY_KIND.get(kind)
    if error_type is None:
        if response.status_code == 404:
            error_type = NotFoundError
        elif response.status_code == 400:
            error_type = ValidationError
        else:
            error_type = ProviderError
    return error_type(message, detail={"status": response.status_code})


def parse_response(response: httpx.Response) -> Payload:
    """Validate a successful worker body into the tagged payload union."""
    try:
        raw = response.json()
    except ValueError as exc:
        raise ProviderError(
            "worker returned a non-JSON body", detail={"status": response.status_code}
        ) from exc
    return parse_payload(raw)


class WorkerClient:
    """HTTP client for a running worker, for use by host integrations."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.BaseTransport | None = None,
        max_attempts: int = 3,
        delay_s: float = 0.5,
        timeout_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.policy = RetryPolicy(max_attempts=max_attempts, base_delay_s=delay_s)
        self.sleep = sleep
        self._http = httpx.Client(base_url=self.base_url, transport=transport, timeout=timeout_s)

    @classmethod
    def from_config(cls, config: RecallConfig, **kwargs: Any) -> WorkerClient:
        return cls(f"http://{config.worker_host}:{config.worker_port}", **kwargs)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> WorkerClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = self._http.request(method, path, **kwargs)
        if response.status_code >= 500 or response.status_code in (408, 429):
            response.raise_for_status()
        return response

    def request(self, method: str, path: str, **kwargs: Any) -> Payload:
        try:
            result = call_with_retry(
                lambda: self._send(method, path, **kwargs),
                self.policy,
                sleep=self.sleep,
                label=f"{method} {path}",
            )
        except TransientIOError as exc:
            if isinstance(exc.__cause__, httpx.ConnectError):
                raise TransientIOError(
                    f"service not started at {self.base_url}", detail=exc.detail
                ) from exc
            raise
        response = result.value
        if response.status_code >= 400:
            raise _error_from_response(response)
        return parse_response(response)

    # endpoints

    def health(self) -> Payload:
        return self.request("GET", "/health")

    def search(
        self,
        query: str,
        *,
        limit: int = 20,
        types: list[str] | None = None,
        project: str | None = None,
    ) -> Payload:
        params: dict[str, Any] = {"q": query, "limit": limit}
        if types:
            params["type"] = ",".join(types)
        if project:
            params["project"] = project
        return self.request("GET", "/api/search", params=params)

    def recall(
        self,
        context: str,
        *,
        max_results: int = 10,
        max_tokens: int | None = None,
        project: str | None = None,
    ) -> Payload:
        params: dict[str, Any] = {"context": context, "max_results": max_results}
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if project:
            params["project"] = project
        return self.request("GET", "/api/recall", params=params)

    def save(
        self,
        content: str,
        type: str,
        *,
        metadata: dict[str, Any] | None = None,
        project: str | None = None,
    ) -> Payload:
        body: dict[str, Any] = {"content": content, "type": type}
        if metadata:
            body["metadata"] = metadata
        if project:
            body["project"] = project
        return self.request("POST", "/api/memories", json=body)

    def timeline(self, *, project: str | None = None, days: int | None = None) -> Payload:
        params: dict[str, Any] = {}
        if project:
            params["project"] = project
        if days is not None:
            params["days"] = days
        return self.request("GET", "/api/timeline", params=params)

    def export(self, fmt: str = "json", *, project: str | None = None) -> Payload:
        params: dict[str, Any] = {"format": fmt}
        if project:
            params["project"] = project
        return self.request("GET", "/api/export", params=params)

    def start_session(self, session_id: str, project: str) -> Payload:
        return self.request(
            "POST", "/api/sessions/start", json={"session_id": session_id, "project": project}
        )

    def record_event(self, session_id: str, message: str, response: str = "") -> Payload:
        return self.request(
            "POST",
            "/api/sessions/event",
            json={"session_id": session_id, "message": message, "response": response},
        )

    def end_session(self, session_id: str) -> Payload:
        return self.request("POST", "/api/sessions/end", json={"session_id": session_id})
