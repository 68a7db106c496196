from __future__ import annotations

import enum
import json
import logging
import sys
import threading
from collections.abc import Callable
from typing import IO, Any

from . import __version__
from .errors import NotFoundError, RecallError, ValidationError
from .payloads import Payload, StructuredPayload, TextPayload
from .service import MemoryService

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
NOT_INITIALIZED = -32002
MEMORY_NOT_FOUND = -32001

SERVER_NAME = "recallmem"


class ConnectionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


class RpcError(Exception):
    def __init__(self, code: int, message: str, kind: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.kind:
            error["data"] = {"kind": self.kind}
        return error


def _required_str(params: dict[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise RpcError(INVALID_PARAMS, f"missing required param: {name}", "validation")
    return value


def _optional_int(params: dict[str, Any], name: str, default: int | None) -> int | None:
    value = params.get(name, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise RpcError(INVALID_PARAMS, f"{name} must be an integer", "validation")
    return value


def _optional_str(params: dict[str, Any], name: str) -> str | None:
    value = params.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise RpcError(INVALID_PARAMS, f"{name} must be a string", "validation")
    return value


def _response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error_response(request_id: Any, error: RpcError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()}


class RpcConnection:
    """One JSON-RPC 2.0 peer and its lifecycle.

    Only ``initialize`` is accepted until it succeeds. ``shutdown`` waits for
    in-flight calls to finish and every request after it is rejected.
    """

    def __init__(self, service: MemoryService) -> None:
        self.service = service
        self.state = ConnectionState.UNINITIALIZED
        self._inflight = 0
        self._cond = threading.Condition()
        self._methods: dict[str, Callable[[dict[str, Any]], Payload]] = {
            "recall_context": self._recall_context,
            "search_memories": self._search_memories,
            "save_memory": self._save_memory,
            "get_memory": self._get_memory,
            "timeline": self._timeline,
        }

    # transport entry points

    def handle_line(self, line: str) -> dict[str, Any] | None:
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            return _error_response(None, RpcError(PARSE_ERROR, f"parse error: {exc.msg}"))
        return self.handle(request)

    def handle(self, request: Any) -> dict[str, Any] | None:
        request_id = request.get("id") if isinstance(request, dict) else None
        try:
            result = self._dispatch(request)
        except RpcError as exc:
            if isinstance(request, dict) and "id" not in request:
                return None
            return _error_response(request_id, exc)
        if "id" not in request:
            return None
        return _response(request_id, result)

    def close(self) -> None:
        with self._cond:
            while self._inflight:
                self._cond.wait()
            self.state = ConnectionState.CLOSED

    # dispatch

    def _dispatch(self, request: Any) -> Any:
        if not isinstance(request, dict) or request.get("jsonrpc") != "2.0":
            raise RpcError(INVALID_REQUEST, "invalid request")
        method = request.get("method")
        if not isinstance(method, str) or not method:
            raise RpcError(INVALID_REQUEST, "invalid request: method is required")
        params = request.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise RpcError(INVALID_PARAMS, "params must be an object", "validation")

        with self._cond:
            state = self.state
            if state in (ConnectionState.SHUTTING_DOWN, ConnectionState.CLOSED):
                raise RpcError(INVALID_REQUEST, f"connection is {state.value}")
            if method == "initialize":
                if state is not ConnectionState.UNINITIALIZED:
                    raise RpcError(INVALID_REQUEST, "already initialized")
                self.state = ConnectionState.INITIALIZED
                return self._initialize_result()
            if state is ConnectionState.UNINITIALIZED:
                raise RpcError(NOT_INITIALIZED, "not initialized")
            if method == "shutdown":
                self.state = ConnectionState.SHUTTING_DOWN
                while self._inflight:
                    self._cond.wait()
                logger.info("rpc connection shutting down")
                return None
            handler = self._methods.get(method)
            if handler is None:
                raise RpcError(METHOD_NOT_FOUND, f"method not found: {method}")
            self.state = ConnectionState.SERVING
            self._inflight += 1

        try:
            return self._invoke(method, handler, params)
        finally:
            with self._cond:
                self._inflight -= 1
                self._cond.notify_all()

    def _invoke(
        self, method: str, handler: Callable[[dict[str, Any]], Payload], params: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            return handler(params).to_dict()
        except RpcError:
            raise
        except ValidationError as exc:
            raise RpcError(INVALID_PARAMS, exc.message, exc.kind) from exc
        except NotFoundError as exc:
            raise RpcError(MEMORY_NOT_FOUND, exc.message, exc.kind) from exc
        except RecallError as exc:
            logger.warning("rpc %s failed", method, extra={"kind": exc.kind}, exc_info=exc)
            raise RpcError(INTERNAL_ERROR, exc.message, exc.kind) from exc
        except Exception as exc:
            logger.exception("rpc %s crashed", method, exc_info=exc)
            raise RpcError(INTERNAL_ERROR, "internal error", "internal") from exc

    def _initialize_result(self) -> dict[str, Any]:
        return {
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "capabilities": {
                "memory": {"search": True, "recall": True, "save": True, "timeline": True},
                "version": __version__,
            },
        }

    # methods

    def _recall_context(self, params: dict[str, Any]) -> Payload:
        result = self.service.recall_context(
            _required_str(params, "context"),
            max_results=_optional_int(params, "max_results", 10) or 0,
            max_tokens=_optional_int(params, "max_tokens", None),
            project=_optional_str(params, "project"),
        )
        if params.get("format") == "text":
            return TextPayload(text=result["context"])
        return StructuredPayload(data=result)

    def _search_memories(self, params: dict[str, Any]) -> Payload:
        types = params.get("types")
        if types is not None and not (
            isinstance(types, list) and all(isinstance(item, str) for item in types)
        ):
            raise RpcError(INVALID_PARAMS, "types must be a list of strings", "validation")
        results = self.service.search_memories(
            _required_str(params, "query"),
            limit=_optional_int(params, "limit", 20) or 0,
            types=types,
            project=_optional_str(params, "project"),
        )
        return StructuredPayload(data={"results": results, "count": len(results)})

    def _save_memory(self, params: dict[str, Any]) -> Payload:
        metadata = params.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise RpcError(INVALID_PARAMS, "metadata must be an object", "validation")
        memory = self.service.save_memory(
            _required_str(params, "content"),
            _required_str(params, "type"),
            metadata=metadata,
            project=_optional_str(params, "project"),
            session_id=_optional_str(params, "session_id"),
        )
        return StructuredPayload(data={"memory": memory})

    def _get_memory(self, params: dict[str, Any]) -> Payload:
        observation_id = params.get("id")
        if isinstance(observation_id, bool) or not isinstance(observation_id, int):
            raise RpcError(INVALID_PARAMS, "missing required param: id", "validation")
        return StructuredPayload(data={"memory": self.service.get_memory(observation_id)})

    def _timeline(self, params: dict[str, Any]) -> Payload:
        items = self.service.timeline(
            project=_optional_str(params, "project"),
            days=_optional_int(params, "days", None),
        )
        return StructuredPayload(data={"items": items})


def serve_stdio(
    service: MemoryService,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> RpcConnection:
    """Newline-delimited JSON-RPC over a pair of text streams."""
    reader = stdin or sys.stdin
    writer = stdout or sys.stdout
    connection = RpcConnection(service)
    try:
        for line in reader:
            if not line.strip():
                continue
            response = connection.handle_line(line)
            if response is None:
                continue
            writer.write(json.dumps(response, ensure_ascii=False) + "\n")
            writer.flush()
    finally:
        connection.close()
    return connection
