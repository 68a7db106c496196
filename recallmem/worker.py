from __future__ import annotations

import logging
import os
import socket
import sqlite3
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from . import __version__
from .cache import QueryCache
from .capture import CapturePipeline
from .config import RecallConfig, load_config
from .db import default_db_path
from .dispatch import SummaryDispatcher
from .errors import (
    ConsistencyError,
    NotFoundError,
    RecallError,
    TransientIOError,
    ValidationError,
    from_sqlite_error,
)
from .payloads import StructuredPayload, TextPayload
from .service import MemoryService
from .store import MemoryStore
from .summarizer import build_summary_provider
from .worker_http import (
    MissingOriginPolicy,
    read_json_body,
    reject_cross_origin,
    send_json_response,
)
from .worker_routes import export as worker_routes_export
from .worker_routes import health as worker_routes_health
from .worker_routes import memory as worker_routes_memory
from .worker_routes import search as worker_routes_search
from .worker_routes import sessions as worker_routes_sessions
from .worker_routes import stats as worker_routes_stats
from .worker_tasks import RetentionSweeper

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[RecallError], int] = {
    ValidationError: 400,
    NotFoundError: 404,
    TransientIOError: 503,
    ConsistencyError: 500,
}


def status_for(exc: RecallError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


class WorkerServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        *,
        config: RecallConfig,
        db_path: Path | None = None,
        dispatcher: SummaryDispatcher | None = None,
    ) -> None:
        super().__init__(address, WorkerHandler)
        self.config = config
        self.db_path = db_path or default_db_path()
        self.cache = QueryCache(config.cache_ttl_s)
        self.dispatcher = dispatcher

    def open_store(self) -> MemoryStore:
        return MemoryStore(self.db_path, config=self.config)


class WorkerHandler(BaseHTTPRequestHandler):
    server: WorkerServer
    server_version = f"recallmem/{__version__}"

    def _send_json(self, payload: dict[str, Any], status: int = 200) -> None:
        send_json_response(self, StructuredPayload(data=payload).to_dict(), status=status)

    def _send_text(self, text: str, status: int = 200) -> None:
        send_json_response(self, TextPayload(text=text).to_dict(), status=status)

    def _reject_cross_origin(self, *, missing_origin_policy: MissingOriginPolicy = "reject_if_unsafe") -> bool:
        return reject_cross_origin(self, missing_origin_policy=missing_origin_policy)

    def _send_error(self, exc: RecallError) -> None:
        send_json_response(self, {"error": exc.message, "kind": exc.kind}, status=status_for(exc))

    def _send_not_found(self) -> None:
        send_json_response(self, {"error": "not found", "kind": "not_found"}, status=404)

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        if os.environ.get("RECALLMEM_WORKER_LOGS") == "1":
            super().log_message(format, *args)

    def _service(self, store: MemoryStore) -> MemoryService:
        pipeline = CapturePipeline(
            store, config=self.server.config, dispatcher=self.server.dispatcher
        )
        return MemoryService(
            store, self.server.config, cache=self.server.cache, pipeline=pipeline
        )

    def _dispatch(self, method: str) -> None:
        parsed = urlparse(self.path)
        store: MemoryStore | None = None
        try:
            payload: dict[str, Any] = {}
            if method == "POST":
                if self._reject_cross_origin():
                    return
                payload = read_json_body(self)
            elif method == "DELETE" and self._reject_cross_origin(missing_origin_policy="reject_if_unsafe"):
                return
            try:
                store = self.server.open_store()
            except sqlite3.Error as exc:
                if parsed.path == "/health":
                    self._send_json(
                        {
                            "status": "unavailable",
                            "version": __version__,
                            "store": {"reachable": False, "error": str(exc)},
                        },
                        status=503,
                    )
                    return
                raise from_sqlite_error(exc) from exc
            service = self._service(store)
            if self._route(method, service, parsed.path, parsed.query, payload):
                return
            self._send_not_found()
        except RecallError as exc:
            if status_for(exc) >= 500:
                logger.warning(
                    "request failed", extra={"path": parsed.path, "kind": exc.kind}, exc_info=exc
                )
            self._send_error(exc)
        except Exception as exc:
            logger.exception("request crashed", extra={"path": parsed.path}, exc_info=exc)
            payload_out: dict[str, Any] = {"error": "internal server error", "kind": "internal"}
            if os.environ.get("RECALLMEM_WORKER_DEBUG") == "1":
                payload_out["detail"] = str(exc)
            send_json_response(self, payload_out, status=500)
        finally:
            if store is not None:
                store.close()

    def _route(
        self,
        method: str,
        service: MemoryService,
        path: str,
        query: str,
        payload: dict[str, Any],
    ) -> bool:
        if method == "GET":
            return (
                worker_routes_health.handle_get(self, service, path, query)
                or worker_routes_search.handle_get(self, service, path, query)
                or worker_routes_export.handle_get(self, service, path, query)
                or worker_routes_stats.handle_get(self, service, path, query)
                or worker_routes_memory.handle_get(self, service, path, query)
            )
        if method == "POST":
            return worker_routes_memory.handle_post(
                self, service, path, payload
            ) or worker_routes_sessions.handle_post(self, service, path, payload)
        if method == "DELETE":
            return worker_routes_memory.handle_delete(self, service, path)
        return False

    def do_GET(self) -> None:  # noqa: N802
        self._dispatch("GET")

    def do_POST(self) -> None:  # noqa: N802
        self._dispatch("POST")

    def do_DELETE(self) -> None:  # noqa: N802
        self._dispatch("DELETE")


def port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.2)
        try:
            return sock.connect_ex((host, port)) == 0
        except OSError:
            return False


def build_server(
    config: RecallConfig, *, host: str | None = None, port: int | None = None
) -> WorkerServer:
    db_path = default_db_path()

    def store_factory() -> MemoryStore:
        return MemoryStore(db_path, config=config)

    dispatcher = SummaryDispatcher(
        store_factory, build_summary_provider(config), timeout_s=config.summary_timeout_s
    )
    return WorkerServer(
        (host or config.worker_host, config.worker_port if port is None else port),
        config=config,
        db_path=db_path,
        dispatcher=dispatcher,
    )


def _serve(server: WorkerServer) -> None:
    config = server.config
    sweeper = RetentionSweeper(server.open_store, config, cache=server.cache)
    sweeper.start()
    host, port = server.server_address[:2]
    logger.info("worker listening on http://%s:%s", host, port)
    try:
        server.serve_forever()
    finally:
        sweeper.stop()
        if server.dispatcher is not None:
            server.dispatcher.shutdown(wait=False)
        server.server_close()


def start_worker(
    config: RecallConfig | None = None,
    *,
    host: str | None = None,
    port: int | None = None,
    background: bool = False,
) -> WorkerServer | None:
    """Serve the HTTP API; returns None when something already listens there."""
    resolved = config or load_config()
    bind_host = host or resolved.worker_host
    bind_port = resolved.worker_port if port is None else port
    if port_in_use(bind_host, bind_port):
        logger.info("worker already running on %s:%s", bind_host, bind_port)
        return None
    server = build_server(resolved, host=bind_host, port=bind_port)
    if background:
        thread = threading.Thread(target=_serve, args=(server,), daemon=True)
        thread.start()
    else:
        _serve(server)
    return server
