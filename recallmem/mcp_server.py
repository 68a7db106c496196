from __future__ import annotations

import atexit
import os
import threading
import weakref
from collections.abc import Callable
from typing import Any, TypeVar

from mcp.server.fastmcp import FastMCP

from .cache import QueryCache
from .config import RecallConfig, load_config
from .db import default_db_path
from .errors import RecallError
from .service import MemoryService
from .store import MemoryStore
from .utils import resolve_project

T = TypeVar("T")


def build_server(config: RecallConfig | None = None) -> FastMCP:
    resolved = config or load_config()
    mcp = FastMCP("recallmem")
    default_project = resolve_project(os.getcwd())
    cache = QueryCache(resolved.cache_ttl_s)
    thread_local = threading.local()
    store_lock = threading.Lock()
    store_pool: weakref.WeakSet[MemoryStore] = weakref.WeakSet()

    def get_service() -> MemoryService:
        service = getattr(thread_local, "service", None)
        if service is None:
            store = MemoryStore(default_db_path(), config=resolved)
            service = MemoryService(store, resolved, cache=cache)
            thread_local.service = service
            with store_lock:
                store_pool.add(store)
        return service

    def close_all_stores() -> None:
        with store_lock:
            stores = list(store_pool)
        for store in stores:
            store.close()

    atexit.register(close_all_stores)

    def with_service(handler: Callable[[MemoryService], T]) -> T | dict[str, Any]:
        try:
            return handler(get_service())
        except RecallError as exc:
            return {"error": exc.message, "kind": exc.kind}

    @mcp.tool()
    def recall_context(
        context: str,
        max_results: int = 10,
        max_tokens: int | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Build a bounded block of remembered context relevant to ``context``."""
        return with_service(
            lambda service: service.recall_context(
                context,
                max_results=max_results,
                max_tokens=max_tokens,
                project=project or default_project,
            )
        )

    @mcp.tool()
    def search_memories(
        query: str,
        limit: int = 20,
        types: list[str] | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Ranked search over stored observations."""

        def handler(service: MemoryService) -> dict[str, Any]:
            results = service.search_memories(
                query, limit=limit, types=types, project=project or default_project
            )
            return {"results": results, "count": len(results)}

        return with_service(handler)

    @mcp.tool()
    def save_memory(
        content: str,
        type: str,
        metadata: dict[str, Any] | None = None,
        project: str | None = None,
    ) -> dict[str, Any]:
        """Persist an observation (decision, preference, learning, ...)."""

        def handler(service: MemoryService) -> dict[str, Any]:
            memory = service.save_memory(
                content, type, metadata=metadata, project=project or default_project
            )
            return {"memory": memory}

        return with_service(handler)

    return mcp


def run() -> None:
    server = build_server()
    server.run()


if __name__ == "__main__":
    run()
