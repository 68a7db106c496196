from __future__ import annotations

import sys

import typer
from rich import print

from ..cache import QueryCache
from ..service import MemoryService
from ..worker import port_in_use, start_worker
from .common import exit_on_error


def serve_cmd(*, load_config, host: str | None, port: int | None) -> None:
    """Run the HTTP worker in the foreground."""

    config = load_config()
    bind_host = host or config.worker_host
    bind_port = config.worker_port if port is None else port
    if port_in_use(bind_host, bind_port):
        print(f"[yellow]Worker already running at http://{bind_host}:{bind_port}[/yellow]")
        return
    print(f"recallmem worker at http://{bind_host}:{bind_port}")
    with exit_on_error():
        start_worker(config, host=bind_host, port=bind_port, background=False)


def rpc_cmd(*, store_from_path, load_config, db_path: str | None) -> None:
    """Serve newline-delimited JSON-RPC on stdin/stdout."""
    from ..rpc import serve_stdio

    config = load_config()
    store = store_from_path(db_path, config)
    try:
        serve_stdio(MemoryService(store, config, cache=QueryCache(config.cache_ttl_s)))
    except KeyboardInterrupt:
        raise typer.Exit(code=0) from None
    finally:
        store.close()
        sys.stdout.flush()


def mcp_cmd() -> None:
    """Run the MCP server over stdio."""
    from ..mcp_server import run

    run()
