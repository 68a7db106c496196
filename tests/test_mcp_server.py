from __future__ import annotations

from recallmem.config import RecallConfig
from recallmem.mcp_server import build_server


def test_build_server_names_itself() -> None:
    server = build_server(RecallConfig())
    assert server.name == "recallmem"
