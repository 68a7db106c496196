from __future__ import annotations

from pathlib import Path

import pytest

from recallmem.config import CONFIG_ENV_OVERRIDES, RecallConfig
from recallmem.store import MemoryStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for env_var in CONFIG_ENV_OVERRIDES.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("RECALLMEM_WORKER_DEBUG", raising=False)
    monkeypatch.setenv("RECALLMEM_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("RECALLMEM_DB", str(tmp_path / "mem.sqlite"))
    monkeypatch.setenv("RECALLMEM_EMBEDDING_DISABLED", "1")
    monkeypatch.setenv("RECALLMEM_PROJECT", "testproj")


@pytest.fixture
def store(tmp_path: Path):
    store = MemoryStore(tmp_path / "mem.sqlite", similarity=None, config=RecallConfig())
    try:
        yield store
    finally:
        store.close()
