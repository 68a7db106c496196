from __future__ import annotations

import logging
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from .cache import QueryCache
from .config import RecallConfig
from .dispatch import SUMMARIZE_MESSAGE, write_summary
from .store import MemoryStore, PruneReport
from .summarizer import SummaryProvider, build_summary_provider

logger = logging.getLogger(__name__)


@dataclass
class PendingTickResult:
    completed: list[int] = field(default_factory=list)
    retried: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class PendingMessageWorker:
    """Drains due pending messages; one attempt per message per tick."""

    def __init__(
        self,
        store: MemoryStore,
        provider: SummaryProvider,
        *,
        max_attempts: int = 5,
        batch_size: int = 10,
    ) -> None:
        self.store = store
        self.provider = provider
        self.max_attempts = max_attempts
        self.batch_size = batch_size

    def tick(self, *, now: int | None = None) -> PendingTickResult:
        result = PendingTickResult()
        for message in self.store.due_pending(limit=self.batch_size, now=now):
            try:
                if message["message_type"] != SUMMARIZE_MESSAGE:
                    raise ValueError(f"unsupported message type: {message['message_type']}")
                payload = message["payload"]
                write_summary(
                    self.store,
                    self.provider,
                    str(payload.get("content_session_id") or ""),
                    [int(item) for item in payload.get("observation_ids") or []],
                )
            except Exception as exc:
                status = self.store.fail_pending(
                    message["id"], str(exc) or type(exc).__name__, max_attempts=self.max_attempts
                )
                logger.warning(
                    "pending message attempt failed",
                    extra={"pending_id": message["id"], "status": status},
                    exc_info=exc,
                )
                if status == "failed":
                    result.failed.append(message["id"])
                else:
                    result.retried.append(message["id"])
                continue
            self.store.complete_pending(message["id"])
            result.completed.append(message["id"])
        if result.completed or result.failed:
            logger.info(
                "pending messages: %d completed, %d retried, %d failed",
                len(result.completed),
                len(result.retried),
                len(result.failed),
            )
        return result


class RetentionSweeper:
    def __init__(
        self,
        store_factory: Callable[[], MemoryStore],
        config: RecallConfig,
        provider: SummaryProvider | None = None,
        *,
        cache: QueryCache | None = None,
    ) -> None:
        self.store_factory = store_factory
        self.config = config
        self.provider = provider
        self.cache = cache
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def _provider(self) -> SummaryProvider:
        if self.provider is None:
            self.provider = build_summary_provider(self.config)
        return self.provider

    def tick(self) -> tuple[PruneReport, PendingTickResult]:
        store = self.store_factory()
        try:
            report = store.prune(
                retention_days=self.config.retention_days,
                max_observations=self.config.retention_max_observations,
            )
            if report.removed and self.cache is not None:
                self.cache.clear()
            pending = PendingMessageWorker(
                store, self._provider(), max_attempts=self.config.pending_max_attempts
            ).tick()
            return report, pending
        finally:
            store.close()

    def _safe_tick(self) -> None:
        try:
            self.tick()
        except Exception as exc:
            logger.exception("retention sweep failed", exc_info=exc)
            if not logging.getLogger().hasHandlers():
                print(f"recallmem: retention sweep failed: {exc}", file=sys.stderr)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="retention-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        interval = max(1, self.config.retention_interval_s)
        self._safe_tick()
        while not self._stop.wait(interval):
            self._safe_tick()
