from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Literal

from .errors import NotFoundError
from .store import MemoryStore
from .summarizer import SummaryProvider

logger = logging.getLogger(__name__)

SUMMARIZE_MESSAGE = "summarize"


@dataclass
class DispatchOutcome:
    status: Literal["written", "deferred", "skipped"]
    summary_id: int | None = None
    pending_id: int | None = None
    error: str | None = None


def write_summary(
    store: MemoryStore,
    provider: SummaryProvider,
    content_session_id: str,
    observation_ids: Sequence[int],
) -> int:
    observations = store.get_many(observation_ids)
    if not observations:
        raise NotFoundError(f"no observations left to summarize for {content_session_id}")
    summary = provider.summarize(observations)
    return store.add_summary(content_session_id, summary)


class SummaryDispatcher:
    """Runs session summaries off the caller's thread.

    A provider failure or a call that outlives ``timeout_s`` is recorded as a
    pending ``summarize`` message for the retry worker instead of being lost.
    """

    def __init__(
        self,
        store_factory: Callable[[], MemoryStore],
        provider: SummaryProvider,
        *,
        timeout_s: float = 30.0,
        max_workers: int = 2,
    ) -> None:
        self.store_factory = store_factory
        self.provider = provider
        self.timeout_s = timeout_s
        self._jobs = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="summary-job")
        self._calls = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="summary-call")

    def submit(self, content_session_id: str, observation_ids: Sequence[int]) -> Future[DispatchOutcome]:
        return self._jobs.submit(self._run, content_session_id, list(observation_ids))

    def _run(self, content_session_id: str, observation_ids: list[int]) -> DispatchOutcome:
        store = self.store_factory()
        try:
            session = store.get_session(content_session_id)
            if session is None:
                return DispatchOutcome(status="skipped", error="session no longer exists")
            observations = store.get_many(observation_ids)
            if not observations:
                return DispatchOutcome(status="skipped", error="no observations")
            call = self._calls.submit(self.provider.summarize, observations)
            try:
                summary = call.result(timeout=self.timeout_s)
            except FutureTimeoutError:
                return self._defer(store, session.id, content_session_id, observation_ids, "timeout")
            except Exception as exc:
                logger.warning(
                    "summary provider failed; deferring",
                    extra={"session": content_session_id, "provider": self.provider.name},
                    exc_info=exc,
                )
                return self._defer(store, session.id, content_session_id, observation_ids, str(exc))
            summary_id = store.add_summary(content_session_id, summary)
            logger.info("wrote summary %s for session %s", summary_id, content_session_id)
            return DispatchOutcome(status="written", summary_id=summary_id)
        finally:
            store.close()

    def _defer(
        self,
        store: MemoryStore,
        session_db_id: int,
        content_session_id: str,
        observation_ids: list[int],
        error: str,
    ) -> DispatchOutcome:
        pending_id = store.enqueue_pending(
            session_db_id,
            SUMMARIZE_MESSAGE,
            {
                "content_session_id": content_session_id,
                "observation_ids": observation_ids,
                "first_error": error,
            },
        )
        return DispatchOutcome(status="deferred", pending_id=pending_id, error=error)

    def shutdown(self, wait: bool = True) -> None:
        self._jobs.shutdown(wait=wait)
        self._calls.shutdown(wait=False, cancel_futures=True)
