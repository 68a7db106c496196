from __future__ import annotations

import logging
import random
import re
import string
import threading
import time
from collections.abc import Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Literal, Protocol

from .config import RecallConfig
from .dispatch import DispatchOutcome, SummaryDispatcher
from .store import MemoryStore, ObservationResult, SessionRecord

logger = logging.getLogger(__name__)

PREFERENCE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"i prefer\s+(.+)", re.IGNORECASE),
    re.compile(r"i like\s+(.+)", re.IGNORECASE),
    re.compile(r"i always\s+(.+)", re.IGNORECASE),
    re.compile(r"i never\s+(.+)", re.IGNORECASE),
)
DECISION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"i'll\s+(.+)", re.IGNORECASE),
    re.compile(r"let's\s+(.+)", re.IGNORECASE),
    re.compile(r"we should\s+(.+)", re.IGNORECASE),
)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_display_id() -> str:
    """``obs_<epoch ms>_<9 base36 chars>``; a display handle, not a key."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"obs_{int(time.time() * 1000)}_{suffix}"


@dataclass
class ExtractedObservation:
    type: str
    narrative: str
    display_id: str = field(default_factory=generate_display_id)


class Extractor(Protocol):
    def extract(self, message_text: str, response_text: str) -> list[ExtractedObservation]: ...


class PreferenceExtractor:
    """Explicit self-statements in the user's message."""

    def __init__(self, patterns: Sequence[re.Pattern[str]] = PREFERENCE_PATTERNS) -> None:
        self.patterns = tuple(patterns)

    def extract(self, message_text: str, response_text: str) -> list[ExtractedObservation]:
        found: list[ExtractedObservation] = []
        for pattern in self.patterns:
            for match in pattern.finditer(message_text or ""):
                found.append(ExtractedObservation(type="preference", narrative=match.group(0)))
        return found


class DecisionExtractor:
    """Commitment phrasing in the assistant's response, within a length window."""

    def __init__(
        self,
        *,
        min_chars: int = 20,
        max_chars: int = 200,
        patterns: Sequence[re.Pattern[str]] = DECISION_PATTERNS,
    ) -> None:
        self.min_chars = min_chars
        self.max_chars = max_chars
        self.patterns = tuple(patterns)

    def extract(self, message_text: str, response_text: str) -> list[ExtractedObservation]:
        found: list[ExtractedObservation] = []
        for pattern in self.patterns:
            for match in pattern.finditer(response_text or ""):
                span = match.group(1)
                if self.min_chars <= len(span) <= self.max_chars:
                    found.append(ExtractedObservation(type="decision", narrative=match.group(0)))
        return found


def default_extractors(config: RecallConfig) -> list[Extractor]:
    return [
        PreferenceExtractor(),
        DecisionExtractor(min_chars=config.decision_min_chars, max_chars=config.decision_max_chars),
    ]


@dataclass
class SessionState:
    session: SessionRecord
    working_set: list[ObservationResult] = field(default_factory=list)
    captured_ids: list[int] = field(default_factory=list)


@dataclass
class SessionEndResult:
    content_session_id: str
    observation_count: int
    status: Literal["queued", "skipped"]
    future: Future[DispatchOutcome] | None = None


class CapturePipeline:
    def __init__(
        self,
        store: MemoryStore,
        *,
        config: RecallConfig,
        extractors: Sequence[Extractor] | None = None,
        dispatcher: SummaryDispatcher | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.extractors = list(extractors) if extractors is not None else default_extractors(config)
        self.dispatcher = dispatcher
        self._sessions: dict[str, SessionState] = {}
        self._lock = threading.Lock()

    def on_session_start(self, content_session_id: str, project: str) -> SessionState:
        session = self.store.start_session(content_session_id, project)
        working_set = self.store.recent(self.config.context_observations, project=session.project)
        with self._lock:
            state = self._sessions.get(content_session_id)
            if state is None:
                state = SessionState(session=session)
                self._sessions[content_session_id] = state
            state.session = session
            state.working_set = working_set
        logger.info(
            "session started: %s (%s), %d observations loaded",
            content_session_id,
            session.project,
            len(working_set),
        )
        return state

    def session_state(self, content_session_id: str) -> SessionState | None:
        with self._lock:
            return self._sessions.get(content_session_id)

    def _resume(self, content_session_id: str, project: str | None) -> SessionState:
        state = self.session_state(content_session_id)
        if state is not None:
            return state
        existing = self.store.get_session(content_session_id)
        resolved_project = project or (existing.project if existing else "")
        return self.on_session_start(content_session_id, resolved_project)

    def extract(self, message_text: str, response_text: str) -> list[ExtractedObservation]:
        found: list[ExtractedObservation] = []
        for extractor in self.extractors:
            found.extend(extractor.extract(message_text, response_text))
        return found

    def on_event(
        self,
        content_session_id: str,
        message_text: str,
        response_text: str,
        *,
        project: str | None = None,
    ) -> list[ObservationResult]:
        state = self._resume(content_session_id, project)
        prompt_number = self.store.record_prompt(content_session_id, message_text)
        saved: list[ObservationResult] = []
        for extracted in self.extract(message_text, response_text):
            saved.append(
                self.store.add_observation(
                    content_session_id,
                    type=extracted.type,
                    narrative=extracted.narrative,
                    display_id=extracted.display_id,
                    prompt_number=prompt_number,
                )
            )
        if saved:
            with self._lock:
                state.captured_ids.extend(item.id for item in saved)
                state.working_set = saved + state.working_set
            logger.info("saved %d observations for %s", len(saved), content_session_id)
        return saved

    def on_session_end(self, content_session_id: str) -> SessionEndResult:
        self.store.end_session(content_session_id)
        with self._lock:
            state = self._sessions.pop(content_session_id, None)
        captured = list(state.captured_ids) if state else []
        if not captured:
            captured = [item.id for item in self.store.session_observations(content_session_id)]
        result = SessionEndResult(
            content_session_id=content_session_id,
            observation_count=len(captured),
            status="skipped",
        )
        if len(captured) > self.config.summary_threshold and self.dispatcher is not None:
            result.future = self.dispatcher.submit(content_session_id, captured)
            result.status = "queued"
        logger.info(
            "session ended: %s (%d observations, summary %s)",
            content_session_id,
            len(captured),
            result.status,
        )
        return result
