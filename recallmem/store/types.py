from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, TypedDict


@dataclass
class ObservationResult:
    id: int
    display_id: str | None
    type: str
    title: str
    subtitle: str | None
    narrative: str
    facts: list[str]
    concepts: list[str]
    files_read: list[str]
    files_modified: list[str]
    project: str
    session_id: str
    memory_session_id: int
    prompt_number: int
    created_at: str
    created_at_epoch: int
    tokens_used: int
    is_favorite: bool
    score: float = 0.0
    tags: list[str] = field(default_factory=list)

    @property
    def content(self) -> str:
        return self.narrative or self.title

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRecord:
    id: int
    content_session_id: str
    project: str
    created_at: str
    created_at_epoch: int
    updated_at: str
    is_complete: bool
    prompt_count: int


@dataclass
class PruneReport:
    removed_by_age: int
    removed_by_count: int
    cutoff_epoch: int | None
    cutoff_iso: str | None
    dry_run: bool = False

    @property
    def removed(self) -> int:
        return self.removed_by_age + self.removed_by_count

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["removed"] = self.removed
        return payload


@dataclass
class ContextItem:
    observation_id: int
    type: str
    content: str
    tokens: int


@dataclass
class ContextBlock:
    text: str
    items: list[ContextItem]
    token_count: int
    skipped_duplicates: int = 0

    @property
    def empty(self) -> bool:
        return not self.items


class PendingMessage(TypedDict):
    id: int
    session_db_id: int
    message_type: str
    payload: dict[str, Any]
    created_at_epoch: int
    attempts: int
    status: str
    error: str | None
    next_attempt_epoch: int
