from __future__ import annotations

from ._store import MemoryStore
from .context import build_context
from .search import SearchWeights
from .types import (
    ContextBlock,
    ContextItem,
    ObservationResult,
    PendingMessage,
    PruneReport,
    SessionRecord,
)
from .vectors import SimilarityBackend

__all__ = [
    "ContextBlock",
    "ContextItem",
    "MemoryStore",
    "ObservationResult",
    "PendingMessage",
    "PruneReport",
    "SearchWeights",
    "SessionRecord",
    "SimilarityBackend",
    "build_context",
]
