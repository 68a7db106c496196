from __future__ import annotations

from collections.abc import Iterable
from typing import Final

from .errors import ValidationError

ALLOWED_OBSERVATION_TYPES: Final[tuple[str, ...]] = (
    "preference",
    "decision",
    "learning",
    "context",
    "discovery",
    "implementation",
    "issue",
)


def normalize_observation_type(kind: str) -> str:
    return (kind or "").strip().lower()


def validate_observation_type(kind: str, allowed: Iterable[str] | None = None) -> str:
    allowed_types = tuple(allowed) if allowed is not None else ALLOWED_OBSERVATION_TYPES
    normalized = normalize_observation_type(kind)
    if normalized in allowed_types:
        return normalized

    if normalized == "custom":
        raise ValidationError(
            f"Invalid observation type '{normalized}'. 'custom' is not supported; use 'context' instead. "
            f"Allowed types: {', '.join(allowed_types)}"
        )

    raise ValidationError(
        f"Invalid observation type '{normalized}'. Allowed types: {', '.join(allowed_types)}"
    )
