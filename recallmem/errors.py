from __future__ import annotations

import sqlite3
from typing import Any


class RecallError(Exception):
    """Base error carrying a machine-readable kind."""

    kind = "internal"

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class ValidationError(RecallError, ValueError):
    kind = "validation"


class NotFoundError(RecallError, LookupError):
    kind = "not_found"


class TransientIOError(RecallError):
    kind = "transient_io"


class ProviderError(RecallError):
    kind = "provider"


class ConsistencyError(RecallError):
    """The shadow index or a cascade invariant no longer holds.

    Raising this marks the store as unsafe for writes until it is repaired.
    """

    kind = "consistency"


class MigrationError(RecallError):
    kind = "migration"


def from_sqlite_error(exc: sqlite3.Error) -> RecallError:
    text = str(exc).lower()
    if isinstance(exc, sqlite3.OperationalError) and ("locked" in text or "busy" in text):
        return TransientIOError(f"store temporarily unavailable: {exc}")
    if isinstance(exc, sqlite3.IntegrityError):
        return ValidationError(f"constraint failed: {exc}")
    return RecallError(str(exc))
