from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

import httpx

from .errors import ProviderError, TransientIOError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorClass = Literal["retry", "fail"]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 0.5
    max_delay_s: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")

    def delay_for(self, attempt: int) -> float:
        # Linear growth: base, 2*base, 3*base, ... capped.
        return min(self.max_delay_s, self.base_delay_s * attempt)


@dataclass
class RetryResult(Generic[T]):
    value: T
    attempts: int


def _status_code(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def classify_error(exc: BaseException) -> ErrorClass:
    """Split failures into retryable transport/server errors and the rest."""
    if isinstance(exc, (TransientIOError, ConnectionError, TimeoutError)):
        return "retry"
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return "retry"
    status = _status_code(exc)
    if status is not None:
        if status >= 500 or status in (408, 429):
            return "retry"
        return "fail"
    # SDK connection errors (openai/anthropic) expose no status code.
    if type(exc).__name__ in {"APIConnectionError", "APITimeoutError"}:
        return "retry"
    return "fail"


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> RetryResult[T]:
    """Call ``fn`` until it succeeds or the attempt budget runs out.

    Retryable failures that exhaust the budget raise TransientIOError; client
    errors fail on the first attempt with ProviderError. Our own error types
    pass through unchanged.
    """
    resolved = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return RetryResult(value=fn(), attempts=attempt)
        except Exception as exc:
            kind = classify_error(exc)
            if kind == "fail":
                logger.warning("%s failed without retry", label, extra={"attempt": attempt})
                if isinstance(exc, (ProviderError, ValidationError)):
                    raise
                raise ProviderError(
                    f"{label} failed: {exc}",
                    detail={"attempts": attempt, "status": _status_code(exc)},
                ) from exc
            if attempt >= resolved.max_attempts:
                logger.warning(
                    "%s failed after %d attempts", label, attempt, extra={"error": str(exc)}
                )
                raise TransientIOError(
                    f"{label} failed after {attempt} attempts: {exc}",
                    detail={"attempts": attempt, "status": _status_code(exc)},
                ) from exc
            delay = resolved.delay_for(attempt)
            logger.info(
                "%s attempt %d failed; retrying in %.2fs", label, attempt, delay,
                extra={"error": str(exc)},
            )
            sleep(delay)
