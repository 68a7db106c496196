from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Protocol

from .config import RecallConfig
from .errors import ProviderError, ValidationError
from .retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from .store.types import ObservationResult

logger = logging.getLogger(__name__)

SUMMARY_FIELDS = ("request", "investigated", "learned", "completed", "next_steps", "notes")
MAX_PROMPT_OBSERVATIONS = 60
MAX_NARRATIVE_CHARS = 400

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-4o-mini",
    "openrouter": "openai/gpt-4o-mini",
    "gemini": "gemini-2.5-flash-lite",
}
DEFAULT_BASE_URLS = {
    "openrouter": "https://openrouter.ai/api/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
}
API_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass
class Summary:
    request: str = ""
    investigated: str = ""
    learned: str = ""
    completed: str = ""
    next_steps: str = ""
    notes: str = ""

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Summary:
        return cls(**{key: str(data.get(key) or "").strip() for key in SUMMARY_FIELDS})


class SummaryProvider(Protocol):
    name: str

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary: ...


def build_prompt(observations: Sequence[ObservationResult]) -> str:
    lines = []
    for obs in observations[:MAX_PROMPT_OBSERVATIONS]:
        narrative = obs.narrative[:MAX_NARRATIVE_CHARS]
        lines.append(f"- [{obs.type}] {obs.title}: {narrative}")
    return (
        "Summarize this coding session from the observations captured during it. "
        "Return JSON with string keys: request (what the user asked for), investigated, "
        "learned, completed, next_steps, notes. Use empty strings when unknown.\n"
        "Observations:\n" + "\n".join(lines)
    )


def parse_summary(content: str) -> Summary:
    text = (content or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None
    if not isinstance(data, dict):
        if not text:
            raise ProviderError("summary provider returned an empty response")
        return Summary(notes=text)
    return Summary.from_dict(data)


class HeuristicSummaryProvider:
    """Offline summary built from observation types."""

    name = "heuristic"

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary:
        if not observations:
            raise ValidationError("no observations to summarize")
        by_type: dict[str, list[str]] = {}
        for obs in observations:
            by_type.setdefault(obs.type, []).append(obs.title or obs.narrative)

        def joined(*types: str) -> str:
            return "; ".join(item for kind in types for item in by_type.get(kind, []))

        counts = ", ".join(f"{kind}={len(items)}" for kind, items in sorted(by_type.items()))
        return Summary(
            request=joined("preference", "context"),
            investigated=joined("discovery"),
            learned=joined("learning"),
            completed=joined("decision", "implementation"),
            next_steps=joined("issue"),
            notes=f"{len(observations)} observations ({counts})",
        )


class AnthropicSummaryProvider:
    name = "anthropic"

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout_s: float,
        retry_policy: RetryPolicy | None = None,
        max_tokens: int = 800,
    ) -> None:
        try:
            import anthropic
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("anthropic package is required for anthropic summaries") from exc
        self.model = model
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = anthropic.Anthropic(api_key=api_key, timeout=timeout_s, max_retries=0)

    def _call(self, prompt: str) -> str:
        resp = self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system="You summarize coding sessions for a developer memory store.",
            messages=[{"role": "user", "content": prompt}],
        )
        return "".join(getattr(block, "text", "") for block in resp.content)

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary:
        prompt = build_prompt(observations)
        result = call_with_retry(
            lambda: self._call(prompt), self.retry_policy, label="anthropic summary"
        )
        return parse_summary(result.value)


class OpenAISummaryProvider:
    """OpenAI and OpenAI-compatible endpoints (openrouter, gemini)."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        timeout_s: float,
        base_url: str | None = None,
        name: str = "openai",
        retry_policy: RetryPolicy | None = None,
        max_tokens: int = 800,
    ) -> None:
        try:
            from openai import OpenAI
        except Exception as exc:  # pragma: no cover
            raise RuntimeError("openai package is required for openai summaries") from exc
        self.name = name
        self.model = model
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=0)

    def _call(self, prompt: str) -> str:
        resp = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "system",
                    "content": "You summarize coding sessions for a developer memory store.",
                },
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=0,
        )
        return resp.choices[0].message.content or ""

    def summarize(self, observations: Sequence[ObservationResult]) -> Summary:
        prompt = build_prompt(observations)
        result = call_with_retry(
            lambda: self._call(prompt), self.retry_policy, label=f"{self.name} summary"
        )
        return parse_summary(result.value)


def build_summary_provider(config: RecallConfig) -> SummaryProvider:
    provider = config.summary_provider
    if provider == "heuristic":
        return HeuristicSummaryProvider()
    api_key = config.summary_api_key or os.getenv(API_KEY_ENV[provider], "")
    if not api_key:
        raise ValidationError(
            f"summary_provider '{provider}' requires an API key "
            f"(summary_api_key or {API_KEY_ENV[provider]})"
        )
    model = config.summary_model or DEFAULT_MODELS[provider]
    policy = RetryPolicy(
        max_attempts=config.retry_max_attempts, base_delay_s=config.retry_base_delay_s
    )
    if provider == "anthropic":
        return AnthropicSummaryProvider(
            api_key=api_key,
            model=model,
            timeout_s=config.summary_timeout_s,
            retry_policy=policy,
        )
    logger.info("summary provider: %s (%s)", provider, model)
    return OpenAISummaryProvider(
        api_key=api_key,
        model=model,
        timeout_s=config.summary_timeout_s,
        base_url=config.summary_base_url or DEFAULT_BASE_URLS.get(provider),
        name=provider,
        retry_policy=policy,
    )
