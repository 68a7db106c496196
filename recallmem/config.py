from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ValidationError
from .observation_types import ALLOWED_OBSERVATION_TYPES

DEFAULT_CONFIG_PATH = Path("~/.config/recallmem/config.json").expanduser()

SUMMARY_PROVIDERS = ("heuristic", "anthropic", "openai", "openrouter", "gemini")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

CONFIG_ENV_OVERRIDES = {
    "worker_host": "RECALLMEM_WORKER_HOST",
    "worker_port": "RECALLMEM_WORKER_PORT",
    "context_observations": "RECALLMEM_CONTEXT_OBSERVATIONS",
    "context_max_tokens": "RECALLMEM_CONTEXT_MAX_TOKENS",
    "retention_days": "RECALLMEM_RETENTION_DAYS",
    "retention_max_observations": "RECALLMEM_RETENTION_MAX_OBSERVATIONS",
    "retention_interval_s": "RECALLMEM_RETENTION_INTERVAL_S",
    "summary_provider": "RECALLMEM_SUMMARY_PROVIDER",
    "summary_model": "RECALLMEM_SUMMARY_MODEL",
    "summary_api_key": "RECALLMEM_SUMMARY_API_KEY",
    "summary_base_url": "RECALLMEM_SUMMARY_BASE_URL",
    "summary_timeout_s": "RECALLMEM_SUMMARY_TIMEOUT_S",
    "summary_threshold": "RECALLMEM_SUMMARY_THRESHOLD",
    "log_level": "RECALLMEM_LOG_LEVEL",
    "decision_min_chars": "RECALLMEM_DECISION_MIN_CHARS",
    "decision_max_chars": "RECALLMEM_DECISION_MAX_CHARS",
    "observation_types": "RECALLMEM_OBSERVATION_TYPES",
    "weight_text": "RECALLMEM_WEIGHT_TEXT",
    "weight_similarity": "RECALLMEM_WEIGHT_SIMILARITY",
    "weight_recency": "RECALLMEM_WEIGHT_RECENCY",
    "cache_ttl_s": "RECALLMEM_CACHE_TTL_S",
    "pending_max_attempts": "RECALLMEM_PENDING_MAX_ATTEMPTS",
    "retry_max_attempts": "RECALLMEM_RETRY_MAX_ATTEMPTS",
    "retry_base_delay_s": "RECALLMEM_RETRY_BASE_DELAY_S",
}

_INT_KEYS = {
    "worker_port",
    "context_observations",
    "context_max_tokens",
    "retention_days",
    "retention_max_observations",
    "retention_interval_s",
    "summary_threshold",
    "decision_min_chars",
    "decision_max_chars",
    "pending_max_attempts",
    "retry_max_attempts",
}
_FLOAT_KEYS = {
    "summary_timeout_s",
    "weight_text",
    "weight_similarity",
    "weight_recency",
    "cache_ttl_s",
    "retry_base_delay_s",
}
_POSITIVE_KEYS = {
    "context_observations",
    "context_max_tokens",
    "retention_interval_s",
    "pending_max_attempts",
    "retry_max_attempts",
    "summary_timeout_s",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("RECALLMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid config json in {config_path}: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ValidationError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class RecallConfig:
    worker_host: str = "127.0.0.1"
    worker_port: int = 37777
    context_observations: int = 50
    context_max_tokens: int = 2000
    # 0 disables age-based pruning.
    retention_days: int = 0
    # 0 disables the count ceiling.
    retention_max_observations: int = 0
    retention_interval_s: int = 3600
    summary_provider: str = "heuristic"
    summary_model: str | None = None
    summary_api_key: str | None = None
    summary_base_url: str | None = None
    summary_timeout_s: float = 30.0
    summary_threshold: int = 5
    log_level: str = "INFO"
    decision_min_chars: int = 20
    decision_max_chars: int = 200
    observation_types: list[str] = field(default_factory=lambda: list(ALLOWED_OBSERVATION_TYPES))
    weight_text: float = 1.0
    weight_similarity: float | None = None
    weight_recency: float = 0.25
    cache_ttl_s: float = 30.0
    pending_max_attempts: int = 5
    retry_max_attempts: int = 3
    retry_base_delay_s: float = 0.5


def _parse_int(value: object, *, key: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid int for {key}: {value!r}")
    try:
        parsed = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid int for {key}: {value!r}") from exc
    if parsed < 0:
        raise ValidationError(f"Invalid value for {key}: must be >= 0, got {parsed}")
    return parsed


def _parse_float(value: object, *, key: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid number for {key}: {value!r}")
    try:
        parsed = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid number for {key}: {value!r}") from exc
    if parsed < 0:
        raise ValidationError(f"Invalid value for {key}: must be >= 0, got {parsed}")
    return parsed


def _coerce_str_list(value: object, *, key: str) -> list[str]:
    if isinstance(value, list):
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValidationError(f"Invalid list for {key}: {value!r}")
            if item.strip():
                items.append(item.strip().lower())
        return items
    if isinstance(value, str):
        return [p.strip().lower() for p in value.split(",") if p.strip()]
    raise ValidationError(f"Invalid list for {key}: {value!r}")


def _coerce_value(key: str, value: Any) -> Any:
    if key in _INT_KEYS:
        return _parse_int(value, key=key)
    if key in _FLOAT_KEYS:
        if key == "weight_similarity" and value in (None, ""):
            return None
        return _parse_float(value, key=key)
    if key == "observation_types":
        return _coerce_str_list(value, key=key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Invalid string for {key}: {value!r}")
    return value.strip()


def validate_config(cfg: RecallConfig) -> RecallConfig:
    if not 1 <= cfg.worker_port <= 65535:
        raise ValidationError(f"Invalid value for worker_port: {cfg.worker_port} (1-65535)")
    if not cfg.worker_host:
        raise ValidationError("Invalid value for worker_host: empty")
    for key in sorted(_POSITIVE_KEYS):
        if getattr(cfg, key) <= 0:
            raise ValidationError(f"Invalid value for {key}: must be > 0")
    cfg.summary_provider = (cfg.summary_provider or "").lower()
    if cfg.summary_provider not in SUMMARY_PROVIDERS:
        raise ValidationError(
            f"Invalid summary_provider '{cfg.summary_provider}'. "
            f"Allowed: {', '.join(SUMMARY_PROVIDERS)}"
        )
    cfg.log_level = (cfg.log_level or "").upper()
    if cfg.log_level not in LOG_LEVELS:
        raise ValidationError(
            f"Invalid log_level '{cfg.log_level}'. Allowed: {', '.join(LOG_LEVELS)}"
        )
    if cfg.decision_min_chars > cfg.decision_max_chars:
        raise ValidationError(
            "Invalid decision window: decision_min_chars "
            f"({cfg.decision_min_chars}) > decision_max_chars ({cfg.decision_max_chars})"
        )
    if not cfg.observation_types:
        raise ValidationError("Invalid observation_types: at least one type is required")
    return cfg


def load_config(path: Path | None = None) -> RecallConfig:
    """Build the effective config: defaults, then the config file, then env.

    Any invalid value raises ValidationError naming the key.
    """
    cfg = RecallConfig()
    cfg = _apply_dict(cfg, read_config_file(path))
    cfg = _apply_env(cfg)
    return validate_config(cfg)


def _apply_dict(cfg: RecallConfig, data: dict[str, Any]) -> RecallConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        setattr(cfg, key, _coerce_value(key, value))
    return cfg


def _apply_env(cfg: RecallConfig) -> RecallConfig:
    for key, value in get_env_overrides().items():
        setattr(cfg, key, _coerce_value(key, value))
    return cfg
