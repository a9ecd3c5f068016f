"""Configuration loading, validation, and defaults."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from .types import (
    DEFAULT_ALLOWED_MIME_TYPES,
    BackendConfig,
    CacheConfig,
    ConversationConfig,
    FeatureFlags,
    MetricsConfig,
    OptimizerConfig,
    RateLimitConfig,
    RetryConfig,
    SessionEngineConfig,
    StorageConfig,
    UploadConfig,
)

CONFIG_FILENAMES = [
    "session-engine.yaml",
    "session-engine.yml",
    "session-engine.json",
]

KNOWN_PROVIDERS = ("gemini", "openai")
KNOWN_STORAGE_BACKENDS = ("sqlite", "filesystem")


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def _build_config(raw: dict[str, Any]) -> SessionEngineConfig:
    """Build a SessionEngineConfig from a raw dict."""
    backend_raw = raw.get("backend", {})
    backend = BackendConfig(
        provider=backend_raw.get("provider", "gemini"),
        model=backend_raw.get("model", "gemini-1.5-flash"),
        temperature=backend_raw.get("temperature", 0.7),
        max_output_tokens=backend_raw.get("max_output_tokens", 2048),
        timeout_seconds=backend_raw.get("timeout_seconds", 30.0),
        system_prompt=backend_raw.get("system_prompt", ""),
        base_url=backend_raw.get("base_url", ""),
    )

    opt_raw = raw.get("optimizer", {})
    optimizer = OptimizerConfig(
        recent_turns_kept=opt_raw.get("recent_turns_kept", 6),
        soft_threshold=opt_raw.get("soft_threshold", 0.70),
        summarize=opt_raw.get("summarize", True),
        max_summary_tokens=opt_raw.get("max_summary_tokens", 200),
    )

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_attempts=retry_raw.get("max_attempts", 3),
        base_delay=retry_raw.get("base_delay", 0.5),
        max_delay=retry_raw.get("max_delay", 8.0),
    )

    cache_raw = raw.get("cache", {})
    cache = CacheConfig(
        enabled=cache_raw.get("enabled", True),
        ttl_seconds=cache_raw.get("ttl_seconds", 1800.0),
        max_entries=cache_raw.get("max_entries", 1000),
        sweep_interval_seconds=cache_raw.get("sweep_interval_seconds", 300.0),
    )

    conv_raw = raw.get("conversation", {})
    conversation = ConversationConfig(
        exchange_ceiling=conv_raw.get("exchange_ceiling", 10),
        max_message_length=conv_raw.get("max_message_length", 4000),
        queue_concurrent_turns=conv_raw.get("queue_concurrent_turns", True),
        retention_days=conv_raw.get("retention_days", 7),
    )

    uploads_raw = raw.get("uploads", {})
    uploads = UploadConfig(
        max_file_size=uploads_raw.get("max_file_size", 10 * 1024 * 1024),
        max_files_per_turn=uploads_raw.get("max_files_per_turn", 5),
        allowed_mime_types=uploads_raw.get(
            "allowed_mime_types", list(DEFAULT_ALLOWED_MIME_TYPES)
        ),
    )

    storage_root = raw.get("storage_root", ".session-engine")
    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        backend=storage_raw.get("backend", "sqlite"),
        root=storage_raw.get("root", storage_root + "/store"),
        sqlite_path=storage_raw.get("sqlite_path", storage_root + "/conversations.db"),
    )

    features_raw = raw.get("features", {})
    features = FeatureFlags(
        persistence=features_raw.get("persistence", True),
        metrics=features_raw.get("metrics", True),
        markdown_hints=features_raw.get("markdown_hints", True),
    )

    metrics_raw = raw.get("metrics", {})
    metrics = MetricsConfig(max_samples=metrics_raw.get("max_samples", 10_000))

    rate_raw = raw.get("rate_limit", {})
    rate_limit = RateLimitConfig(
        enabled=rate_raw.get("enabled", True),
        max_requests=rate_raw.get("max_requests", 10),
        window_seconds=rate_raw.get("window_seconds", 60.0),
    )

    return SessionEngineConfig(
        version=raw.get("version", "1.0"),
        storage_root=storage_root,
        context_budget=raw.get("context_budget", 30_000),
        token_counter=raw.get("token_counter", "estimate"),
        backend=backend,
        optimizer=optimizer,
        retry=retry,
        cache=cache,
        conversation=conversation,
        uploads=uploads,
        storage=storage,
        features=features,
        metrics=metrics,
        rate_limit=rate_limit,
        providers=raw.get("providers", {}),
    )


def validate_config(config: SessionEngineConfig) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if config.backend.provider not in KNOWN_PROVIDERS:
        errors.append(
            f"Unknown backend provider '{config.backend.provider}' "
            f"(expected one of {', '.join(KNOWN_PROVIDERS)})"
        )
    if not config.backend.model:
        errors.append("backend.model must be set")
    if not 0.0 <= config.backend.temperature <= 2.0:
        errors.append(f"backend.temperature ({config.backend.temperature}) must be in [0, 2]")
    if config.backend.timeout_seconds <= 0:
        errors.append("backend.timeout_seconds must be > 0")

    if config.context_budget < 1:
        errors.append("context_budget must be >= 1")
    if config.optimizer.recent_turns_kept < 1:
        errors.append("optimizer.recent_turns_kept must be >= 1")
    if not 0.0 < config.optimizer.soft_threshold <= 1.0:
        errors.append(
            f"optimizer.soft_threshold ({config.optimizer.soft_threshold}) must be in (0, 1]"
        )

    if config.retry.max_attempts < 1:
        errors.append("retry.max_attempts must be >= 1")
    if config.retry.base_delay < 0 or config.retry.max_delay < 0:
        errors.append("retry delays must be >= 0")
    if config.retry.base_delay > config.retry.max_delay:
        errors.append(
            f"retry.base_delay ({config.retry.base_delay}) must be <= "
            f"retry.max_delay ({config.retry.max_delay})"
        )

    if config.cache.ttl_seconds <= 0:
        errors.append("cache.ttl_seconds must be > 0")
    if config.cache.max_entries < 1:
        errors.append("cache.max_entries must be >= 1")

    if config.conversation.exchange_ceiling < 1:
        errors.append("conversation.exchange_ceiling must be >= 1")
    if config.conversation.max_message_length < 1:
        errors.append("conversation.max_message_length must be >= 1")

    if config.uploads.max_file_size < 1:
        errors.append("uploads.max_file_size must be >= 1")
    if not config.uploads.allowed_mime_types:
        errors.append("uploads.allowed_mime_types must not be empty")

    if config.rate_limit.max_requests < 1:
        errors.append("rate_limit.max_requests must be >= 1")
    if config.rate_limit.window_seconds <= 0:
        errors.append("rate_limit.window_seconds must be > 0")

    if config.storage.backend not in KNOWN_STORAGE_BACKENDS:
        errors.append(f"Unknown storage backend '{config.storage.backend}'")

    if config.providers and config.backend.provider not in config.providers:
        errors.append(
            f"Backend provider '{config.backend.provider}' "
            f"not found in providers section"
        )

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> SessionEngineConfig:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text()
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)
