"""Generation backends and the upload service, built from config."""

from __future__ import annotations

import os

import httpx

from ..errors import ConfigError
from ..types import SessionEngineConfig
from .base import BaseBackend, error_for_status
from .gemini import GeminiBackend
from .openai import OpenAICompatibleBackend
from .uploads import GeminiFileUploader

DEFAULT_API_KEY_ENV = {
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _api_key(config: SessionEngineConfig, provider: str) -> str:
    provider_config = config.providers.get(provider, {})
    api_key_env = provider_config.get("api_key_env", DEFAULT_API_KEY_ENV.get(provider, ""))
    return provider_config.get("api_key") or os.environ.get(api_key_env, "")


def build_backend(
    config: SessionEngineConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseBackend:
    """Build the configured generation backend."""
    provider = config.backend.provider
    provider_config = config.providers.get(provider, {})
    base_url = provider_config.get("base_url", config.backend.base_url)

    if provider == "gemini":
        return GeminiBackend(
            api_key=_api_key(config, provider),
            base_url=base_url,
            config=config.backend,
            transport=transport,
        )
    if provider == "openai":
        return OpenAICompatibleBackend(
            api_key=_api_key(config, provider),
            base_url=base_url,
            config=config.backend,
            transport=transport,
        )
    raise ConfigError([f"Unknown backend provider '{provider}'"])


def build_uploader(
    config: SessionEngineConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GeminiFileUploader | None:
    """Attachments are only supported with the Gemini backend."""
    if config.backend.provider != "gemini":
        return None
    return GeminiFileUploader(
        api_key=_api_key(config, "gemini"),
        config=config.uploads,
        timeout=config.backend.timeout_seconds,
        transport=transport,
    )


__all__ = [
    "BaseBackend",
    "GeminiBackend",
    "GeminiFileUploader",
    "OpenAICompatibleBackend",
    "build_backend",
    "build_uploader",
    "error_for_status",
]
