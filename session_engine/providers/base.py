"""Streaming backend base class: shared request loop, SSE parsing, error mapping."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

import httpx

from ..errors import (
    BackendError,
    InvalidRequestError,
    NetworkTimeoutError,
    QuotaExceededError,
    RateLimitError,
    ServiceUnavailableError,
)
from ..types import AttachmentRef, BackendConfig, SessionHandle, Turn

logger = logging.getLogger(__name__)

# 429 bodies that mean the account is out of quota rather than throttled.
QUOTA_MARKERS = ("quota exceeded", "exceeded your current quota", "insufficient_quota", "billing")


def parse_retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def error_for_status(
    status_code: int,
    body: str,
    provider: str,
    retry_after: float | None = None,
) -> BackendError:
    """Map an HTTP failure onto the typed backend error hierarchy."""
    message = f"HTTP {status_code}: {body[:500]}"
    if status_code == 429:
        lowered = body.lower()
        if any(marker in lowered for marker in QUOTA_MARKERS):
            return QuotaExceededError(message, provider=provider, status_code=status_code)
        return RateLimitError(message, provider=provider, status_code=status_code, retry_after=retry_after)
    if status_code in (408, 504):
        return NetworkTimeoutError(message, provider=provider, status_code=status_code)
    if status_code >= 500:
        return ServiceUnavailableError(message, provider=provider, status_code=status_code, retry_after=retry_after)
    if status_code >= 400:
        return InvalidRequestError(message, provider=provider, status_code=status_code)
    return BackendError(message, provider=provider, status_code=status_code)


def sse_data(line: str) -> str | None:
    """Payload of an SSE ``data:`` line, or None for other lines."""
    if not line.startswith("data:"):
        return None
    return line[5:].strip()


class BaseBackend(ABC):
    """Abstract streaming backend. Subclasses override hook methods; the
    request and stream loop in ``stream_generate()`` is shared.

    Nothing is retried here. Every failure is raised as a typed
    ``BackendError`` and the caller's recovery policy decides what happens.
    """

    provider_name = "base"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        config: BackendConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or BackendConfig()
        self.api_key = api_key
        self.base_url = (base_url or self.config.base_url or self.default_base_url()).rstrip("/")
        self._client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
        )

    # -- hook methods subclasses must implement --

    @abstractmethod
    def default_base_url(self) -> str: ...

    @abstractmethod
    def _get_url(self, handle: SessionHandle) -> str: ...

    @abstractmethod
    def _get_headers(self) -> dict: ...

    @abstractmethod
    def _build_payload(
        self,
        handle: SessionHandle,
        history: list[Turn],
        text: str,
        attachments: tuple[AttachmentRef, ...],
    ) -> dict: ...

    @abstractmethod
    def _extract_delta(self, event: dict) -> str: ...

    def _check_event(self, event: dict) -> None:
        """Raise for error payloads delivered inside the stream."""
        error = event.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            status = code if isinstance(code, int) else 500
            raise error_for_status(status, json.dumps(error), self.provider_name)

    # -- shared session and streaming logic --

    async def initialize(self, config: BackendConfig) -> SessionHandle:
        self.config = config
        return SessionHandle(model=config.model, system_prompt=config.system_prompt)

    async def stream_generate(
        self,
        handle: SessionHandle,
        text: str,
        attachments: tuple[AttachmentRef, ...] = (),
        context: list[Turn] | None = None,
    ) -> AsyncIterator[str]:
        """Yield text deltas. ``context`` replaces the handle's own history
        for this call when given."""
        history = list(handle.history) if context is None else list(context)
        payload = self._build_payload(handle, history, text, attachments)
        chunks: list[str] = []

        try:
            async with self._client.stream(
                "POST", self._get_url(handle), headers=self._get_headers(), json=payload,
            ) as resp:
                if resp.status_code != 200:
                    await resp.aread()
                    raise error_for_status(
                        resp.status_code,
                        resp.text,
                        self.provider_name,
                        retry_after=parse_retry_after(resp.headers),
                    )
                async for line in resp.aiter_lines():
                    data = sse_data(line)
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE payload from %s: %s", self.provider_name, data[:100])
                        continue
                    self._check_event(event)
                    delta = self._extract_delta(event)
                    if delta:
                        chunks.append(delta)
                        yield delta
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"Timeout: {e}", provider=self.provider_name) from e
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"HTTP error: {e}", provider=self.provider_name) from e

        handle.history.append(Turn(role="user", content=text, attachments=tuple(attachments)))
        handle.history.append(Turn(role="assistant", content="".join(chunks)))

    async def fetch_history(self, handle: SessionHandle) -> list[Turn]:
        return list(handle.history)

    async def reset(self, handle: SessionHandle) -> SessionHandle:
        return SessionHandle(model=handle.model, system_prompt=handle.system_prompt)

    async def aclose(self) -> None:
        await self._client.aclose()
