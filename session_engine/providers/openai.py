"""OpenAICompatibleBackend: any server exposing streaming /chat/completions.

Works with OpenAI, Ollama, vLLM, LM Studio and similar endpoints.
"""

from __future__ import annotations

from ..types import AttachmentRef, SessionHandle, Turn
from .base import BaseBackend


def _content(text: str, attachments: tuple[AttachmentRef, ...]) -> str | list[dict]:
    if not attachments:
        return text
    parts: list[dict] = []
    for ref in attachments:
        if ref.mime_type.startswith("image/"):
            parts.append({"type": "image_url", "image_url": {"url": ref.remote_uri}})
        else:
            parts.append({"type": "text", "text": f"[attachment {ref.mime_type}: {ref.remote_uri}]"})
    if text:
        parts.append({"type": "text", "text": text})
    return parts


class OpenAICompatibleBackend(BaseBackend):
    provider_name = "openai"

    def default_base_url(self) -> str:
        return "https://api.openai.com/v1"

    def _get_url(self, handle: SessionHandle) -> str:
        return f"{self.base_url}/chat/completions"

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_payload(
        self,
        handle: SessionHandle,
        history: list[Turn],
        text: str,
        attachments: tuple[AttachmentRef, ...],
    ) -> dict:
        messages: list[dict] = []
        if handle.system_prompt:
            messages.append({"role": "system", "content": handle.system_prompt})
        for turn in history:
            messages.append({"role": turn.role, "content": _content(turn.content, turn.attachments)})
        messages.append({"role": "user", "content": _content(text, attachments)})
        return {
            "model": handle.model or self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_output_tokens,
            "temperature": self.config.temperature,
            "stream": True,
        }

    def _extract_delta(self, event: dict) -> str:
        choices = event.get("choices") or []
        if not choices:
            return ""
        return choices[0].get("delta", {}).get("content") or ""
