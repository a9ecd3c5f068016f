"""GeminiBackend: Gemini ``streamGenerateContent`` over SSE."""

from __future__ import annotations

from ..errors import InvalidRequestError
from ..types import AttachmentRef, SessionHandle, Turn
from .base import BaseBackend

API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def _parts(text: str, attachments: tuple[AttachmentRef, ...]) -> list[dict]:
    parts: list[dict] = [
        {"file_data": {"mime_type": ref.mime_type, "file_uri": ref.remote_uri}}
        for ref in attachments
    ]
    if text:
        parts.append({"text": text})
    return parts


class GeminiBackend(BaseBackend):
    """Streams from the Gemini API. Turns with role "assistant" are sent as
    role "model"."""

    provider_name = "gemini"

    def default_base_url(self) -> str:
        return API_BASE

    def _get_url(self, handle: SessionHandle) -> str:
        model = handle.model or self.config.model
        return f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"

    def _get_headers(self) -> dict:
        return {
            "x-goog-api-key": self.api_key,
            "content-type": "application/json",
        }

    def _build_payload(
        self,
        handle: SessionHandle,
        history: list[Turn],
        text: str,
        attachments: tuple[AttachmentRef, ...],
    ) -> dict:
        contents = [
            {
                "role": "model" if turn.role == "assistant" else "user",
                "parts": _parts(turn.content, turn.attachments),
            }
            for turn in history
            if turn.content or turn.attachments
        ]
        contents.append({"role": "user", "parts": _parts(text, attachments)})

        payload: dict = {
            "contents": contents,
            "generationConfig": {
                "temperature": self.config.temperature,
                "maxOutputTokens": self.config.max_output_tokens,
            },
        }
        if handle.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": handle.system_prompt}]}
        return payload

    def _check_event(self, event: dict) -> None:
        super()._check_event(event)
        block_reason = event.get("promptFeedback", {}).get("blockReason")
        if block_reason:
            raise InvalidRequestError(
                f"Prompt blocked: {block_reason}", provider=self.provider_name,
            )

    def _extract_delta(self, event: dict) -> str:
        candidates = event.get("candidates") or []
        if not candidates:
            return ""
        parts = candidates[0].get("content", {}).get("parts", [])
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))
