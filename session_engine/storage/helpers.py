"""Shared helpers for storage backends and conversation export/import."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..types import AttachmentRef, Conversation, Turn

EXPORT_FORMAT_VERSION = "1.0"
VALID_ROLES = ("user", "assistant")
REQUIRED_TURN_FIELDS = ("id", "role", "content", "timestamp")


def dt_to_str(dt: datetime) -> str:
    return dt.isoformat()


def str_to_dt(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def attachment_to_dict(ref: AttachmentRef) -> dict:
    return {
        "id": ref.id,
        "remote_uri": ref.remote_uri,
        "mime_type": ref.mime_type,
        "size_bytes": ref.size_bytes,
        "uploaded_at": dt_to_str(ref.uploaded_at),
        "sha256": ref.sha256,
    }


def attachment_from_dict(data: dict) -> AttachmentRef:
    return AttachmentRef(
        id=data["id"],
        remote_uri=data.get("remote_uri", ""),
        mime_type=data.get("mime_type", ""),
        size_bytes=int(data.get("size_bytes", 0)),
        uploaded_at=str_to_dt(data["uploaded_at"]) if data.get("uploaded_at") else datetime.now(timezone.utc),
        sha256=data.get("sha256", ""),
    )


def turn_to_dict(turn: Turn) -> dict:
    return {
        "id": turn.id,
        "role": turn.role,
        "content": turn.content,
        "timestamp": dt_to_str(turn.timestamp),
        "attachments": [attachment_to_dict(a) for a in turn.attachments],
        "metadata": dict(turn.metadata),
    }


def turn_from_dict(data: dict) -> Turn:
    return Turn(
        id=data["id"],
        role=data["role"],
        content=data["content"],
        timestamp=str_to_dt(data["timestamp"]),
        attachments=tuple(attachment_from_dict(a) for a in data.get("attachments") or []),
        metadata=dict(data.get("metadata") or {}),
    )


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "conversation_id": conversation.conversation_id,
        "created_at": dt_to_str(conversation.created_at),
        "last_activity": dt_to_str(conversation.last_activity),
        "exchange_count": conversation.exchange_count,
        "turns": [turn_to_dict(t) for t in conversation.turns],
    }


def conversation_from_dict(data: dict) -> Conversation:
    turns = [turn_from_dict(t) for t in data.get("turns", [])]
    now = datetime.now(timezone.utc)
    created = data.get("created_at")
    last = data.get("last_activity")
    return Conversation(
        conversation_id=data["conversation_id"],
        turns=turns,
        exchange_count=int(data.get("exchange_count", 0)),
        created_at=str_to_dt(created) if created else (turns[0].timestamp if turns else now),
        last_activity=str_to_dt(last) if last else (turns[-1].timestamp if turns else now),
    )


def export_document(conversation: Conversation) -> dict:
    return {
        "format_version": EXPORT_FORMAT_VERSION,
        "exported_at": dt_to_str(datetime.now(timezone.utc)),
        "conversation": conversation_to_dict(conversation),
    }


def _check_timestamp(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        str_to_dt(value)
    except ValueError:
        return False
    return True


def _attachment_problems(attachment: Any) -> list[str]:
    if not isinstance(attachment, dict):
        return ["not an object"]
    problems = []
    if not isinstance(attachment.get("id"), str) or not attachment["id"]:
        problems.append("id must be a non-empty string")
    for key in ("remote_uri", "mime_type", "sha256"):
        if key in attachment and not isinstance(attachment[key], str):
            problems.append(f"{key} must be a string")
    size = attachment.get("size_bytes", 0)
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        problems.append("size_bytes must be a non-negative integer")
    if attachment.get("uploaded_at") and not _check_timestamp(attachment["uploaded_at"]):
        problems.append("uploaded_at is not ISO-8601")
    return problems


def validate_export_document(doc: Any) -> list[str]:
    """Return every problem found in an export document (empty = valid)."""
    if not isinstance(doc, dict):
        return ["document must be a JSON object"]

    errors: list[str] = []
    version = doc.get("format_version")
    if version is not None and not str(version).startswith("1."):
        errors.append(f"unsupported format_version '{version}'")

    conversation = doc.get("conversation")
    if not isinstance(conversation, dict):
        return errors + ["missing 'conversation' object"]

    conversation_id = conversation.get("conversation_id")
    if conversation_id is not None and (not isinstance(conversation_id, str) or not conversation_id):
        errors.append("conversation_id must be a non-empty string")
    for key in ("created_at", "last_activity"):
        if key in conversation and not _check_timestamp(conversation[key]):
            errors.append(f"conversation.{key} is not an ISO-8601 timestamp")
    exchange_count = conversation.get("exchange_count", 0)
    if isinstance(exchange_count, bool) or not isinstance(exchange_count, int):
        errors.append("conversation.exchange_count must be an integer")

    turns = conversation.get("turns")
    if not isinstance(turns, list):
        return errors + ["conversation.turns must be a list"]

    seen: set[str] = set()
    for i, turn in enumerate(turns):
        if not isinstance(turn, dict):
            errors.append(f"turn {i}: not an object")
            continue
        missing = [f for f in REQUIRED_TURN_FIELDS if f not in turn or turn[f] is None]
        if missing:
            errors.append(f"turn {i}: missing {', '.join(missing)}")
            continue
        if turn["role"] not in VALID_ROLES:
            errors.append(f"turn {i}: unknown role '{turn['role']}'")
        if not isinstance(turn["content"], str):
            errors.append(f"turn {i}: content must be a string")
        if not _check_timestamp(turn["timestamp"]):
            errors.append(f"turn {i}: timestamp is not ISO-8601")
        if not isinstance(turn["id"], str) or not turn["id"]:
            errors.append(f"turn {i}: id must be a non-empty string")
        elif turn["id"] in seen:
            errors.append(f"turn {i}: duplicate id '{turn['id']}'")
        else:
            seen.add(turn["id"])
        attachments = turn.get("attachments") or []
        if not isinstance(attachments, list):
            errors.append(f"turn {i}: attachments must be a list")
        else:
            for j, attachment in enumerate(attachments):
                for problem in _attachment_problems(attachment):
                    errors.append(f"turn {i}: attachment {j}: {problem}")
        if not isinstance(turn.get("metadata") or {}, dict):
            errors.append(f"turn {i}: metadata must be an object")

    return errors
