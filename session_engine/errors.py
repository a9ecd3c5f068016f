"""Exception hierarchy for session-engine.

Every error carries a short ``user_message`` meant for the person chatting,
separate from the internal message used in logs.
"""

from __future__ import annotations


class SessionEngineError(Exception):
    """Base class for all engine errors."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str = "", user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ConfigError(SessionEngineError):
    user_message = "The chat service is misconfigured."

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid configuration: " + "; ".join(errors))
        self.errors = errors


class EmptyInput(SessionEngineError):
    user_message = "Please type a message or attach a file."


class LimitReached(SessionEngineError):
    user_message = (
        "This conversation has reached its message limit. "
        "Start a new conversation to keep chatting."
    )

    def __init__(self, exchange_count: int, ceiling: int) -> None:
        super().__init__(f"Exchange ceiling reached ({exchange_count}/{ceiling})")
        self.exchange_count = exchange_count
        self.ceiling = ceiling


class ValidationError(SessionEngineError):
    user_message = "The request could not be accepted."

    def __init__(self, message: str = "", reason: str = "", user_message: str | None = None) -> None:
        super().__init__(message, user_message)
        self.reason = reason


class AttachmentValidationError(ValidationError):
    """Attachment rejected before any network transfer.

    ``reason`` is one of "size_exceeded", "unsupported_type", "empty_file",
    "too_many_files".
    """

    user_message = "This file cannot be attached."


class ImportValidationError(ValidationError):
    user_message = "The conversation file is invalid and was not imported."

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Import rejected: " + "; ".join(errors), reason="malformed_import")
        self.errors = errors


class TurnInProgress(SessionEngineError):
    user_message = "Please wait for the current answer to finish."


class RateLimited(SessionEngineError):
    """A client submitted more turns than its window allows."""

    user_message = "Too many messages. Please wait before trying again."

    def __init__(self, identifier: str, limit: int, retry_after: float) -> None:
        super().__init__(f"Rate limit of {limit} turns exceeded for {identifier}")
        self.identifier = identifier
        self.limit = limit
        self.retry_after = retry_after


class ConversationNotFound(SessionEngineError):
    user_message = "This conversation no longer exists."

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Unknown conversation: {conversation_id}")
        self.conversation_id = conversation_id


# ---------------------------------------------------------------------------
# Collaborator errors
# ---------------------------------------------------------------------------

class BackendError(SessionEngineError):
    """Failure reported by the generation backend."""

    user_message = "The assistant is temporarily unavailable."

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitError(BackendError):
    user_message = "Too many messages were sent. Please wait a moment."


class ServiceUnavailableError(BackendError):
    user_message = "The assistant is temporarily unavailable."


class InvalidRequestError(BackendError):
    user_message = "The message could not be processed."


class QuotaExceededError(BackendError):
    user_message = "The service quota is exhausted. Please come back later."


class NetworkTimeoutError(BackendError):
    user_message = "The assistant took too long to answer."


class UploadError(BackendError):
    """Transient failure while transferring an attachment."""

    user_message = "The file upload failed."


class TurnFailed(SessionEngineError):
    """Terminal error surfaced to the caller after recovery gave up."""

    def __init__(self, kind: str, message: str, user_message: str) -> None:
        super().__init__(message, user_message)
        self.kind = kind
