"""ErrorClassifier: map raw collaborator failures onto a small set of kinds."""

from __future__ import annotations

import logging

import httpx

from ..errors import (
    AttachmentValidationError,
    BackendError,
    InvalidRequestError,
    NetworkTimeoutError,
    QuotaExceededError,
    RateLimitError,
    ServiceUnavailableError,
    UploadError,
    ValidationError,
)
from ..types import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: "Too many messages were sent. Please wait a moment before trying again.",
    ErrorKind.UNAVAILABLE: "The assistant is temporarily unavailable. Please try again shortly.",
    ErrorKind.TIMEOUT: "The assistant took too long to answer. Please try again.",
    ErrorKind.INVALID_INPUT: "This message could not be processed. Please rephrase it or change the attachment.",
    ErrorKind.QUOTA_EXCEEDED: "The service has reached its usage quota. Please come back later.",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again.",
}

# Checked in order against lowercased messages of foreign exceptions.
_MESSAGE_HINTS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("quota", "resource exhausted", "billing"), ErrorKind.QUOTA_EXCEEDED),
    (("rate limit", "rate-limit", "too many requests", "too many"), ErrorKind.RATE_LIMITED),
    (("timed out", "timeout", "deadline"), ErrorKind.TIMEOUT),
    (("network", "connection", "unavailable", "overloaded", "fetch"), ErrorKind.UNAVAILABLE),
    (("invalid", "unsupported", "too large", "malformed"), ErrorKind.INVALID_INPUT),
]

_TYPED: list[tuple[type[BaseException], ErrorKind]] = [
    (QuotaExceededError, ErrorKind.QUOTA_EXCEEDED),
    (RateLimitError, ErrorKind.RATE_LIMITED),
    (NetworkTimeoutError, ErrorKind.TIMEOUT),
    (ServiceUnavailableError, ErrorKind.UNAVAILABLE),
    (UploadError, ErrorKind.UNAVAILABLE),
    (InvalidRequestError, ErrorKind.INVALID_INPUT),
    (ValidationError, ErrorKind.INVALID_INPUT),
    (httpx.TimeoutException, ErrorKind.TIMEOUT),
    (TimeoutError, ErrorKind.TIMEOUT),
    (httpx.TransportError, ErrorKind.UNAVAILABLE),
    (ConnectionError, ErrorKind.UNAVAILABLE),
]


class ErrorClassifier:
    """Classify exceptions. Typed errors map directly, others by message."""

    def classify(self, error: BaseException) -> ClassifiedError:
        kind = self._kind_for(error)
        retry_after = getattr(error, "retry_after", None)
        user_message = USER_MESSAGES[kind]
        if isinstance(error, AttachmentValidationError):
            user_message = error.user_message
        classified = ClassifiedError(
            kind=kind,
            message=f"{type(error).__name__}: {error}",
            user_message=user_message,
            retry_after=retry_after,
        )
        logger.debug("Classified %s as %s", type(error).__name__, kind.value)
        return classified

    def _kind_for(self, error: BaseException) -> ErrorKind:
        for exc_type, kind in _TYPED:
            if isinstance(error, exc_type):
                return kind

        if isinstance(error, BackendError) and error.status_code is not None:
            return kind_for_status(error.status_code)

        text = str(error).lower()
        for needles, kind in _MESSAGE_HINTS:
            if any(n in text for n in needles):
                return kind
        return ErrorKind.UNKNOWN


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (408, 504):
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.UNAVAILABLE
    if 400 <= status_code < 500:
        return ErrorKind.INVALID_INPUT
    return ErrorKind.UNKNOWN
