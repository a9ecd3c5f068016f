"""RecoveryCoordinator: bounded, backed-off retries with explicit fallbacks."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from ..types import (
    ClassifiedError,
    ErrorKind,
    PerformanceSample,
    RecoveryAction,
    RecoveryDecision,
    RetryConfig,
    RetryState,
)
from .metrics import MetricsAggregator

logger = logging.getLogger(__name__)

OPERATION_GENERATE = "generate"
OPERATION_UPLOAD = "upload"

# Operations with a safe local substitute once retries are exhausted.
FALLBACK_OPERATIONS = frozenset({OPERATION_GENERATE})


class RecoveryCoordinator:
    """Decide what happens after a classified failure.

    Retry state is keyed by ``(session_id, operation)`` and only reset by
    ``record_success``. ``max_attempts`` bounds the total number of attempts
    of one operation, the first one included.
    """

    def __init__(
        self,
        config: RetryConfig,
        metrics: MetricsAggregator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self._clock = clock
        self._states: dict[tuple[str, str], RetryState] = {}
        self._lock = threading.Lock()

    def state(self, session_id: str, operation: str) -> RetryState:
        """Copy of the retry state (default state if none recorded)."""
        with self._lock:
            st = self._states.get((session_id, operation))
            if st is None:
                return RetryState()
            return RetryState(st.attempt_count, st.last_attempt_at, st.cooldown_until)

    def backoff_delay(self, attempt_count: int) -> float:
        return min(self.config.base_delay * (2 ** attempt_count), self.config.max_delay)

    def decide(
        self,
        session_id: str,
        operation: str,
        error: ClassifiedError,
    ) -> RecoveryDecision:
        now = self._clock()
        with self._lock:
            st = self._states.setdefault((session_id, operation), RetryState())
            attempts_made = st.attempt_count + 1
            st.last_attempt_at = now
            in_cooldown = st.cooldown_until is not None and now < st.cooldown_until

            if (
                error.retry_after is not None
                and error.retry_after > self.config.max_delay
            ):
                st.cooldown_until = now + error.retry_after
                in_cooldown = True

            if error.retryable and not in_cooldown and attempts_made < self.config.max_attempts:
                delay = self.backoff_delay(st.attempt_count)
                if error.retry_after is not None:
                    delay = max(delay, error.retry_after)
                st.attempt_count += 1
                decision = RecoveryDecision(
                    action=RecoveryAction.RETRY,
                    delay=delay,
                    attempt=attempts_made,
                    reason=f"{error.kind.value}: retry {st.attempt_count}",
                )
            else:
                if not error.retryable:
                    reason = f"{error.kind.value}: not retryable"
                elif in_cooldown:
                    reason = f"{error.kind.value}: cooling down"
                else:
                    reason = f"{error.kind.value}: retry budget exhausted"
                decision = RecoveryDecision(
                    action=self._terminal_action(operation, error),
                    attempt=attempts_made,
                    reason=reason,
                )

        logger.info(
            "Recovery %s/%s: %s after attempt %d (%s)",
            session_id[:8], operation, decision.action.value, decision.attempt, decision.reason,
        )
        self._record(session_id, operation, error, decision)
        return decision

    def _terminal_action(self, operation: str, error: ClassifiedError) -> RecoveryAction:
        if error.kind in (ErrorKind.QUOTA_EXCEEDED, ErrorKind.INVALID_INPUT):
            return RecoveryAction.SURFACE
        if operation in FALLBACK_OPERATIONS:
            return RecoveryAction.FALLBACK
        return RecoveryAction.SURFACE

    def record_success(self, session_id: str, operation: str) -> None:
        with self._lock:
            self._states.pop((session_id, operation), None)

    def reset_session(self, session_id: str) -> None:
        with self._lock:
            for key in [k for k in self._states if k[0] == session_id]:
                del self._states[key]

    def reset_all(self) -> None:
        with self._lock:
            self._states.clear()

    def _record(
        self,
        session_id: str,
        operation: str,
        error: ClassifiedError,
        decision: RecoveryDecision,
    ) -> None:
        if self.metrics is None:
            return
        self.metrics.record(PerformanceSample(
            operation="recovery",
            session_id=session_id,
            dimensions={
                "target": operation,
                "kind": error.kind.value,
                "action": decision.action.value,
                "attempt": decision.attempt,
                "delay": decision.delay,
            },
        ))


FALLBACK_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: (
        "I'm receiving a lot of messages right now and couldn't answer yours. "
        "Please wait a moment and ask again."
    ),
    ErrorKind.UNAVAILABLE: (
        "Sorry, I can't reach the assistant service at the moment. "
        "Please try again in a few minutes."
    ),
    ErrorKind.TIMEOUT: (
        "Sorry, generating this answer took too long. "
        "Please try again, perhaps with a shorter question."
    ),
    ErrorKind.UNKNOWN: (
        "Sorry, something went wrong while preparing my answer. "
        "Please try again."
    ),
}

PARTIAL_SUFFIX = "\n\n[This answer was interrupted. {message}]"


class FallbackResponder:
    """Canned recovery text, never empty, tagged by the caller as a fallback."""

    def __init__(self, messages: dict[ErrorKind, str] | None = None) -> None:
        self.messages = {**FALLBACK_MESSAGES, **(messages or {})}

    def respond(self, error: ClassifiedError, partial_text: str = "") -> str:
        message = self.messages.get(error.kind, self.messages[ErrorKind.UNKNOWN])
        if partial_text.strip():
            return partial_text + PARTIAL_SUFFIX.format(message=message)
        return message
