"""MessageStore: ordered, append-only turn log for one conversation."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone

from ..errors import LimitReached
from ..types import Conversation, Turn, Usage, new_id


def count_exchanges(turns: list[Turn] | tuple[Turn, ...]) -> int:
    """Count completed round trips: a user turn followed by an assistant turn."""
    exchanges = 0
    pending_user = False
    for turn in turns:
        if turn.role == "user":
            pending_user = True
        elif turn.role == "assistant" and pending_user:
            exchanges += 1
            pending_user = False
    return exchanges


class MessageStore:
    """Turn log with an exchange ceiling.

    Appends are serialized by a lock; ``snapshot()`` returns a tuple so
    readers always see a consistent prefix of the log.
    """

    def __init__(self, ceiling: int = 10, conversation_id: str | None = None) -> None:
        self.ceiling = ceiling
        self._lock = threading.Lock()
        self._conversation_id = conversation_id or new_id()
        self._turns: list[Turn] = []
        self._exchange_count = 0
        self._pending_user = False
        now = datetime.now(timezone.utc)
        self._created_at = now
        self._last_activity = now

    @classmethod
    def from_conversation(cls, conversation: Conversation, ceiling: int = 10) -> MessageStore:
        """Rebuild a store from persisted state. The exchange count is recomputed."""
        store = cls(ceiling=ceiling, conversation_id=conversation.conversation_id)
        store._turns = list(conversation.turns)
        store._exchange_count = count_exchanges(store._turns)
        store._pending_user = bool(store._turns) and store._turns[-1].role == "user"
        store._created_at = conversation.created_at
        store._last_activity = conversation.last_activity
        return store

    @property
    def conversation_id(self) -> str:
        return self._conversation_id

    @property
    def exchange_count(self) -> int:
        return self._exchange_count

    def append(self, turn: Turn) -> None:
        with self._lock:
            self._append_locked(turn)

    def append_exchange(self, user_turn: Turn, assistant_turn: Turn) -> None:
        """Append a user turn and its answer with no other append in between."""
        with self._lock:
            self._check_ceiling()
            self._append_locked(user_turn)
            self._append_locked(assistant_turn)

    def _check_ceiling(self) -> None:
        if self._exchange_count >= self.ceiling:
            raise LimitReached(self._exchange_count, self.ceiling)

    def _append_locked(self, turn: Turn) -> None:
        if turn.role == "user":
            self._check_ceiling()
            self._pending_user = True
        elif turn.role == "assistant":
            if self._pending_user:
                self._exchange_count += 1
                self._pending_user = False
        else:
            raise ValueError(f"Unknown role: {turn.role}")
        self._turns.append(turn)
        self._last_activity = datetime.now(timezone.utc)

    def snapshot(self) -> tuple[Turn, ...]:
        with self._lock:
            return tuple(self._turns)

    def annotate(self, turn_id: str, **metadata) -> bool:
        """Merge metadata into an appended turn. Returns False if not found."""
        with self._lock:
            for i, turn in enumerate(self._turns):
                if turn.id == turn_id:
                    self._turns[i] = replace(turn, metadata={**turn.metadata, **metadata})
                    return True
        return False

    def reset(self) -> str:
        """Clear turns and counters. Returns the new conversation id."""
        with self._lock:
            self._turns = []
            self._exchange_count = 0
            self._pending_user = False
            self._conversation_id = new_id()
            now = datetime.now(timezone.utc)
            self._created_at = now
            self._last_activity = now
            return self._conversation_id

    def usage(self) -> Usage:
        with self._lock:
            count = self._exchange_count
        return Usage(
            exchange_count=count,
            remaining=max(0, self.ceiling - count),
            limit_reached=count >= self.ceiling,
        )

    def conversation(self) -> Conversation:
        """Copy of the current state for persistence or export."""
        with self._lock:
            return Conversation(
                conversation_id=self._conversation_id,
                turns=list(self._turns),
                exchange_count=self._exchange_count,
                created_at=self._created_at,
                last_activity=self._last_activity,
            )
