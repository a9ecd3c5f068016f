"""ConversationStore abstract base class."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import timedelta

from ..types import Conversation, ConversationListing


class ConversationStore(ABC):
    """Pluggable persistence for conversations.

    Implementations are synchronous; the engine calls them through
    ``asyncio.to_thread``.
    """

    @abstractmethod
    def save(self, conversation: Conversation) -> None:
        """Store a conversation. Idempotent on conversation_id (upsert)."""

    @abstractmethod
    def load(self, conversation_id: str) -> Conversation | None:
        """Load a conversation. None if not found."""

    @abstractmethod
    def list_recent(self, limit: int = 20) -> list[ConversationListing]:
        """Conversations ordered by last activity, newest first."""

    @abstractmethod
    def purge_ids_older_than(self, age: timedelta) -> list[str]:
        """Delete conversations idle for longer than ``age``. Returns their ids."""

    def purge_older_than(self, age: timedelta) -> int:
        """Delete conversations idle for longer than ``age``. Returns count."""
        return len(self.purge_ids_older_than(age))

    @abstractmethod
    def delete(self, conversation_id: str) -> bool:
        """Delete one conversation. Returns False if it did not exist."""

    @abstractmethod
    def clear(self) -> int:
        """Delete every conversation. Returns count."""

    def close(self) -> None:
        """Release resources. Default: no-op."""
