"""Conversation persistence backends."""

from __future__ import annotations

from pathlib import Path

from ..types import SessionEngineConfig
from .base import ConversationStore
from .filesystem import FilesystemStore
from .sqlite import SQLiteStore


def build_store(config: SessionEngineConfig) -> ConversationStore:
    """Build the configured store. Relative paths resolve against CWD."""
    if config.storage.backend == "filesystem":
        return FilesystemStore(Path(config.storage.root))
    return SQLiteStore(Path(config.storage.sqlite_path))


__all__ = ["ConversationStore", "FilesystemStore", "SQLiteStore", "build_store"]
