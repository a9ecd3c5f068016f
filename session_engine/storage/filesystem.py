"""FilesystemStore: one JSON file per conversation plus a JSON index."""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ..types import Conversation, ConversationListing
from .base import ConversationStore
from .helpers import conversation_from_dict, conversation_to_dict, dt_to_str, str_to_dt

logger = logging.getLogger(__name__)


class FilesystemStore(ConversationStore):
    """Store conversations as ``<root>/conversations/<id>.json``."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._dir = self.root / "conversations"
        self._index_path = self.root / "_index.json"
        self._index: dict[str, dict] = {}
        self._lock = threading.Lock()
        self._ensure_root()
        self._load_index()

    def _ensure_root(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)

    def _load_index(self) -> None:
        if self._index_path.is_file():
            try:
                data = json.loads(self._index_path.read_text())
                self._index = {entry["conversation_id"]: entry for entry in data}
            except (json.JSONDecodeError, KeyError):
                logger.warning("Corrupt index at %s, starting empty", self._index_path)
                self._index = {}
        else:
            self._index = {}

    def _save_index(self) -> None:
        self._index_path.write_text(json.dumps(list(self._index.values()), indent=2))

    def _path(self, conversation_id: str) -> Path:
        return self._dir / f"{conversation_id}.json"

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            self._ensure_root()
            path = self._path(conversation.conversation_id)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(conversation_to_dict(conversation), indent=2, default=str))
            tmp.replace(path)
            self._index[conversation.conversation_id] = {
                "conversation_id": conversation.conversation_id,
                "last_activity": dt_to_str(conversation.last_activity),
                "turn_count": len(conversation.turns),
            }
            self._save_index()

    def load(self, conversation_id: str) -> Conversation | None:
        path = self._path(conversation_id)
        with self._lock:
            if conversation_id not in self._index or not path.is_file():
                return None
            data = json.loads(path.read_text())
        return conversation_from_dict(data)

    def list_recent(self, limit: int = 20) -> list[ConversationListing]:
        with self._lock:
            entries = list(self._index.values())
        listings = [
            ConversationListing(
                conversation_id=e["conversation_id"],
                last_activity=str_to_dt(e["last_activity"]),
                turn_count=e.get("turn_count", 0),
            )
            for e in entries
        ]
        listings.sort(key=lambda item: item.last_activity, reverse=True)
        return listings[:limit]

    def purge_ids_older_than(self, age: timedelta) -> list[str]:
        cutoff = datetime.now(timezone.utc) - age
        with self._lock:
            stale = [
                cid for cid, entry in self._index.items()
                if str_to_dt(entry["last_activity"]) < cutoff
            ]
            for cid in stale:
                self._remove_locked(cid)
            if stale:
                self._save_index()
        return stale

    def _remove_locked(self, conversation_id: str) -> bool:
        existed = self._index.pop(conversation_id, None) is not None
        self._path(conversation_id).unlink(missing_ok=True)
        return existed

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            existed = self._remove_locked(conversation_id)
            if existed:
                self._save_index()
        return existed

    def clear(self) -> int:
        with self._lock:
            count = len(self._index)
            for cid in list(self._index):
                self._remove_locked(cid)
            for stray in self._dir.glob("*.json*"):
                stray.unlink(missing_ok=True)
            self._save_index()
        return count
