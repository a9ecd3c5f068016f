"""SQLiteStore: default persistence backend using stdlib sqlite3."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

from ..types import Conversation, ConversationListing, Turn
from .base import ConversationStore
from .helpers import attachment_from_dict, attachment_to_dict, dt_to_str, str_to_dt

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS conversations (
    conversation_id TEXT PRIMARY KEY,
    exchange_count INTEGER NOT NULL DEFAULT 0,
    turn_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_activity TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS turns (
    conversation_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL,
    attachments_json TEXT NOT NULL DEFAULT '[]',
    metadata_json TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (conversation_id, seq),
    FOREIGN KEY (conversation_id) REFERENCES conversations(conversation_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_conversations_last_activity ON conversations(last_activity);
"""


class SQLiteStore(ConversationStore):
    """One row per conversation, one row per turn."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._ensure_schema()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            conn = self._get_conn()
            with conn:
                conn.execute(
                    """INSERT OR REPLACE INTO conversations
                    (conversation_id, exchange_count, turn_count, created_at, last_activity)
                    VALUES (?, ?, ?, ?, ?)""",
                    (
                        conversation.conversation_id,
                        conversation.exchange_count,
                        len(conversation.turns),
                        dt_to_str(conversation.created_at),
                        dt_to_str(conversation.last_activity),
                    ),
                )
                conn.execute(
                    "DELETE FROM turns WHERE conversation_id = ?",
                    (conversation.conversation_id,),
                )
                conn.executemany(
                    """INSERT INTO turns
                    (conversation_id, seq, id, role, content, timestamp,
                     attachments_json, metadata_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    [
                        (
                            conversation.conversation_id,
                            seq,
                            turn.id,
                            turn.role,
                            turn.content,
                            dt_to_str(turn.timestamp),
                            json.dumps([attachment_to_dict(a) for a in turn.attachments]),
                            json.dumps(turn.metadata, default=str),
                        )
                        for seq, turn in enumerate(conversation.turns)
                    ],
                )

    def load(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT * FROM conversations WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            if not row:
                return None
            turn_rows = conn.execute(
                "SELECT * FROM turns WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            ).fetchall()
        return Conversation(
            conversation_id=row["conversation_id"],
            turns=[self._row_to_turn(r) for r in turn_rows],
            exchange_count=row["exchange_count"],
            created_at=str_to_dt(row["created_at"]),
            last_activity=str_to_dt(row["last_activity"]),
        )

    @staticmethod
    def _row_to_turn(row: sqlite3.Row) -> Turn:
        return Turn(
            id=row["id"],
            role=row["role"],
            content=row["content"],
            timestamp=str_to_dt(row["timestamp"]),
            attachments=tuple(attachment_from_dict(a) for a in json.loads(row["attachments_json"])),
            metadata=json.loads(row["metadata_json"]),
        )

    def list_recent(self, limit: int = 20) -> list[ConversationListing]:
        with self._lock:
            rows = self._get_conn().execute(
                """SELECT conversation_id, last_activity, turn_count FROM conversations
                ORDER BY last_activity DESC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [
            ConversationListing(
                conversation_id=r["conversation_id"],
                last_activity=str_to_dt(r["last_activity"]),
                turn_count=r["turn_count"],
            )
            for r in rows
        ]

    def purge_ids_older_than(self, age: timedelta) -> list[str]:
        cutoff = datetime.now(timezone.utc) - age
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute("SELECT conversation_id, last_activity FROM conversations").fetchall()
            # Compared as datetimes: stored offsets may differ.
            stale = [r["conversation_id"] for r in rows if str_to_dt(r["last_activity"]) < cutoff]
            with conn:
                conn.executemany(
                    "DELETE FROM conversations WHERE conversation_id = ?",
                    [(cid,) for cid in stale],
                )
        return stale

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            conn = self._get_conn()
            with conn:
                cursor = conn.execute(
                    "DELETE FROM conversations WHERE conversation_id = ?",
                    (conversation_id,),
                )
        return cursor.rowcount > 0

    def clear(self) -> int:
        with self._lock:
            conn = self._get_conn()
            with conn:
                count = conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
                conn.execute("DELETE FROM turns")
                conn.execute("DELETE FROM conversations")
        return count

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
