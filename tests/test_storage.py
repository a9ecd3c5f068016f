"""Tests for the conversation stores (SQLite and filesystem) and export helpers."""

from datetime import datetime, timedelta, timezone

import pytest

from session_engine.config import load_config
from session_engine.storage import FilesystemStore, SQLiteStore, build_store
from session_engine.storage.helpers import (
    conversation_from_dict,
    conversation_to_dict,
    export_document,
    validate_export_document,
)
from session_engine.types import AttachmentRef, Conversation, Turn


@pytest.fixture(params=["sqlite", "filesystem"])
def store(request, tmp_store_dir):
    if request.param == "sqlite":
        s = SQLiteStore(tmp_store_dir / "conversations.db")
    else:
        s = FilesystemStore(tmp_store_dir / "fs")
    yield s
    s.close()


def _conversation(cid: str, turns: list[Turn], last_activity: datetime | None = None) -> Conversation:
    last = last_activity or (turns[-1].timestamp if turns else datetime.now(timezone.utc))
    return Conversation(
        conversation_id=cid,
        turns=list(turns),
        exchange_count=len(turns) // 2,
        created_at=turns[0].timestamp if turns else last,
        last_activity=last,
    )


class TestStore:
    def test_save_and_load(self, store, sample_turns):
        store.save(_conversation("c1", sample_turns))
        loaded = store.load("c1")
        assert loaded is not None
        assert loaded.conversation_id == "c1"
        assert loaded.exchange_count == 2
        assert [t.id for t in loaded.turns] == [t.id for t in sample_turns]
        assert [t.content for t in loaded.turns] == [t.content for t in sample_turns]
        assert loaded.turns[0].timestamp == sample_turns[0].timestamp

    def test_load_missing(self, store):
        assert store.load("nope") is None

    def test_save_is_upsert(self, store, sample_turns):
        store.save(_conversation("c1", sample_turns[:2]))
        store.save(_conversation("c1", sample_turns))
        assert len(store.load("c1").turns) == 4
        assert len(store.list_recent()) == 1

    def test_attachments_and_metadata_round_trip(self, store, ts):
        ref = AttachmentRef(
            id="files/1", remote_uri="https://files.test/1", mime_type="image/png",
            size_bytes=42, uploaded_at=ts, sha256="abc",
        )
        turns = [
            Turn(role="user", content="look", timestamp=ts, attachments=(ref,)),
            Turn(role="assistant", content="nice", timestamp=ts, metadata={"fallback": True, "latency_ms": 12.5}),
        ]
        store.save(_conversation("c1", turns))
        loaded = store.load("c1")
        assert loaded.turns[0].attachments == (ref,)
        assert loaded.turns[1].metadata == {"fallback": True, "latency_ms": 12.5}

    def test_list_recent_orders_by_activity(self, store, ts):
        for i in range(3):
            turn = Turn(role="user", content=f"q{i}", timestamp=ts + timedelta(hours=i))
            store.save(_conversation(f"c{i}", [turn]))
        listings = store.list_recent()
        assert [item.conversation_id for item in listings] == ["c2", "c1", "c0"]
        assert listings[0].turn_count == 1
        assert [item.conversation_id for item in store.list_recent(limit=1)] == ["c2"]

    def test_purge_older_than(self, store):
        now = datetime.now(timezone.utc)
        old = Turn(role="user", content="old", timestamp=now - timedelta(days=10))
        fresh = Turn(role="user", content="fresh", timestamp=now - timedelta(hours=1))
        store.save(_conversation("old", [old]))
        store.save(_conversation("fresh", [fresh]))
        assert store.purge_older_than(timedelta(days=7)) == 1
        assert store.load("old") is None
        assert store.load("fresh") is not None

    def test_purge_compares_across_offsets(self, store):
        now = datetime.now(timezone.utc)
        plus_two = timezone(timedelta(hours=2))
        # Two hours ago, written with a +02:00 offset.
        recent = (now - timedelta(hours=2)).astimezone(plus_two)
        store.save(_conversation("c1", [Turn(role="user", content="x", timestamp=recent)]))
        assert store.purge_older_than(timedelta(hours=3)) == 0
        assert store.purge_older_than(timedelta(hours=1)) == 1

    def test_delete(self, store, sample_turns):
        store.save(_conversation("c1", sample_turns))
        assert store.delete("c1") is True
        assert store.load("c1") is None
        assert store.delete("c1") is False

    def test_clear(self, store, sample_turns):
        store.save(_conversation("c1", sample_turns))
        store.save(_conversation("c2", sample_turns))
        assert store.clear() == 2
        assert store.list_recent() == []
        assert store.load("c1") is None


def test_sqlite_reopen_keeps_data(tmp_sqlite_db, sample_turns):
    first = SQLiteStore(tmp_sqlite_db)
    first.save(_conversation("c1", sample_turns))
    first.close()
    second = SQLiteStore(tmp_sqlite_db)
    try:
        assert len(second.load("c1").turns) == 4
    finally:
        second.close()


def test_filesystem_reopen_reads_index(tmp_store_dir, sample_turns):
    FilesystemStore(tmp_store_dir).save(_conversation("c1", sample_turns))
    reopened = FilesystemStore(tmp_store_dir)
    assert [item.conversation_id for item in reopened.list_recent()] == ["c1"]


def test_filesystem_corrupt_index_starts_empty(tmp_store_dir):
    (tmp_store_dir / "_index.json").write_text("{not json")
    assert FilesystemStore(tmp_store_dir).list_recent() == []


def test_build_store(tmp_store_dir):
    config = load_config(config_dict={"storage": {
        "backend": "filesystem", "root": str(tmp_store_dir / "fs"),
    }})
    assert isinstance(build_store(config), FilesystemStore)
    config = load_config(config_dict={"storage": {"sqlite_path": str(tmp_store_dir / "x.db")}})
    sqlite_store = build_store(config)
    assert isinstance(sqlite_store, SQLiteStore)
    sqlite_store.close()


class TestExportDocument:
    def test_round_trip(self, sample_turns):
        conversation = _conversation("c1", sample_turns)
        doc = export_document(conversation)
        assert doc["format_version"] == "1.0"
        assert validate_export_document(doc) == []
        restored = conversation_from_dict(doc["conversation"])
        assert restored.turns == conversation.turns
        assert conversation_to_dict(restored) == conversation_to_dict(conversation)

    def test_rejects_non_object(self):
        assert validate_export_document([1, 2]) == ["document must be a JSON object"]

    def test_rejects_missing_conversation(self):
        assert "missing 'conversation' object" in validate_export_document({"format_version": "1.0"})

    def test_rejects_future_major_version(self, sample_turns):
        doc = export_document(_conversation("c1", sample_turns))
        doc["format_version"] = "2.0"
        assert any("format_version" in e for e in validate_export_document(doc))

    def test_collects_every_turn_problem(self, sample_turns):
        doc = export_document(_conversation("c1", sample_turns))
        turns = doc["conversation"]["turns"]
        del turns[0]["content"]
        turns[1]["role"] = "system"
        turns[2]["timestamp"] = "yesterday"
        turns[3]["id"] = turns[2]["id"]
        errors = validate_export_document(doc)
        assert len(errors) == 4
        assert "turn 0: missing content" in errors

    def test_rejects_malformed_attachments_and_ids(self, sample_turns):
        doc = export_document(_conversation("c1", sample_turns))
        turns = doc["conversation"]["turns"]
        turns[0]["id"] = ["x"]
        turns[1]["attachments"] = [
            {"id": "f1", "uploaded_at": "not-a-date", "size_bytes": -1},
            "files/2",
        ]
        errors = validate_export_document(doc)
        assert errors == [
            "turn 0: id must be a non-empty string",
            "turn 1: attachment 0: size_bytes must be a non-negative integer",
            "turn 1: attachment 0: uploaded_at is not ISO-8601",
            "turn 1: attachment 1: not an object",
        ]

    def test_turns_must_be_list(self):
        errors = validate_export_document({"conversation": {"conversation_id": "x", "turns": "nope"}})
        assert errors == ["conversation.turns must be a list"]
