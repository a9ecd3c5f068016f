"""Tests for MessageStore."""

import threading

import pytest

from session_engine.core.message_store import MessageStore, count_exchanges
from session_engine.errors import LimitReached
from session_engine.types import Conversation, Turn


def _exchange(store: MessageStore, i: int) -> None:
    store.append_exchange(
        Turn(role="user", content=f"question {i}"),
        Turn(role="assistant", content=f"answer {i}"),
    )


def test_append_exchange_counts_round_trips():
    store = MessageStore(ceiling=5)
    _exchange(store, 0)
    _exchange(store, 1)
    assert store.exchange_count == 2
    assert [t.content for t in store.snapshot()] == [
        "question 0", "answer 0", "question 1", "answer 1",
    ]


def test_lone_user_turn_is_not_an_exchange():
    store = MessageStore()
    store.append(Turn(role="user", content="hello?"))
    assert store.exchange_count == 0
    store.append(Turn(role="assistant", content="hi"))
    assert store.exchange_count == 1


def test_assistant_without_user_not_counted():
    store = MessageStore()
    store.append(Turn(role="assistant", content="Welcome!"))
    assert store.exchange_count == 0


def test_ceiling_blocks_append():
    store = MessageStore(ceiling=2)
    _exchange(store, 0)
    _exchange(store, 1)
    with pytest.raises(LimitReached) as exc_info:
        _exchange(store, 2)
    assert exc_info.value.exchange_count == 2
    assert exc_info.value.ceiling == 2
    assert len(store.snapshot()) == 4


def test_usage():
    store = MessageStore(ceiling=3)
    assert store.usage().remaining == 3
    _exchange(store, 0)
    usage = store.usage()
    assert usage.exchange_count == 1
    assert usage.remaining == 2
    assert usage.limit_reached is False
    _exchange(store, 1)
    _exchange(store, 2)
    assert store.usage().limit_reached is True
    assert store.usage().remaining == 0


def test_unknown_role_rejected():
    store = MessageStore()
    with pytest.raises(ValueError):
        store.append(Turn(role="system", content="x"))


def test_snapshot_is_immutable_copy():
    store = MessageStore()
    _exchange(store, 0)
    snap = store.snapshot()
    _exchange(store, 1)
    assert isinstance(snap, tuple)
    assert len(snap) == 2


def test_annotate_merges_metadata():
    store = MessageStore()
    user = Turn(role="user", content="hi", metadata={"a": 1})
    store.append(user)
    assert store.annotate(user.id, b=2) is True
    assert store.snapshot()[0].metadata == {"a": 1, "b": 2}
    assert store.annotate("missing", b=2) is False


def test_reset_assigns_new_id():
    store = MessageStore(ceiling=1)
    old_id = store.conversation_id
    _exchange(store, 0)
    new_id = store.reset()
    assert new_id != old_id
    assert store.conversation_id == new_id
    assert store.snapshot() == ()
    assert store.usage().limit_reached is False


def test_from_conversation_recomputes_count(sample_turns):
    conversation = Conversation(conversation_id="abc", turns=sample_turns, exchange_count=99)
    store = MessageStore.from_conversation(conversation, ceiling=10)
    assert store.conversation_id == "abc"
    assert store.exchange_count == 2
    assert store.conversation().created_at == conversation.created_at


def test_from_conversation_with_trailing_user(sample_turns):
    turns = sample_turns + [Turn(role="user", content="one more thing")]
    store = MessageStore.from_conversation(Conversation(turns=turns))
    store.append(Turn(role="assistant", content="sure"))
    assert store.exchange_count == 3


def test_count_exchanges(sample_turns):
    assert count_exchanges(sample_turns) == 2
    assert count_exchanges([]) == 0
    assert count_exchanges(sample_turns[:1]) == 0


def test_concurrent_appends_keep_exchanges_contiguous():
    store = MessageStore(ceiling=1000)

    def worker(n: int):
        for i in range(50):
            _exchange(store, n * 100 + i)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    snap = store.snapshot()
    assert store.exchange_count == 200
    for i in range(0, len(snap), 2):
        assert snap[i].role == "user"
        assert snap[i + 1].content == snap[i].content.replace("question", "answer")
