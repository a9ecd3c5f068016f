"""Shared fixtures and fake collaborators for session-engine tests."""

from __future__ import annotations

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from session_engine.config import load_config
from session_engine.engine import SessionEngine
from session_engine.types import (
    AttachmentRef,
    BackendConfig,
    FileInput,
    SessionEngineConfig,
    SessionHandle,
    Turn,
)

# Script item that blocks the stream until the turn is cancelled.
HANG = object()


class FakeBackend:
    """Scripted generation backend (no network).

    Each call consumes the next script entry; the last entry repeats. An
    entry is a response string (streamed word by word), an exception (raised
    before any output), or a list of chunks where exceptions raise mid-stream
    and ``HANG`` blocks forever.
    """

    def __init__(self, script: list | None = None):
        self.script = list(script or ["Hello! I'm a test assistant."])
        self.calls: list[dict] = []
        self.reset_count = 0
        self.closed = False
        self.first_chunk = asyncio.Event()
        self.hanging = asyncio.Event()

    async def initialize(self, config: BackendConfig) -> SessionHandle:
        return SessionHandle(model=config.model, system_prompt=config.system_prompt)

    async def stream_generate(self, handle, text, attachments=(), context=None):
        self.calls.append({
            "text": text,
            "attachments": tuple(attachments),
            "context": list(context or []),
        })
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            words = item.split(" ")
            chunks = [w + (" " if i < len(words) - 1 else "") for i, w in enumerate(words)]
        else:
            chunks = item

        produced = []
        for chunk in chunks:
            if chunk is HANG:
                self.hanging.set()
                await asyncio.Event().wait()
            if isinstance(chunk, BaseException):
                raise chunk
            produced.append(chunk)
            yield chunk
            self.first_chunk.set()
            await asyncio.sleep(0)

        handle.history.append(Turn(role="user", content=text, attachments=tuple(attachments)))
        handle.history.append(Turn(role="assistant", content="".join(produced)))

    async def fetch_history(self, handle):
        return list(handle.history)

    async def reset(self, handle):
        self.reset_count += 1
        return SessionHandle(model=handle.model, system_prompt=handle.system_prompt)

    async def aclose(self):
        self.closed = True


class FakeUploader:
    """Upload service that records uploads and deletions."""

    def __init__(self, failures: list[Exception] | None = None):
        self.failures = list(failures or [])
        self.fail_on: dict[str, Exception] = {}
        self.uploaded: list[FileInput] = []
        self.deleted: list[AttachmentRef] = []
        self.attempts = 0

    async def upload(self, file: FileInput) -> AttachmentRef:
        self.attempts += 1
        if file.filename in self.fail_on:
            raise self.fail_on[file.filename]
        if self.failures:
            raise self.failures.pop(0)
        self.uploaded.append(file)
        n = len(self.uploaded)
        return AttachmentRef(
            id=f"files/{n}",
            remote_uri=f"https://files.test/{n}",
            mime_type=file.mime_type,
            size_bytes=file.size_bytes,
        )

    async def delete(self, ref: AttachmentRef) -> None:
        self.deleted.append(ref)


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records backoff delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def ts() -> datetime:
    return datetime(2026, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_turns(ts) -> list[Turn]:
    return [
        Turn(role="user", content="What is your pricing?", timestamp=ts),
        Turn(role="assistant", content="Plans start at $10 per month.", timestamp=ts + timedelta(seconds=5)),
        Turn(role="user", content="Is there a free trial?", timestamp=ts + timedelta(minutes=1)),
        Turn(role="assistant", content="Yes, 14 days with every feature.", timestamp=ts + timedelta(minutes=1, seconds=5)),
    ]


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "test_store.db"


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_uploader() -> FakeUploader:
    return FakeUploader()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_config():
    """Build a config from overrides. Persistence is off unless enabled."""

    def _make(**sections) -> SessionEngineConfig:
        raw = {"features": {"persistence": False}}
        raw.update(sections)
        return load_config(config_dict=raw)

    return _make


@pytest.fixture
def make_engine(make_config, fake_backend, fake_uploader, sleeper, clock):
    """Build an engine around the shared fakes."""

    def _make(config: SessionEngineConfig | None = None, **kwargs) -> SessionEngine:
        kwargs.setdefault("backend", fake_backend)
        kwargs.setdefault("uploader", fake_uploader)
        kwargs.setdefault("sleep", sleeper)
        kwargs.setdefault("clock", clock)
        return SessionEngine(config or make_config(), **kwargs)

    return _make


def png(name: str = "photo.png", payload: bytes = b"\x89PNG fake image bytes") -> FileInput:
    return FileInput(filename=name, mime_type="image/png", data=payload)
