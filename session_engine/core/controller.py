"""SessionController: drive one conversation's turns through the pipeline.

A turn goes: ceiling re-check -> uploads -> cache lookup -> context build ->
backend stream -> message store -> opportunistic optimize -> cache write ->
persistence. Turns of one conversation run one at a time under an
``asyncio.Lock``; waiters are served in FIFO order.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

from ..errors import (
    BackendError,
    LimitReached,
    TurnFailed,
    TurnInProgress,
    ValidationError,
)
from ..types import (
    AttachmentRef,
    CacheEntryMetadata,
    CancelledEvent,
    CompleteEvent,
    Conversation,
    DeltaEvent,
    ErrorEvent,
    FileInput,
    GenerationBackend,
    PerformanceSample,
    RecoveryAction,
    RetryEvent,
    SessionEngineConfig,
    SessionHandle,
    Turn,
    TurnEvent,
    UploadService,
)
from .context_optimizer import ContextOptimizer
from .error_classifier import ErrorClassifier
from .message_store import MessageStore
from .metrics import MetricsAggregator
from .monitor import ContextMonitor
from .recovery import (
    OPERATION_GENERATE,
    OPERATION_UPLOAD,
    FallbackResponder,
    RecoveryCoordinator,
)
from .response_cache import ResponseCache
from .validator import validate_input

logger = logging.getLogger(__name__)

_MARKDOWN_RE = re.compile(
    r"(^#{1,6}\s|^\s*[-*+]\s+\S|^\s*\d+\.\s+\S|```|\*\*[^*\n]+\*\*|^\|.+\|\s*$)",
    re.MULTILINE,
)

_TERMINAL_EVENTS = (CompleteEvent, ErrorEvent, CancelledEvent)


def detect_render_format(text: str) -> str:
    """Hint for the presentation layer: "markdown" or "text"."""
    return "markdown" if _MARKDOWN_RE.search(text) else "text"


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class TurnStream:
    """Async iterator over the events of one submitted turn.

    The stream always ends with exactly one terminal event:
    ``CompleteEvent``, ``ErrorEvent`` or ``CancelledEvent``. A ``RetryEvent``
    means the turn restarted and deltas received so far are void.
    """

    def __init__(self, conversation_id: str, text: str) -> None:
        self.conversation_id = conversation_id
        self.text = text
        self.keep_partial = False
        self.cancel_requested = False
        self.result: Turn | None = None
        self.error: ErrorEvent | None = None
        self._queue: asyncio.Queue[TurnEvent | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._terminal_sent = False
        self._exhausted = False

    def _attach(self, task: asyncio.Task, on_done: Callable[[], None]) -> None:
        self._task = task

        def _finished(t: asyncio.Task) -> None:
            on_done()
            if not self._terminal_sent:
                if t.cancelled():
                    # Cancelled before the pipeline got a chance to run.
                    self._emit(CancelledEvent(partial_text=""))
                elif t.exception() is not None:
                    exc = t.exception()
                    logger.error("Turn task failed: %s", exc, exc_info=exc)
                    self._emit(ErrorEvent(
                        kind="unknown",
                        message=f"{type(exc).__name__}: {exc}",
                        user_message="Something went wrong. Please try again.",
                    ))
            self._queue.put_nowait(None)

        task.add_done_callback(_finished)

    def _emit(self, event: TurnEvent) -> None:
        if self._terminal_sent:
            return
        if isinstance(event, DeltaEvent) and self.cancel_requested:
            return
        if isinstance(event, _TERMINAL_EVENTS):
            self._terminal_sent = True
            if isinstance(event, CompleteEvent):
                self.result = event.turn
            elif isinstance(event, ErrorEvent):
                self.error = event
        self._queue.put_nowait(event)

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancel(self, keep_partial: bool = False) -> bool:
        """Stop the turn. With ``keep_partial`` the text streamed so far is
        kept as an assistant turn flagged ``partial``."""
        if self._task is None or self._task.done():
            return False
        self.keep_partial = keep_partial
        self.cancel_requested = True
        return self._task.cancel()

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> TurnEvent:
        while not self._exhausted:
            event = await self._queue.get()
            if event is None:
                self._exhausted = True
                break
            if isinstance(event, DeltaEvent) and self.cancel_requested:
                continue
            return event
        raise StopAsyncIteration

    async def collect(self) -> list[TurnEvent]:
        """Drain the stream and return every event."""
        return [event async for event in self]


@dataclass
class _TurnState:
    user_turn: Turn | None = None
    partial: list[str] = field(default_factory=list)
    fresh_uploads: list[AttachmentRef] = field(default_factory=list)
    # Set once the exchange is in the message store.
    assistant: Turn | None = None

    @property
    def partial_text(self) -> str:
        return "".join(self.partial)

    @property
    def committed(self) -> bool:
        return self.assistant is not None


class SessionController:
    """Owns one conversation: its message store, backend handle and the
    uploads already made for it. Shared collaborators (cache, recovery,
    metrics) are injected by the engine."""

    def __init__(
        self,
        store: MessageStore,
        backend: GenerationBackend,
        handle: SessionHandle,
        config: SessionEngineConfig,
        *,
        optimizer: ContextOptimizer,
        monitor: ContextMonitor,
        classifier: ErrorClassifier,
        recovery: RecoveryCoordinator,
        fallback: FallbackResponder,
        metrics: MetricsAggregator,
        cache: ResponseCache | None = None,
        uploader: UploadService | None = None,
        persist: Callable[[Conversation], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.backend = backend
        self.handle = handle
        self.config = config
        self.optimizer = optimizer
        self.monitor = monitor
        self.classifier = classifier
        self.recovery = recovery
        self.fallback = fallback
        self.metrics = metrics
        self.cache = cache
        self.uploader = uploader
        self._persist_fn = persist
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._inflight = 0
        self._tasks: set[asyncio.Task] = set()
        # Reduced view of the conversation sent to the backend.
        self._context: list[Turn] = list(store.snapshot())
        self._uploads: dict[str, AttachmentRef] = {
            ref.sha256: ref
            for turn in self._context
            for ref in turn.attachments
            if ref.sha256
        }

    @property
    def conversation_id(self) -> str:
        return self.store.conversation_id

    @property
    def context(self) -> tuple[Turn, ...]:
        return tuple(self._context)

    @property
    def busy(self) -> bool:
        return self._inflight > 0

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, text: str, files: list[FileInput] | None = None) -> TurnStream:
        """Validate synchronously and start the turn.

        Raises EmptyInput, ValidationError, LimitReached or TurnInProgress
        before any task is created. Must be called from a running loop.
        """
        files = list(files or [])
        validate_input(text, files, self.config.conversation, self.config.uploads)
        if files and self.uploader is None:
            raise ValidationError(
                "No upload service configured",
                reason="uploads_disabled",
                user_message="Attachments are not available right now.",
            )
        usage = self.store.usage()
        if usage.limit_reached:
            raise LimitReached(usage.exchange_count, self.store.ceiling)
        if self._inflight and not self.config.conversation.queue_concurrent_turns:
            raise TurnInProgress(f"Conversation {self.conversation_id} already has a turn in flight")

        stream = TurnStream(self.conversation_id, text)
        self._inflight += 1
        task = asyncio.get_running_loop().create_task(self._run(stream, text, files))
        self._tasks.add(task)

        def _done() -> None:
            self._inflight -= 1
            self._tasks.discard(task)

        stream._attach(task, _done)
        return stream

    async def _run(self, stream: TurnStream, text: str, files: list[FileInput]) -> None:
        started = time.perf_counter()
        state = _TurnState()
        dims: dict = {"cache": "skip" if files else "miss", "attachments": len(files)}
        session_id = self.conversation_id
        try:
            async with self._lock:
                session_id = self.conversation_id
                try:
                    await self._pipeline(stream, text, files, state, dims)
                except asyncio.CancelledError:
                    await self._on_cancel(stream, state, dims)
                    raise
        finally:
            self.metrics.record(PerformanceSample(
                operation="turn",
                duration_ms=_elapsed_ms(started),
                session_id=session_id,
                dimensions=dims,
            ))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _pipeline(
        self,
        stream: TurnStream,
        text: str,
        files: list[FileInput],
        state: _TurnState,
        dims: dict,
    ) -> None:
        conversation_id = self.conversation_id
        started = time.perf_counter()

        # A queued turn may find the ceiling reached by the turns before it.
        usage = self.store.usage()
        if usage.limit_reached:
            err = LimitReached(usage.exchange_count, self.store.ceiling)
            dims["error"] = "limit_reached"
            stream._emit(ErrorEvent(kind="limit_reached", message=str(err), user_message=err.user_message))
            return

        refs: tuple[AttachmentRef, ...] = ()
        if files:
            try:
                refs = await self._upload_all(conversation_id, files, state)
            except TurnFailed as e:
                dims["error"] = e.kind
                stream._emit(ErrorEvent(kind=e.kind, message=str(e), user_message=e.user_message))
                return

        user_turn = Turn(role="user", content=text, attachments=refs)
        state.user_turn = user_turn

        if not files and self.cache is not None:
            cached = self.cache.get(text)
            if cached is not None:
                dims["cache"] = "hit"
                assistant = Turn(
                    role="assistant",
                    content=cached,
                    metadata=self._assistant_metadata(cached, cached=True, latency_ms=_elapsed_ms(started)),
                )
                stream._emit(DeltaEvent(cached))
                self._commit(user_turn, assistant)
                state.assistant = assistant
                await asyncio.shield(self._persist())
                stream._emit(CompleteEvent(assistant))
                return

        content, metadata = await self._generate(stream, conversation_id, user_turn, state, dims)
        if content is None:
            await self._release(state.fresh_uploads)
            return

        metadata = self._assistant_metadata(content, latency_ms=_elapsed_ms(started), **metadata)
        assistant = Turn(role="assistant", content=content, metadata=metadata)
        self._commit(user_turn, assistant)
        state.assistant = assistant

        if self.cache is not None and not files and not metadata.get("fallback"):
            self.cache.put(text, content, CacheEntryMetadata(
                token_estimate=self.optimizer.token_counter(content),
                source_tag="backend",
            ))

        # The exchange is committed; a cancel from here on must not undo it.
        await asyncio.shield(self._persist())
        stream._emit(CompleteEvent(assistant))

    def _assistant_metadata(self, content: str, **extra) -> dict:
        metadata = dict(extra)
        if self.config.features.markdown_hints:
            metadata["render_format"] = detect_render_format(content)
        return metadata

    def _build_context(self, user_turn: Turn) -> tuple[list[Turn], Turn]:
        """Reduced view plus the new user turn, hard-optimized if over budget."""
        payload = [*self._context, user_turn]
        budget = self.config.context_budget
        signal = self.monitor.check(self.monitor.measure(payload), budget)
        if signal is not None and signal.priority == "hard":
            started = time.perf_counter()
            result = self.optimizer.optimize(payload, budget)
            self.metrics.record(PerformanceSample(
                operation="optimize",
                duration_ms=_elapsed_ms(started),
                session_id=self.conversation_id,
                dimensions={
                    "priority": "hard",
                    "before": signal.current_tokens,
                    "after": result.total_tokens,
                    "dropped": result.dropped,
                    "truncated": result.truncated,
                },
            ))
            payload = result.turns
        return payload[:-1], payload[-1]

    async def _generate(
        self,
        stream: TurnStream,
        conversation_id: str,
        user_turn: Turn,
        state: _TurnState,
        dims: dict,
    ) -> tuple[str | None, dict]:
        history, prompt = self._build_context(user_turn)
        attempts = 0

        while True:
            attempts += 1
            dims["attempts"] = attempts
            state.partial = []
            call_started = time.perf_counter()
            try:
                async with asyncio.timeout(self.config.backend.timeout_seconds):
                    async for chunk in self.backend.stream_generate(
                        self.handle, prompt.content, user_turn.attachments, history,
                    ):
                        if chunk:
                            state.partial.append(chunk)
                            stream._emit(DeltaEvent(chunk))
                if not state.partial_text:
                    raise BackendError("Backend returned an empty response")
            except Exception as e:
                self._record_call(conversation_id, call_started, ok=False)
                classified = self.classifier.classify(e)
                decision = self.recovery.decide(conversation_id, OPERATION_GENERATE, classified)

                if decision.action is RecoveryAction.RETRY:
                    stream._emit(RetryEvent(
                        attempt=decision.attempt,
                        delay=decision.delay,
                        kind=classified.kind.value,
                    ))
                    state.partial = []
                    await self._sleep(decision.delay)
                    continue

                if decision.action is RecoveryAction.FALLBACK:
                    partial = state.partial_text
                    text = self.fallback.respond(classified, partial)
                    stream._emit(DeltaEvent(text[len(partial):] if text.startswith(partial) else text))
                    dims["fallback"] = True
                    metadata = {"fallback": True, "fallback_reason": classified.kind.value}
                    if partial.strip():
                        metadata["partial"] = True
                    return text, metadata

                dims["error"] = classified.kind.value
                stream._emit(ErrorEvent(
                    kind=classified.kind.value,
                    message=classified.message,
                    user_message=classified.user_message,
                ))
                return None, {}

            self._record_call(conversation_id, call_started, ok=True)
            self.recovery.record_success(conversation_id, OPERATION_GENERATE)
            return state.partial_text, {}

    def _record_call(self, conversation_id: str, started: float, ok: bool) -> None:
        self.metrics.record(PerformanceSample(
            operation="backend_call",
            duration_ms=_elapsed_ms(started),
            session_id=conversation_id,
            dimensions={"ok": ok},
        ))

    def _commit(self, user_turn: Turn, assistant: Turn) -> None:
        """Append the exchange, then shrink the reduced view if it grew past
        the soft threshold."""
        self.store.append_exchange(user_turn, assistant)
        self._context.extend((user_turn, assistant))

        budget = self.config.context_budget
        current = self.monitor.measure(self._context)
        signal = self.monitor.check(current, budget)
        if signal is None:
            return
        kept = self.config.optimizer.recent_turns_kept
        tail = self.monitor.measure(self._context[-kept:]) if kept else 0
        # Only older turns are dropped here; the recent tail is left alone.
        target = max(signal.target_tokens, tail)
        result = self.optimizer.optimize(self._context, target, allow_truncation=False)
        self._context = result.turns
        logger.debug(
            "Opportunistic optimize (%s): %d -> %d tokens, %d dropped",
            signal.priority, current, result.total_tokens, result.dropped,
        )
        self.metrics.record(PerformanceSample(
            operation="optimize",
            session_id=self.conversation_id,
            dimensions={
                "priority": signal.priority,
                "before": current,
                "after": result.total_tokens,
                "dropped": result.dropped,
            },
        ))

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def _upload_all(
        self,
        conversation_id: str,
        files: list[FileInput],
        state: _TurnState,
    ) -> tuple[AttachmentRef, ...]:
        """Upload every file or none. Identical bytes already uploaded in this
        conversation are reused."""
        refs: list[AttachmentRef] = []
        try:
            for file in files:
                digest = hashlib.sha256(file.data).hexdigest()
                ref = self._uploads.get(digest)
                if ref is None:
                    ref = await self._upload_one(conversation_id, file)
                    if ref.sha256 != digest:
                        ref = replace(ref, sha256=digest)
                    state.fresh_uploads.append(ref)
                    self._uploads[digest] = ref
                refs.append(ref)
        except BaseException:
            await self._release(state.fresh_uploads)
            raise
        return tuple(refs)

    async def _upload_one(self, conversation_id: str, file: FileInput) -> AttachmentRef:
        assert self.uploader is not None
        while True:
            started = time.perf_counter()
            try:
                async with asyncio.timeout(self.config.backend.timeout_seconds):
                    ref = await self.uploader.upload(file)
            except Exception as e:
                classified = self.classifier.classify(e)
                self._record_upload(conversation_id, started, file, classified.kind.value)
                decision = self.recovery.decide(conversation_id, OPERATION_UPLOAD, classified)
                if decision.action is RecoveryAction.RETRY:
                    await self._sleep(decision.delay)
                    continue
                raise TurnFailed(classified.kind.value, classified.message, classified.user_message) from e
            self._record_upload(conversation_id, started, file, None)
            self.recovery.record_success(conversation_id, OPERATION_UPLOAD)
            return ref

    def _record_upload(self, conversation_id: str, started: float, file: FileInput, error: str | None) -> None:
        dims = {"mime_type": file.mime_type, "size_bytes": file.size_bytes}
        if error:
            dims["error"] = error
        self.metrics.record(PerformanceSample(
            operation="upload",
            duration_ms=_elapsed_ms(started),
            session_id=conversation_id,
            dimensions=dims,
        ))

    async def _release(self, refs: list[AttachmentRef]) -> None:
        """Best-effort deletion of uploads no turn refers to."""
        for ref in refs:
            if self._uploads.get(ref.sha256) is ref:
                del self._uploads[ref.sha256]
            if self.uploader is None:
                continue
            try:
                await self.uploader.delete(ref)
            except Exception as e:
                logger.warning("Failed to release upload %s: %s", ref.id, e)
        refs.clear()

    # ------------------------------------------------------------------
    # Cancellation, persistence, lifecycle
    # ------------------------------------------------------------------

    async def _on_cancel(self, stream: TurnStream, state: _TurnState, dims: dict) -> None:
        if state.committed:
            # Cancelled while persisting: the answer is already stored and
            # its uploads are referenced, so the turn completes.
            stream._emit(CompleteEvent(state.assistant))
            logger.info("Cancel after commit ignored in %s", self.conversation_id[:8])
            return
        partial = state.partial_text
        dims["cancelled"] = True
        if stream.keep_partial and partial.strip() and state.user_turn is not None:
            assistant = Turn(
                role="assistant",
                content=partial,
                metadata=self._assistant_metadata(partial, partial=True, cancelled=True),
            )
            self._commit(state.user_turn, assistant)
            stream._emit(CancelledEvent(partial_text=partial))
            await self._persist()
        else:
            stream._emit(CancelledEvent(partial_text=partial))
            await self._release(state.fresh_uploads)
        logger.info("Turn cancelled in %s (kept partial: %s)", self.conversation_id[:8], stream.keep_partial)

    async def _persist(self) -> None:
        if self._persist_fn is None:
            return
        conversation = self.store.conversation()
        try:
            await asyncio.to_thread(self._persist_fn, conversation)
        except Exception as e:
            logger.error("Failed to persist conversation %s: %s", conversation.conversation_id, e)

    async def reset(self) -> str:
        """Start over in a fresh conversation. Waits for the turn in flight."""
        async with self._lock:
            old_id = self.store.conversation_id
            new_id = self.store.reset()
            self._context = []
            self._uploads.clear()
            self.handle = await self.backend.reset(self.handle)
            self.recovery.reset_session(old_id)
        logger.info("Conversation %s reset to %s", old_id[:8], new_id[:8])
        return new_id

    async def aclose(self) -> None:
        """Cancel turns still running and wait for them to settle."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
