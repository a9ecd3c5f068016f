"""SessionEngine: caller-facing facade wiring all components together."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from .config import load_config, validate_config
from .core.context_optimizer import ContextOptimizer
from .core.controller import SessionController, TurnStream
from .core.error_classifier import ErrorClassifier
from .core.message_store import MessageStore
from .core.metrics import MetricsAggregator
from .core.monitor import ContextMonitor
from .core.rate_limiter import RateLimiter
from .core.recovery import FallbackResponder, RecoveryCoordinator
from .core.response_cache import ResponseCache
from .errors import ConfigError, ConversationNotFound, ImportValidationError
from .providers import build_backend, build_uploader
from .storage import ConversationStore, build_store
from .storage.helpers import (
    conversation_from_dict,
    export_document,
    validate_export_document,
)
from .token_counter import create_token_counter
from .types import (
    Conversation,
    ConversationListing,
    FileInput,
    GenerationBackend,
    SessionEngineConfig,
    SessionSummary,
    Turn,
    UploadService,
    Usage,
    new_id,
)

logger = logging.getLogger(__name__)


class SessionEngine:
    """Manage many conversations against one generation backend.

    Usage:
        async with SessionEngine(config) as engine:
            conversation_id = await engine.start_new_conversation()
            async for event in engine.submit_turn(conversation_id, "Hello"):
                ...

    Collaborators default to the ones described by ``config`` and can be
    injected for tests or embedding.
    """

    def __init__(
        self,
        config: SessionEngineConfig | None = None,
        *,
        config_path: str | Path | None = None,
        backend: GenerationBackend | None = None,
        uploader: UploadService | None = None,
        store: ConversationStore | None = None,
        metrics: MetricsAggregator | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_config(config_path)
        errors = validate_config(self.config)
        if errors:
            raise ConfigError(errors)

        self.token_counter = create_token_counter(self.config.token_counter)
        self.metrics = metrics or MetricsAggregator(
            max_samples=self.config.metrics.max_samples,
            enabled=self.config.features.metrics,
        )
        self.cache: ResponseCache | None = None
        if self.config.cache.enabled:
            self.cache = ResponseCache(
                ttl_seconds=self.config.cache.ttl_seconds,
                max_entries=self.config.cache.max_entries,
                clock=clock,
            )
        self.classifier = ErrorClassifier()
        self.recovery = RecoveryCoordinator(self.config.retry, metrics=self.metrics, clock=clock)
        self.fallback = FallbackResponder()
        self.rate_limiter: RateLimiter | None = None
        if self.config.rate_limit.enabled:
            self.rate_limiter = RateLimiter(self.config.rate_limit, clock=clock)
        self.optimizer = ContextOptimizer(self.config.optimizer, self.token_counter)
        self.monitor = ContextMonitor(self.config.optimizer, self.token_counter)

        self.backend = backend if backend is not None else build_backend(self.config)
        self.uploader = uploader if uploader is not None else build_uploader(self.config)
        self.store: ConversationStore | None = None
        if self.config.features.persistence:
            self.store = store if store is not None else build_store(self.config)

        self._sleep = sleep
        self._sessions: dict[str, SessionController] = {}
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sweeper (cache expiry and retention purge)."""
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for controller in list(self._sessions.values()):
            await controller.aclose()
        await self.backend.aclose()
        aclose = getattr(self.uploader, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.store is not None:
            self.store.close()

    async def __aenter__(self) -> SessionEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        interval = self.config.cache.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            await self.sweep()

    async def sweep(self) -> None:
        """One maintenance pass. Failures are logged, never raised."""
        if self.cache is not None:
            removed = self.cache.sweep()
            if removed:
                logger.debug("Cache sweep removed %d expired entries", removed)
        if self.rate_limiter is not None:
            self.rate_limiter.sweep()
        try:
            purged = await self.purge_older_than(timedelta(days=self.config.conversation.retention_days))
        except Exception as e:
            logger.warning("Retention purge failed: %s", e)
            return
        if purged:
            logger.info("Retention purge removed %d conversation(s)", purged)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def _controller(self, conversation_id: str) -> SessionController:
        controller = self._sessions.get(conversation_id)
        if controller is None:
            raise ConversationNotFound(conversation_id)
        return controller

    async def _open(self, conversation: Conversation | None = None) -> SessionController:
        handle = await self.backend.initialize(self.config.backend)
        ceiling = self.config.conversation.exchange_ceiling
        if conversation is None:
            store = MessageStore(ceiling=ceiling)
        else:
            store = MessageStore.from_conversation(conversation, ceiling=ceiling)
            handle.history = list(conversation.turns)
        controller = SessionController(
            store,
            self.backend,
            handle,
            self.config,
            optimizer=self.optimizer,
            monitor=self.monitor,
            classifier=self.classifier,
            recovery=self.recovery,
            fallback=self.fallback,
            metrics=self.metrics,
            cache=self.cache,
            uploader=self.uploader,
            persist=self.store.save if self.store is not None else None,
            sleep=self._sleep,
        )
        self._sessions[controller.conversation_id] = controller
        return controller

    async def start_new_conversation(self) -> str:
        controller = await self._open()
        logger.info("Started conversation %s", controller.conversation_id)
        return controller.conversation_id

    async def load_conversation(self, conversation_id: str) -> str:
        """Make a persisted conversation active again."""
        if conversation_id in self._sessions:
            return conversation_id
        conversation = None
        if self.store is not None:
            conversation = await asyncio.to_thread(self.store.load, conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        controller = await self._open(conversation)
        return controller.conversation_id

    def submit_turn(
        self,
        conversation_id: str,
        text: str,
        files: list[FileInput] | None = None,
        client_id: str | None = None,
    ) -> TurnStream:
        """Start a turn and return its event stream.

        Raises EmptyInput, ValidationError, LimitReached, TurnInProgress,
        RateLimited or ConversationNotFound synchronously, before any network
        call. Turns are rate limited per ``client_id``, or per conversation
        when no client is given.
        """
        controller = self._controller(conversation_id)
        if self.rate_limiter is not None:
            self.rate_limiter.acquire(client_id or conversation_id)
        return controller.submit(text, files)

    def get_usage(self, conversation_id: str) -> Usage:
        return self._controller(conversation_id).store.usage()

    def conversation(self, conversation_id: str) -> Conversation:
        return self._controller(conversation_id).store.conversation()

    def session_summary(self, conversation_id: str) -> SessionSummary:
        return self.metrics.session_summary(conversation_id)

    async def backend_history(self, conversation_id: str) -> list[Turn]:
        controller = self._controller(conversation_id)
        return await self.backend.fetch_history(controller.handle)

    async def reset_conversation(self, conversation_id: str) -> str:
        """Start over: the old conversation stays persisted, a new id is returned."""
        controller = self._controller(conversation_id)
        new_conversation_id = await controller.reset()
        self._sessions.pop(conversation_id, None)
        self._sessions[new_conversation_id] = controller
        return new_conversation_id

    async def list_recent(self, limit: int = 20) -> list[ConversationListing]:
        if self.store is not None:
            return await asyncio.to_thread(self.store.list_recent, limit)
        listings = [
            ConversationListing(
                conversation_id=c.conversation_id,
                last_activity=c.last_activity,
                turn_count=len(c.turns),
            )
            for c in (controller.store.conversation() for controller in self._sessions.values())
        ]
        listings.sort(key=lambda item: item.last_activity, reverse=True)
        return listings[:limit]

    async def purge_older_than(self, age: timedelta) -> int:
        """Delete conversations idle for longer than ``age``, persisted or not.

        Conversations with a turn in flight are left alone.
        """
        cutoff = datetime.now(timezone.utc) - age
        purged: set[str] = set()
        for conversation_id, controller in list(self._sessions.items()):
            if controller.busy:
                continue
            if controller.store.conversation().last_activity < cutoff:
                self._sessions.pop(conversation_id, None)
                self.recovery.reset_session(conversation_id)
                purged.add(conversation_id)
        if self.store is not None:
            stored = await asyncio.to_thread(self.store.purge_ids_older_than, age)
            purged.update(stored)
        return len(purged)

    # ------------------------------------------------------------------
    # Export / import / privacy
    # ------------------------------------------------------------------

    async def export_conversation(self, conversation_id: str) -> str:
        """Serialize a conversation (active or persisted) to JSON."""
        if conversation_id in self._sessions:
            conversation = self._sessions[conversation_id].store.conversation()
        else:
            conversation = None
            if self.store is not None:
                conversation = await asyncio.to_thread(self.store.load, conversation_id)
            if conversation is None:
                raise ConversationNotFound(conversation_id)
        return json.dumps(export_document(conversation), indent=2, default=str)

    async def import_conversation(self, data: str | bytes | dict) -> str:
        """Validate and activate an exported conversation. All-or-nothing.

        The exported id is kept unless a conversation with that id already
        exists, in which case a new one is assigned.
        """
        if isinstance(data, dict):
            doc = data
        else:
            try:
                doc = json.loads(data)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ImportValidationError([f"not valid JSON: {e}"]) from e

        errors = validate_export_document(doc)
        if errors:
            raise ImportValidationError(errors)

        raw = dict(doc["conversation"])
        conversation_id = raw.get("conversation_id") or new_id()
        if conversation_id in self._sessions or await self._stored(conversation_id):
            conversation_id = new_id()
        raw["conversation_id"] = conversation_id
        try:
            conversation = conversation_from_dict(raw)
        except (ValueError, TypeError, KeyError) as e:
            raise ImportValidationError([f"unreadable conversation: {e}"]) from e

        controller = await self._open(conversation)
        if self.store is not None:
            await asyncio.to_thread(self.store.save, controller.store.conversation())
        logger.info(
            "Imported conversation %s (%d turns)", conversation_id, len(conversation.turns),
        )
        return conversation_id

    async def _stored(self, conversation_id: str) -> bool:
        if self.store is None:
            return False
        return await asyncio.to_thread(self.store.load, conversation_id) is not None

    async def clear_all_local_data(self) -> None:
        """Privacy wipe: persisted conversations, cache, retry state, metrics
        and every in-memory conversation."""
        for controller in list(self._sessions.values()):
            await controller.aclose()
        self._sessions.clear()
        if self.cache is not None:
            self.cache.invalidate_all()
        self.recovery.reset_all()
        if self.rate_limiter is not None:
            self.rate_limiter.reset()
        self.metrics.clear()
        if self.store is not None:
            removed = await asyncio.to_thread(self.store.clear)
            logger.info("Cleared %d persisted conversation(s)", removed)
