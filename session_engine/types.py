"""All dataclasses, Protocols, and type aliases for session-engine."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Protocol, runtime_checkable


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Turns & conversations
# ---------------------------------------------------------------------------

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class AttachmentRef:
    """Result of a successful upload."""
    id: str
    remote_uri: str
    mime_type: str
    size_bytes: int
    uploaded_at: datetime = field(default_factory=_utcnow)
    sha256: str = ""  # content digest, used to reuse uploads within one conversation


@dataclass(frozen=True)
class FileInput:
    """A file the caller wants attached to a turn."""
    filename: str
    mime_type: str
    data: bytes

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class Turn:
    """One message in a conversation. Only ``metadata`` may change after append."""
    role: Role
    content: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=_utcnow)
    attachments: tuple[AttachmentRef, ...] = ()
    metadata: dict = field(default_factory=dict, compare=False)


@dataclass
class Conversation:
    conversation_id: str = field(default_factory=new_id)
    turns: list[Turn] = field(default_factory=list)
    exchange_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Usage:
    exchange_count: int
    remaining: int
    limit_reached: bool


@dataclass(frozen=True)
class ConversationListing:
    """Row returned by ``ConversationStore.list_recent``."""
    conversation_id: str
    last_activity: datetime
    turn_count: int


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

@dataclass
class CacheEntryMetadata:
    token_estimate: int = 0
    confidence_score: float = 1.0
    source_tag: str = "backend"  # "backend", "import", "template"


@dataclass
class CacheEntry:
    key: str
    value: str
    created_at: float  # clock() reading, not wall time
    last_access: float
    hits: int = 0
    metadata: CacheEntryMetadata = field(default_factory=CacheEntryMetadata)
    query: str = ""  # normalized form, for stats


@dataclass(frozen=True)
class CacheStats:
    entries: int = 0
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    top_queries: list[tuple[str, int]] = field(default_factory=list)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # clock() reading
    retry_after: float | None = None


# ---------------------------------------------------------------------------
# Context optimization
# ---------------------------------------------------------------------------

@dataclass
class OptimizedContext:
    turns: list[Turn] = field(default_factory=list)
    total_tokens: int = 0
    dropped: int = 0
    summarized: int = 0
    truncated: bool = False


@dataclass
class OptimizeSignal:
    priority: Literal["soft", "hard"]
    current_tokens: int
    budget_tokens: int
    target_tokens: int


# ---------------------------------------------------------------------------
# Errors & recovery
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid_input"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset({ErrorKind.INVALID_INPUT, ErrorKind.QUOTA_EXCEEDED})


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    user_message: str
    retry_after: float | None = None

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS


class RecoveryAction(str, Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    SURFACE = "surface"


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    delay: float = 0.0
    attempt: int = 0  # attempts made so far, including the one that failed
    reason: str = ""


@dataclass
class RetryState:
    attempt_count: int = 0  # retries granted since the last success
    last_attempt_at: float | None = None
    cooldown_until: float | None = None


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PerformanceSample:
    operation: str  # "turn", "backend_call", "upload", "recovery", "optimize"
    duration_ms: float = 0.0
    session_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    dimensions: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class SessionSummary:
    session_id: str
    count: int = 0
    avg_duration_ms: float = 0.0
    cache_hit_rate: float = 0.0
    error_rate: float = 0.0
    backend_calls: int = 0
    fallbacks: int = 0


# ---------------------------------------------------------------------------
# Turn events (what ``submit_turn`` streams back)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeltaEvent:
    text: str
    type: str = "delta"


@dataclass(frozen=True)
class RetryEvent:
    """The turn restarts from scratch; deltas shown so far are void."""
    attempt: int
    delay: float
    kind: str
    type: str = "retry"


@dataclass(frozen=True)
class CompleteEvent:
    turn: Turn
    type: str = "complete"


@dataclass(frozen=True)
class ErrorEvent:
    kind: str
    message: str
    user_message: str
    type: str = "error"


@dataclass(frozen=True)
class CancelledEvent:
    partial_text: str
    type: str = "cancelled"


TurnEvent = DeltaEvent | RetryEvent | CompleteEvent | ErrorEvent | CancelledEvent


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@dataclass
class SessionHandle:
    """Backend-side view of one conversation."""
    handle_id: str = field(default_factory=new_id)
    model: str = ""
    system_prompt: str = ""
    history: list[Turn] = field(default_factory=list)


@runtime_checkable
class GenerationBackend(Protocol):
    async def initialize(self, config: BackendConfig) -> SessionHandle: ...

    def stream_generate(
        self,
        handle: SessionHandle,
        text: str,
        attachments: tuple[AttachmentRef, ...] = (),
        context: list[Turn] | None = None,
    ) -> AsyncIterator[str]: ...

    async def fetch_history(self, handle: SessionHandle) -> list[Turn]: ...

    async def reset(self, handle: SessionHandle) -> SessionHandle: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class UploadService(Protocol):
    async def upload(self, file: FileInput) -> AttachmentRef: ...

    async def delete(self, ref: AttachmentRef) -> None: ...


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_ALLOWED_MIME_TYPES = [
    "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp",
    "image/bmp", "image/svg+xml",
    "video/mp4", "video/mpeg", "video/quicktime", "video/webm",
    "video/x-msvideo", "video/ogg",
    "audio/mpeg", "audio/mp3", "audio/wav", "audio/ogg", "audio/mp4",
    "audio/webm", "audio/aac",
]


@dataclass
class BackendConfig:
    provider: str = "gemini"  # "gemini" or "openai"
    model: str = "gemini-1.5-flash"
    temperature: float = 0.7
    max_output_tokens: int = 2048
    timeout_seconds: float = 30.0
    system_prompt: str = ""
    base_url: str = ""  # empty = provider default


@dataclass
class OptimizerConfig:
    recent_turns_kept: int = 6
    soft_threshold: float = 0.70
    summarize: bool = True
    max_summary_tokens: int = 200


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl_seconds: float = 1800.0
    max_entries: int = 1000
    sweep_interval_seconds: float = 300.0


@dataclass
class ConversationConfig:
    exchange_ceiling: int = 10
    max_message_length: int = 4000
    queue_concurrent_turns: bool = True
    retention_days: int = 7


@dataclass
class UploadConfig:
    max_file_size: int = 10 * 1024 * 1024
    max_files_per_turn: int = 5
    allowed_mime_types: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_MIME_TYPES))


@dataclass
class StorageConfig:
    backend: str = "sqlite"  # "sqlite" or "filesystem"
    root: str = ".session-engine/store"
    sqlite_path: str = ".session-engine/conversations.db"


@dataclass
class FeatureFlags:
    persistence: bool = True
    metrics: bool = True
    markdown_hints: bool = True


@dataclass
class MetricsConfig:
    max_samples: int = 10_000


@dataclass
class RateLimitConfig:
    """Turns accepted per client within a fixed window."""
    enabled: bool = True
    max_requests: int = 10
    window_seconds: float = 60.0


@dataclass
class SessionEngineConfig:
    version: str = "1.0"
    storage_root: str = ".session-engine"
    context_budget: int = 30_000
    token_counter: str = "estimate"
    backend: BackendConfig = field(default_factory=BackendConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    uploads: UploadConfig = field(default_factory=UploadConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    features: FeatureFlags = field(default_factory=FeatureFlags)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    providers: dict[str, dict] = field(default_factory=dict)
