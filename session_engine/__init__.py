"""session-engine: streaming multi-turn chat sessions with caching, context budgeting and recovery."""

from .config import load_config
from .engine import SessionEngine
from .errors import (
    EmptyInput,
    ImportValidationError,
    LimitReached,
    RateLimited,
    SessionEngineError,
    TurnInProgress,
    ValidationError,
)
from .types import (
    CancelledEvent,
    CompleteEvent,
    DeltaEvent,
    ErrorEvent,
    FileInput,
    RetryEvent,
    SessionEngineConfig,
    Turn,
    Usage,
)

__version__ = "0.1.0"

__all__ = [
    "SessionEngine",
    "load_config",
    "CancelledEvent",
    "CompleteEvent",
    "DeltaEvent",
    "EmptyInput",
    "ErrorEvent",
    "FileInput",
    "ImportValidationError",
    "LimitReached",
    "RateLimited",
    "RetryEvent",
    "SessionEngineConfig",
    "SessionEngineError",
    "Turn",
    "TurnInProgress",
    "Usage",
    "ValidationError",
]
