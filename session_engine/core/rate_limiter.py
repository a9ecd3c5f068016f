"""RateLimiter: fixed-window turn counter per client identifier."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from ..errors import RateLimited
from ..types import RateLimitConfig, RateLimitResult

logger = logging.getLogger(__name__)


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Accept at most ``max_requests`` turns per identifier per window.

    The window opens on the first request and is replaced by a fresh one on
    the first request after it closes. Rejected requests do not count.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def _result(self, window: _Window, allowed: bool, now: float) -> RateLimitResult:
        limit = self.config.max_requests
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - window.count),
            reset_at=window.reset_at,
            retry_after=None if allowed else max(0.0, window.reset_at - now),
        )

    def check(self, identifier: str) -> RateLimitResult:
        """Count one request for ``identifier`` if the window has room."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self.config.window_seconds)
                self._windows[identifier] = window
            allowed = window.count < self.config.max_requests
            if allowed:
                window.count += 1
            return self._result(window, allowed, now)

    def acquire(self, identifier: str) -> RateLimitResult:
        """Like ``check`` but raises RateLimited when the window is full."""
        result = self.check(identifier)
        if not result.allowed:
            logger.warning(
                "Rate limit hit for %s (%d per %.0fs)",
                identifier, result.limit, self.config.window_seconds,
            )
            raise RateLimited(identifier, result.limit, result.retry_after or 0.0)
        return result

    def stats(self, identifier: str) -> RateLimitResult | None:
        """Current window for ``identifier`` without counting a request."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(identifier)
            if window is None or now >= window.reset_at:
                self._windows.pop(identifier, None)
                return None
            return self._result(window, window.count < self.config.max_requests, now)

    def reset(self, identifier: str | None = None) -> None:
        """Forget one identifier, or every one."""
        with self._lock:
            if identifier is None:
                self._windows.clear()
            else:
                self._windows.pop(identifier, None)

    def sweep(self) -> int:
        """Drop closed windows. Returns count removed."""
        now = self._clock()
        with self._lock:
            closed = [k for k, w in self._windows.items() if now >= w.reset_at]
            for key in closed:
                del self._windows[key]
        return len(closed)
