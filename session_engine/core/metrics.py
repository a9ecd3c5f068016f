"""Thread-safe performance sample collector."""

from __future__ import annotations

import logging
import statistics
import threading
from collections import deque

from ..types import PerformanceSample, SessionSummary

logger = logging.getLogger(__name__)


class MetricsAggregator:
    """Collects ``PerformanceSample`` records from the turn pipeline.

    ``record()`` is best-effort: it never raises into the caller. Summaries
    are computed from the raw samples on demand.
    """

    def __init__(self, max_samples: int = 10_000, enabled: bool = True) -> None:
        self.enabled = enabled
        self._samples: deque[PerformanceSample] = deque(maxlen=max_samples)
        self._lock = threading.Lock()

    def record(self, sample: PerformanceSample) -> None:
        if not self.enabled:
            return
        try:
            with self._lock:
                self._samples.append(sample)
        except Exception as e:  # metrics must never fail a turn
            logger.debug("Dropping metrics sample %s: %s", getattr(sample, "operation", "?"), e)

    def samples(
        self,
        session_id: str | None = None,
        operation: str | None = None,
    ) -> list[PerformanceSample]:
        with self._lock:
            return [
                s for s in self._samples
                if (session_id is None or s.session_id == session_id)
                and (operation is None or s.operation == operation)
            ]

    def clear(self, session_id: str | None = None) -> None:
        with self._lock:
            if session_id is None:
                self._samples.clear()
            else:
                kept = [s for s in self._samples if s.session_id != session_id]
                self._samples.clear()
                self._samples.extend(kept)

    def session_summary(self, session_id: str) -> SessionSummary:
        """Aggregate turn samples for one session."""
        samples = self.samples(session_id=session_id)
        turns = [s for s in samples if s.operation == "turn"]
        backend_calls = sum(1 for s in samples if s.operation == "backend_call")

        if not turns:
            return SessionSummary(session_id=session_id, backend_calls=backend_calls)

        durations = [s.duration_ms for s in turns]
        hits = sum(1 for s in turns if s.dimensions.get("cache") == "hit")
        errors = sum(1 for s in turns if s.dimensions.get("error"))
        fallbacks = sum(1 for s in turns if s.dimensions.get("fallback"))

        return SessionSummary(
            session_id=session_id,
            count=len(turns),
            avg_duration_ms=round(statistics.mean(durations), 1),
            cache_hit_rate=round(hits / len(turns), 3),
            error_rate=round(errors / len(turns), 3),
            backend_calls=backend_calls,
            fallbacks=fallbacks,
        )
