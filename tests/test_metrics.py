"""Tests for MetricsAggregator."""

import threading

from session_engine.core.metrics import MetricsAggregator
from session_engine.types import PerformanceSample


def _turn(session: str, ms: float, **dims) -> PerformanceSample:
    return PerformanceSample(operation="turn", duration_ms=ms, session_id=session, dimensions=dims)


def test_record_and_filter():
    metrics = MetricsAggregator()
    metrics.record(_turn("a", 10))
    metrics.record(PerformanceSample(operation="backend_call", session_id="a"))
    metrics.record(_turn("b", 20))
    assert len(metrics.samples()) == 3
    assert len(metrics.samples(session_id="a")) == 2
    assert len(metrics.samples(operation="turn")) == 2
    assert len(metrics.samples(session_id="a", operation="turn")) == 1


def test_session_summary():
    metrics = MetricsAggregator()
    metrics.record(_turn("a", 100, cache="miss"))
    metrics.record(_turn("a", 10, cache="hit"))
    metrics.record(_turn("a", 300, cache="miss", fallback=True))
    metrics.record(_turn("a", 50, cache="miss", error="quota_exceeded"))
    metrics.record(PerformanceSample(operation="backend_call", session_id="a"))
    metrics.record(PerformanceSample(operation="backend_call", session_id="a"))

    summary = metrics.session_summary("a")
    assert summary.count == 4
    assert summary.avg_duration_ms == 115.0
    assert summary.cache_hit_rate == 0.25
    assert summary.error_rate == 0.25
    assert summary.fallbacks == 1
    assert summary.backend_calls == 2


def test_empty_summary():
    summary = MetricsAggregator().session_summary("nobody")
    assert summary.count == 0
    assert summary.error_rate == 0.0


def test_disabled_records_nothing():
    metrics = MetricsAggregator(enabled=False)
    metrics.record(_turn("a", 1))
    assert metrics.samples() == []


def test_bounded_retention():
    metrics = MetricsAggregator(max_samples=3)
    for i in range(5):
        metrics.record(_turn("a", i))
    assert [s.duration_ms for s in metrics.samples()] == [2, 3, 4]


def test_clear_one_session():
    metrics = MetricsAggregator()
    metrics.record(_turn("a", 1))
    metrics.record(_turn("b", 1))
    metrics.clear("a")
    assert [s.session_id for s in metrics.samples()] == ["b"]
    metrics.clear()
    assert metrics.samples() == []


def test_concurrent_record():
    metrics = MetricsAggregator()

    def worker():
        for _ in range(200):
            metrics.record(_turn("a", 1))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert metrics.session_summary("a").count == 800
