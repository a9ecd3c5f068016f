"""Tests for ContextMonitor."""

from session_engine.core.monitor import ContextMonitor
from session_engine.types import OptimizerConfig, Turn


def test_no_signal_under_soft():
    monitor = ContextMonitor(OptimizerConfig())
    assert monitor.check(5000, 10000) is None


def test_soft_signal():
    monitor = ContextMonitor(OptimizerConfig())
    signal = monitor.check(7500, 10000)
    assert signal is not None
    assert signal.priority == "soft"
    assert signal.target_tokens == 3500


def test_soft_signal_at_threshold():
    monitor = ContextMonitor(OptimizerConfig(soft_threshold=0.5))
    signal = monitor.check(5000, 10000)
    assert signal is not None
    assert signal.priority == "soft"


def test_hard_signal():
    monitor = ContextMonitor(OptimizerConfig())
    signal = monitor.check(10001, 10000)
    assert signal is not None
    assert signal.priority == "hard"
    assert signal.target_tokens == 10000


def test_exactly_at_budget_is_soft():
    monitor = ContextMonitor(OptimizerConfig())
    signal = monitor.check(10000, 10000)
    assert signal.priority == "soft"


def test_zero_budget_never_signals():
    monitor = ContextMonitor(OptimizerConfig())
    assert monitor.check(500, 0) is None


def test_measure():
    monitor = ContextMonitor(OptimizerConfig())
    history = [
        Turn(role="user", content="Hello world"),
        Turn(role="assistant", content="Hi there"),
    ]
    assert monitor.measure(history) == 2 + 2


def test_custom_token_counter():
    monitor = ContextMonitor(OptimizerConfig(), token_counter=lambda text: len(text.split()))
    assert monitor.measure([Turn(role="user", content="one two three")]) == 3
