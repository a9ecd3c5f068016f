"""ContextMonitor: two-tier threshold checking for context optimization."""

from __future__ import annotations

from typing import Callable, Iterable

from ..token_counter import estimate_tokens
from ..types import OptimizeSignal, OptimizerConfig, Turn


class ContextMonitor:
    """Watch the running size of a conversation against its context budget.

    - Soft threshold (default 70%): opportunistic optimization after a turn
    - Hard (100%): the next backend payload would not fit, optimize now
    """

    def __init__(
        self,
        config: OptimizerConfig,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.config = config
        self.token_counter = token_counter or estimate_tokens

    def measure(self, turns: Iterable[Turn]) -> int:
        return sum(self.token_counter(t.content) for t in turns)

    def check(self, current_tokens: int, budget_tokens: int) -> OptimizeSignal | None:
        """Return a signal if optimization is due, else None."""
        if budget_tokens <= 0:
            return None

        soft_target = int(budget_tokens * self.config.soft_threshold)

        if current_tokens > budget_tokens:
            return OptimizeSignal(
                priority="hard",
                current_tokens=current_tokens,
                budget_tokens=budget_tokens,
                target_tokens=budget_tokens,
            )

        if current_tokens >= soft_target:
            return OptimizeSignal(
                priority="soft",
                current_tokens=current_tokens,
                budget_tokens=budget_tokens,
                target_tokens=max(1, soft_target // 2),
            )

        return None
