"""ContextOptimizer: reduce a turn list to fit the backend's context budget."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Sequence

from ..token_counter import estimate_tokens, truncate_to_tokens
from ..types import OptimizedContext, OptimizerConfig, Turn
from .summarizer import summarize_turns

logger = logging.getLogger(__name__)


def is_salient(turn: Turn) -> bool:
    """Turns with attachments or flagged important are dropped last."""
    return bool(turn.attachments) or bool(turn.metadata.get("important"))


class ContextOptimizer:
    """Pure budget reducer over a sequence of turns.

    Policy:
    1. The last ``recent_turns_kept`` turns and the most recent user turn are
       protected and kept verbatim when they fit.
    2. Older turns are dropped oldest first; salient turns go after all
       others. Dropped turns are folded into one summary turn at the head of
       the result when it fits.
    3. If the protected turns alone exceed the budget, they are dropped oldest
       first, except the most recent user turn, whose content is truncated as
       a last resort.

    Never mutates its inputs.
    """

    def __init__(
        self,
        config: OptimizerConfig,
        token_counter: Callable[[str], int] | None = None,
    ) -> None:
        self.config = config
        self.token_counter = token_counter or estimate_tokens

    def estimate(self, turns: Sequence[Turn]) -> int:
        return sum(self.token_counter(t.content) for t in turns)

    def optimize(
        self,
        turns: Sequence[Turn],
        context_budget: int,
        allow_truncation: bool = True,
    ) -> OptimizedContext:
        turns = list(turns)
        tokens = [self.token_counter(t.content) for t in turns]
        total = sum(tokens)
        if total <= context_budget or not turns:
            return OptimizedContext(turns=turns, total_tokens=total)

        last_user = next(
            (i for i in range(len(turns) - 1, -1, -1) if turns[i].role == "user"),
            None,
        )
        split = max(0, len(turns) - self.config.recent_turns_kept)
        protected = set(range(split, len(turns)))
        if last_user is not None:
            protected.add(last_user)
        older = [i for i in range(len(turns)) if i not in protected]
        protected_tokens = sum(tokens[i] for i in protected)

        if protected_tokens > context_budget:
            return self._shrink_protected(
                turns, tokens, protected, older, last_user, context_budget, allow_truncation,
            )

        kept = set(range(len(turns)))
        kept_tokens = total
        dropped: list[int] = []
        drop_order = sorted(older, key=lambda i: (is_salient(turns[i]), i))
        summary: Turn | None = None

        for i in drop_order + [None]:
            if kept_tokens <= context_budget:
                summary = self._summary_turn(turns, dropped)
                summary_tokens = self.token_counter(summary.content) if summary else 0
                if kept_tokens + summary_tokens <= context_budget:
                    break
                summary = None
            if i is None:
                break
            kept.discard(i)
            kept_tokens -= tokens[i]
            dropped.append(i)

        result = [turns[i] for i in sorted(kept)]
        if summary is not None:
            result.insert(0, summary)

        logger.debug(
            "Optimized context: %d -> %d turns (%d dropped, budget=%d)",
            len(turns), len(result), len(dropped), context_budget,
        )
        return OptimizedContext(
            turns=result,
            total_tokens=self.estimate(result),
            dropped=len(dropped),
            summarized=len(dropped) if summary is not None else 0,
        )

    def _shrink_protected(
        self,
        turns: list[Turn],
        tokens: list[int],
        protected: set[int],
        older: list[int],
        last_user: int | None,
        budget: int,
        allow_truncation: bool,
    ) -> OptimizedContext:
        kept = sorted(protected)
        kept_tokens = sum(tokens[i] for i in kept)
        dropped = len(older)

        for i in list(kept):
            if kept_tokens <= budget:
                break
            if i == last_user:
                continue
            if last_user is None and len(kept) == 1:
                break
            kept.remove(i)
            kept_tokens -= tokens[i]
            dropped += 1

        result = [turns[i] for i in kept]
        truncated = False
        if kept_tokens > budget and allow_truncation:
            # Only the pinned turn is left; cut its content to fit.
            target = result[-1]
            content = truncate_to_tokens(target.content, budget, self.token_counter)
            result[-1] = replace(
                target,
                content=content,
                metadata={**target.metadata, "truncated": True},
            )
            truncated = True

        logger.info(
            "Recent turns exceed context budget %d; kept %d turn(s)%s",
            budget, len(result), " (truncated)" if truncated else "",
        )
        return OptimizedContext(
            turns=result,
            total_tokens=self.estimate(result),
            dropped=dropped,
            truncated=truncated,
        )

    def _summary_turn(self, turns: list[Turn], dropped: list[int]) -> Turn | None:
        if not dropped or not self.config.summarize:
            return None
        dropped_turns = [turns[i] for i in sorted(dropped)]
        text = summarize_turns(
            dropped_turns,
            max_tokens=self.config.max_summary_tokens,
            token_counter=self.token_counter,
        )
        if not text:
            return None
        first = dropped_turns[0]
        return Turn(
            role="user",
            content=text,
            id=f"summary-{first.id}",
            timestamp=first.timestamp,
            metadata={"summary": True, "summarized_turns": len(dropped_turns)},
        )
