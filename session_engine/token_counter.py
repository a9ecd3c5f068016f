"""Token estimation used for context budgeting."""

from __future__ import annotations

from typing import Callable

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Rough estimate: ~4 chars per token."""
    return max(1, len(text) // 4)


def create_token_counter(mode: str = "estimate") -> TokenCounter:
    """Factory for token counters.

    Modes:
        "estimate" - len(text) // 4 (zero deps)
        "tiktoken" - requires the tiktoken extra
        "callable:module.path:func" - custom callable
    """
    if mode == "estimate":
        return estimate_tokens

    if mode == "tiktoken":
        try:
            import tiktoken
        except ImportError:
            raise ImportError(
                "tiktoken not installed. Install with: pip install session-engine[tiktoken]"
            )
        enc = tiktoken.get_encoding("cl100k_base")
        return lambda text: max(1, len(enc.encode(text)))

    if mode.startswith("callable:"):
        parts = mode[len("callable:"):].rsplit(":", 1)
        if len(parts) != 2:
            raise ValueError(f"Invalid callable spec: {mode}. Expected callable:module:func")
        module_path, func_name = parts
        import importlib
        mod = importlib.import_module(module_path)
        return getattr(mod, func_name)

    raise ValueError(f"Unknown token counter mode: {mode}")


def truncate_to_tokens(text: str, max_tokens: int, token_counter: TokenCounter = estimate_tokens) -> str:
    """Longest prefix of *text* whose token count is <= max_tokens."""
    if max_tokens < 1:
        return ""
    if token_counter(text) <= max_tokens:
        return text
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if token_counter(text[:mid]) <= max_tokens:
            lo = mid
        else:
            hi = mid - 1
    return text[:lo]
