"""Extractive summaries of turns dropped from the context window."""

from __future__ import annotations

import re
from collections import Counter
from typing import Callable

from ..token_counter import estimate_tokens, truncate_to_tokens
from ..types import Turn

SUMMARY_PREFIX = "[Earlier conversation summary]"

_WORD_RE = re.compile(r"\b\w{5,}\b", re.UNICODE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

STOPWORDS = frozenset({
    "about", "above", "after", "again", "against", "being", "below", "between",
    "could", "doing", "during", "every", "having", "other", "should", "their",
    "theirs", "there", "these", "those", "through", "under", "until", "where",
    "which", "while", "would", "yours", "yourself", "thanks", "thank", "hello",
    "please", "really", "something", "anything", "maybe", "still", "think",
    "because", "answer", "question",
})


def key_topics(turns: list[Turn], limit: int = 5) -> list[str]:
    """Most frequent content words across the turns."""
    counts: Counter[str] = Counter()
    for turn in turns:
        for word in _WORD_RE.findall(turn.content.lower()):
            if word not in STOPWORDS and not word.isdigit():
                counts[word] += 1
    return [word for word, _ in counts.most_common(limit)]


def _first_sentence(text: str, max_chars: int = 120) -> str:
    sentence = _SENTENCE_RE.split(text.strip(), maxsplit=1)[0]
    if len(sentence) > max_chars:
        sentence = sentence[: max_chars - 3].rstrip() + "..."
    return sentence


def summarize_turns(
    turns: list[Turn],
    max_tokens: int = 200,
    token_counter: Callable[[str], int] = estimate_tokens,
) -> str:
    """One-paragraph summary: omitted count, key topics, recent user questions."""
    if not turns:
        return ""

    parts = [f"{SUMMARY_PREFIX} {len(turns)} earlier message(s) omitted."]
    topics = key_topics(turns)
    if topics:
        parts.append("Topics: " + ", ".join(topics) + ".")

    questions = [_first_sentence(t.content) for t in turns if t.role == "user" and t.content.strip()]
    if questions:
        parts.append("The user asked: " + " | ".join(questions[-3:]))

    return truncate_to_tokens(" ".join(parts), max_tokens, token_counter)
