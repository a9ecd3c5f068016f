"""ResponseCache: TTL + LRU cache of answers to attachment-free queries."""

from __future__ import annotations

import hashlib
import logging
import re
import threading
import time
from collections import OrderedDict
from typing import Callable

from ..types import CacheEntry, CacheEntryMetadata, CacheStats

logger = logging.getLogger(__name__)

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lowercase, drop punctuation, collapse whitespace."""
    text = _PUNCT_RE.sub("", query.lower().strip())
    return _SPACE_RE.sub(" ", text).strip()


def make_key(query: str) -> str:
    return hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()


class ResponseCache:
    """Content-addressed answer cache.

    - Entries older than ``ttl_seconds`` are never returned; they are removed
      on access and by ``sweep()``.
    - At most ``max_entries`` entries; the least recently accessed goes first.

    All access goes through one lock, so a read racing an eviction sees either
    the old entry or a miss.
    """

    def __init__(
        self,
        ttl_seconds: float = 1800.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, query: str) -> str | None:
        key = make_key(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            now = self._clock()
            if self._expired(entry, now):
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            entry.hits += 1
            entry.last_access = now
            self._entries.move_to_end(key)
            return entry.value

    def get_entry(self, query: str) -> CacheEntry | None:
        """Fresh entry with metadata, without counting as an access."""
        key = make_key(query)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._expired(entry, self._clock()):
                return None
            return entry

    def put(self, query: str, value: str, metadata: CacheEntryMetadata | None = None) -> str:
        key = make_key(query)
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                last_access=now,
                metadata=metadata or CacheEntryMetadata(),
                query=normalize_query(query),
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache evicted %s (LRU)", evicted[:12])
        return key

    def sweep(self) -> int:
        """Remove expired entries. Returns count removed."""
        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Cache sweep removed %d expired entries", len(stale))
        return len(stale)

    def stats(self, top: int = 5) -> CacheStats:
        """Entry count, hit rate and the most reused queries."""
        with self._lock:
            now = self._clock()
            fresh = [e for e in self._entries.values() if not self._expired(e, now)]
            lookups = self._hits + self._misses
            popular = sorted((e for e in fresh if e.hits), key=lambda e: e.hits, reverse=True)
            return CacheStats(
                entries=len(fresh),
                hits=self._hits,
                misses=self._misses,
                hit_rate=self._hits / lookups if lookups else 0.0,
                top_queries=[(e.query, e.hits) for e in popular[:top]],
            )

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
