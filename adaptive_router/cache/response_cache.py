"""Response cache - exact and token-overlap lookup of past responses.

Entries are keyed on the normalised query (lowercased, whitespace
collapsed), so queries that differ only in case or spacing share one
entry. Punctuation and length are kept in the key.

``find_similar`` scores every live entry with the Jaccard similarity of
token sets (stop words and tokens of two characters or fewer removed) and
returns the best entry at or above the threshold. Equal scores resolve to
the most recently created entry.

Capacity is bounded by the caller's tier. Inserting a new key at capacity
evicts exactly one entry, the oldest by ``created_at``. Entries older than
the TTL are ignored on read and removed by ``cleanup()``.

Prefetch placeholders (``status=pending``) occupy a slot and count as
resident for prefetch decisions but are never returned as responses.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS, TierLimits, UserTier

log = structlog.get_logger(__name__)

# Characters of the query that contribute tokens to fuzzy scoring
MAX_TOKEN_TEXT_LENGTH = 200

STOP_WORDS = frozenset(
    {
        "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can",
        # Indonesian
        "dengan", "dan", "yang", "untuk", "di", "ke", "dari",
    }
)

_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(text: str) -> str:
    """Exact-lookup key: lowercase, collapse whitespace."""
    return _WHITESPACE.sub(" ", text.lower()).strip()


def tokenize(text: str) -> frozenset[str]:
    """Meaningful tokens of the query with punctuation stripped, first 200 characters only."""
    stripped = _WHITESPACE.sub(" ", _NON_WORD.sub(" ", text.lower())).strip()
    return frozenset(
        word for word in stripped[:MAX_TOKEN_TEXT_LENGTH].split(" ") if len(word) > 2 and word not in STOP_WORDS
    )


def jaccard_similarity(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """|A n B| / |A u B|; 0 when either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class CacheStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"


@dataclass
class CacheEntry:
    normalized_key: str
    query: str
    tokens: frozenset[str]
    payload: Any
    created_at: float
    prefetched: bool = False
    status: CacheStatus = CacheStatus.READY
    hit_count: int = 0


@dataclass
class CacheStats:
    size: int
    max_size: int
    hits: int
    misses: int
    hit_rate: float
    pending: int = 0
    evictions: int = 0


class ResponseCache:
    """Tier-bounded in-memory response cache.

    All mutation happens under one asyncio.Lock per instance, so the
    capacity check, eviction and insert run as a single step.
    """

    def __init__(
        self,
        *,
        max_size: int = DEFAULT_TIER_LIMITS[UserTier.FREE].response_cache_limit,
        ttl_seconds: float = 1800,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._entries: dict[str, CacheEntry] = {}
        self._max_size = max_size
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        # Tie-breaker for entries created within the same clock tick
        self._sequence = 0
        self._order: dict[str, int] = {}

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(self, query: str, *, record_stats: bool = True) -> Any | None:
        """Exact lookup on the normalised key. Pending and stale entries miss."""
        key = normalize_query(query)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.status is CacheStatus.READY and not self._is_stale(entry):
                if record_stats:
                    entry.hit_count += 1
                    self._hits += 1
                log.debug("response_cache.hit", match="exact", size=len(self._entries))
                return entry.payload
            if record_stats:
                self._misses += 1
            return None

    async def find_similar(self, query: str, threshold: float = 0.7) -> Any | None:
        """Best ready entry with Jaccard similarity >= ``threshold``, else None."""
        match = await self.find_similar_entry(query, threshold)
        if match is None:
            return None
        return match[0].payload

    async def find_similar_entry(
        self,
        query: str,
        threshold: float = 0.7,
        *,
        include_pending: bool = False,
        record_stats: bool = True,
    ) -> tuple[CacheEntry, float] | None:
        query_tokens = tokenize(query)
        async with self._lock:
            best: CacheEntry | None = None
            best_score = 0.0
            for entry in self._entries.values():
                if self._is_stale(entry):
                    continue
                if entry.status is CacheStatus.PENDING and not include_pending:
                    continue
                score = jaccard_similarity(query_tokens, entry.tokens)
                if score < threshold or score <= 0.0:
                    continue
                if best is None or score > best_score or (
                    score == best_score and self._is_newer(entry, best)
                ):
                    best, best_score = entry, score

            if best is None:
                if record_stats:
                    self._misses += 1
                return None

            if record_stats:
                best.hit_count += 1
                self._hits += 1
            log.debug(
                "response_cache.hit",
                match="fuzzy",
                similarity=round(best_score, 3),
                pending=best.status is CacheStatus.PENDING,
            )
            return best, best_score

    async def is_resident(self, query: str, threshold: float) -> bool:
        """True when a ready or pending entry matches the query exactly or fuzzily."""
        key = normalize_query(query)
        async with self._lock:
            entry = self._entries.get(key)
            if entry is not None and not self._is_stale(entry):
                return True
        match = await self.find_similar_entry(
            query, threshold, include_pending=True, record_stats=False
        )
        return match is not None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def set(self, query: str, payload: Any) -> None:
        async with self._lock:
            self._insert(query, payload, status=CacheStatus.READY, prefetched=False)
        log.debug("response_cache.set", size=len(self._entries), max_size=self._max_size)

    async def set_pending(self, query: str, payload: Any = None) -> bool:
        """Insert a prefetch placeholder unless the key already holds an entry.

        Returns:
            True if a placeholder was inserted
        """
        key = normalize_query(query)
        async with self._lock:
            existing = self._entries.get(key)
            if existing is not None and not self._is_stale(existing):
                return False
            self._insert(query, payload, status=CacheStatus.PENDING, prefetched=True)
        return True

    async def set_max_size(self, max_size: int) -> int:
        """Resize the cache, evicting oldest entries until it fits.

        Returns:
            Number of entries evicted
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        async with self._lock:
            self._max_size = max_size
            evicted = 0
            while len(self._entries) > self._max_size:
                self._evict_oldest()
                evicted += 1
        if evicted:
            log.info("response_cache.resized", max_size=max_size, evicted=evicted)
        return evicted

    async def set_tier(self, tier: UserTier, limits: TierLimits | None = None) -> int:
        effective = limits or DEFAULT_TIER_LIMITS[tier]
        return await self.set_max_size(effective.response_cache_limit)

    async def cleanup(self) -> int:
        """Remove entries older than the TTL."""
        async with self._lock:
            stale = [key for key, entry in self._entries.items() if self._is_stale(entry)]
            for key in stale:
                self._remove(key)
        if stale:
            log.info("response_cache.cleanup", removed=len(stale))
        return len(stale)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._order.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            max_size=self._max_size,
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total else 0.0,
            pending=sum(1 for e in self._entries.values() if e.status is CacheStatus.PENDING),
            evictions=self._evictions,
        )

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _insert(self, query: str, payload: Any, *, status: CacheStatus, prefetched: bool) -> None:
        key = normalize_query(query)
        if key not in self._entries and len(self._entries) >= self._max_size:
            self._evict_oldest()
        self._sequence += 1
        self._order[key] = self._sequence
        self._entries[key] = CacheEntry(
            normalized_key=key,
            query=query,
            tokens=tokenize(query),
            payload=payload,
            created_at=self._clock(),
            prefetched=prefetched,
            status=status,
        )

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda e: (e.created_at, self._order[e.normalized_key]))
        self._remove(oldest.normalized_key)
        self._evictions += 1

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._order.pop(key, None)

    def _is_newer(self, a: CacheEntry, b: CacheEntry) -> bool:
        return (a.created_at, self._order[a.normalized_key]) > (b.created_at, self._order[b.normalized_key])

    def _is_stale(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.created_at > self._ttl
