"""Semantic cache - embedding similarity layered over the response cache.

Lookup order:
1. Token-overlap match in the ResponseCache (cheap, no external call)
2. Cosine similarity between the query embedding and every cached
   embedding from the same embedding source

The semantic layer only stores vectors. A match resolves through its
``linked_key`` to a live ResponseCache entry; if that entry has been
evicted the match is treated as a miss.

Lookups made through this layer leave the ResponseCache hit/miss counters
untouched; the semantic layer keeps its own fuzzy, semantic and miss counts.

Embedding failures never propagate: the EmbeddingService falls back to a
hash pseudo-embedding, and anything else degrades to "no match".
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource, cosine_similarity
from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS, TierLimits, UserTier
from adaptive_router.cache.response_cache import ResponseCache

log = structlog.get_logger(__name__)


class MatchLayer(StrEnum):
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class EmbeddingCacheEntry:
    query: str
    vector: tuple[float, ...]
    linked_key: str
    source: EmbeddingSource
    timestamp: float


@dataclass(frozen=True)
class CacheMatch:
    payload: Any
    layer: MatchLayer
    score: float


class SemanticCache:
    """Tier-bounded embedding index over a ResponseCache."""

    def __init__(
        self,
        response_cache: ResponseCache,
        embeddings: EmbeddingService,
        *,
        max_size: int = DEFAULT_TIER_LIMITS[UserTier.FREE].semantic_cache_limit,
        fuzzy_threshold: float = 0.7,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._responses = response_cache
        self._embeddings = embeddings
        self._max_size = max_size
        self._fuzzy_threshold = fuzzy_threshold
        self._clock = clock
        self._entries: dict[str, EmbeddingCacheEntry] = {}
        self._lock = asyncio.Lock()
        self._fuzzy_hits = 0
        self._semantic_hits = 0
        self._misses = 0

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        return len(self._entries)

    async def set_tier(self, tier: UserTier, limits: TierLimits | None = None) -> int:
        """Resize to the tier's semantic cache limit, evicting oldest entries."""
        effective = limits or DEFAULT_TIER_LIMITS[tier]
        async with self._lock:
            self._max_size = effective.semantic_cache_limit
            evicted = 0
            while len(self._entries) > self._max_size:
                self._evict_oldest()
                evicted += 1
        if evicted:
            log.info("semantic_cache.resized", tier=tier.value, max_size=self._max_size, evicted=evicted)
        return evicted

    async def find_similar(self, query: str, threshold: float = 0.85) -> Any | None:
        match = await self.lookup(query, threshold)
        return match.payload if match is not None else None

    async def lookup(self, query: str, threshold: float = 0.85) -> CacheMatch | None:
        """Fuzzy then embedding lookup. Never raises."""
        match = await self._match(query, threshold)
        if match is None:
            self._misses += 1
        elif match.layer is MatchLayer.FUZZY:
            self._fuzzy_hits += 1
        else:
            self._semantic_hits += 1
        return match

    async def _match(self, query: str, threshold: float) -> CacheMatch | None:
        try:
            fuzzy = await self._responses.find_similar_entry(
                query, self._fuzzy_threshold, record_stats=False
            )
        except Exception as exc:
            log.warning("semantic_cache.fuzzy_failed", error=str(exc))
            fuzzy = None
        if fuzzy is not None:
            entry, score = fuzzy
            return CacheMatch(payload=entry.payload, layer=MatchLayer.FUZZY, score=score)

        if not self._entries:
            return None

        try:
            embedding = await self._embeddings.embed(query)
        except Exception as exc:
            log.warning("semantic_cache.embedding_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        if not embedding.vector:
            return None

        async with self._lock:
            best: EmbeddingCacheEntry | None = None
            best_score = threshold
            for entry in self._entries.values():
                # Vectors from different sources live in unrelated spaces
                if entry.source is not embedding.source:
                    continue
                score = cosine_similarity(embedding.vector, entry.vector)
                if score >= best_score and (best is None or score > best_score):
                    best, best_score = entry, score

        if best is None:
            return None

        payload = await self._responses.get(best.linked_key, record_stats=False)
        if payload is None:
            # Linked response is gone; drop the orphaned vector
            async with self._lock:
                self._entries.pop(best.query, None)
            log.debug("semantic_cache.orphaned_link", similarity=round(best_score, 3))
            return None

        log.info("semantic_cache.hit", similarity=round(best_score, 3), source=embedding.source.value)
        return CacheMatch(payload=payload, layer=MatchLayer.SEMANTIC, score=best_score)

    async def add_embedding(self, query: str) -> None:
        """Embed ``query`` and index it, linked to the response cached under it.

        Intended to run detached from the request; never raises.
        """
        try:
            embedding = await self._embeddings.embed(query)
        except Exception as exc:
            log.warning("semantic_cache.add_failed", error_type=type(exc).__name__, error=str(exc))
            return
        if not embedding.vector:
            return

        async with self._lock:
            if query not in self._entries and len(self._entries) >= self._max_size:
                self._evict_oldest()
            self._entries[query] = EmbeddingCacheEntry(
                query=query,
                vector=embedding.vector,
                linked_key=query,
                source=embedding.source,
                timestamp=self._clock(),
            )
            size = len(self._entries)

        log.debug("semantic_cache.embedding_cached", size=size, max_size=self._max_size, source=embedding.source.value)

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            self._fuzzy_hits = 0
            self._semantic_hits = 0
            self._misses = 0

    def stats(self) -> dict[str, Any]:
        by_source: dict[str, int] = {}
        for entry in self._entries.values():
            by_source[entry.source.value] = by_source.get(entry.source.value, 0) + 1
        return {
            "embedding_count": len(self._entries),
            "max_size": self._max_size,
            "by_source": by_source,
            "fuzzy_hits": self._fuzzy_hits,
            "semantic_hits": self._semantic_hits,
            "misses": self._misses,
        }

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest = min(self._entries.values(), key=lambda e: e.timestamp)
        del self._entries[oldest.query]
