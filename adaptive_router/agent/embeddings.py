"""Embedding generation with a deterministic hash fallback.

Priority chain:
1. In-process embedder, when one is injected (source ``client``)
2. Embedding model behind the LiteLLM proxy (source ``server``)
3. FNV-1a hash pseudo-embedding (source ``hash``)

Hash vectors are stable and L2-normalized but carry no semantics, so
recall against them is far weaker. Every result reports its ``source``
so callers can tell the difference.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

import structlog

from adaptive_router.agent.llm import LLMClient
from adaptive_router.config import Settings, get_settings

log = structlog.get_logger(__name__)

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619
_UINT32 = 0xFFFFFFFF
_INT32_MAX = 2147483647


class EmbeddingSource(StrEnum):
    CLIENT = "client"
    SERVER = "server"
    HASH = "hash"


@dataclass(frozen=True)
class Embedding:
    vector: tuple[float, ...]
    source: EmbeddingSource


LocalEmbedder = Callable[[str], Awaitable[list[float]]]


def fnv1a(text: str, seed: int = 0) -> int:
    """32-bit FNV-1a over the string's code points, offset basis shifted by ``seed``."""
    h = (_FNV_OFFSET + seed) & _UINT32
    for ch in text:
        h ^= ord(ch)
        h = (h * _FNV_PRIME) & _UINT32
    return h


def hash_embedding(text: str, dimensions: int = 384) -> tuple[float, ...]:
    """Deterministic pseudo-embedding used when no embedding model answers."""
    normalized = text.lower().strip()
    words = normalized.split()

    values = []
    for i in range(dimensions):
        char_hash = fnv1a(normalized, i)
        word_hash = fnv1a(words[i % len(words)], i + 1000) if words else 0
        values.append((char_hash + word_hash) / _INT32_MAX - 1)

    norm = math.sqrt(sum(v * v for v in values))
    if norm == 0:
        return tuple(values)
    return tuple(v / norm for v in values)


def cosine_similarity(a: tuple[float, ...] | list[float], b: tuple[float, ...] | list[float]) -> float:
    """Cosine of the angle between two vectors.

    Vectors of different dimension, or with a zero norm, score 0.
    """
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # Clamp float drift so the result stays inside [-1, 1]
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


class EmbeddingService:
    """Produces one embedding per text, never raising on provider failure."""

    def __init__(
        self,
        llm_client: LLMClient | None,
        settings: Settings | None = None,
        *,
        local_embedder: LocalEmbedder | None = None,
    ) -> None:
        self._llm = llm_client
        self._settings = settings or get_settings()
        self._local = local_embedder
        self._dimensions = self._settings.embedding_dimensions
        self._timeout = self._settings.embedding_timeout_seconds

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> Embedding:
        if self._local is not None:
            try:
                async with asyncio.timeout(self._timeout):
                    vector = await self._local(text)
                return Embedding(vector=tuple(vector), source=EmbeddingSource.CLIENT)
            except Exception as exc:
                log.warning("embeddings.local_failed", error_type=type(exc).__name__, error=str(exc))

        if self._llm is not None:
            try:
                async with asyncio.timeout(self._timeout):
                    vectors = await self._llm.embed([text])
                if vectors and vectors[0]:
                    return Embedding(vector=tuple(vectors[0]), source=EmbeddingSource.SERVER)
                log.warning("embeddings.server_empty")
            except Exception as exc:
                log.warning("embeddings.server_failed", error_type=type(exc).__name__, error=str(exc))

        log.info("embeddings.hash_fallback", dimensions=self._dimensions)
        return Embedding(
            vector=hash_embedding(text, self._dimensions),
            source=EmbeddingSource.HASH,
        )
