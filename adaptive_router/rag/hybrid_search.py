"""Hybrid retrieval combining vector similarity and full-text keyword search.

Architecture:
1. Vector search: pgvector cosine similarity inside one knowledge partition
2. Keyword search: PostgreSQL full-text search, scored by result position
3. Fusion: weighted sum, ``vector_score * vector_weight + keyword_score * keyword_weight``

Both searches run concurrently. A document found by only one of them
contributes only that term. When no partition is given, vector search
targets the partition holding the most embedded chunks.

Keyword scores are positional (``1 - index / limit``) so they are on the
same 0..1 scale as cosine similarity regardless of the ranking function.
"""

from __future__ import annotations

import asyncio
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource, cosine_similarity
from adaptive_router.config import Settings, get_settings
from adaptive_router.models.knowledge import KnowledgeChunk
from adaptive_router.rag.citations import Citation, build_citations
from adaptive_router.rag.token_budget import TokenBudgeter

log = structlog.get_logger(__name__)

UNKNOWN_SOURCE = "unknown"
CONTEXT_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class KnowledgeHit:
    """One row returned by a knowledge store query."""

    id: str
    text: str
    score: float
    source: str = UNKNOWN_SOURCE
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalResult:
    id: str
    text: str
    source: str
    vector_score: float = 0.0
    keyword_score: float = 0.0
    combined_score: float = 0.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AugmentedContext:
    augmented_query: str
    chunks: list[RetrievalResult]
    total_tokens: int


@dataclass(frozen=True)
class ChunkInput:
    content: str
    chunk_index: int
    vector: tuple[float, ...] | None


class KnowledgeStore(Protocol):
    async def largest_partition(self) -> str | None: ...

    async def vector_search(
        self, partition_id: str, vector: tuple[float, ...], threshold: float, limit: int
    ) -> list[KnowledgeHit]: ...

    async def keyword_search(self, query: str, limit: int) -> list[KnowledgeHit]: ...

    async def insert_chunks(
        self, partition_id: str, source: str, chunks: list[ChunkInput], metadata: dict[str, Any]
    ) -> int: ...


def chunk_words(text_value: str, size: int) -> list[str]:
    """Split on whitespace into windows of ``size`` words."""
    words = text_value.split()
    return [" ".join(words[i : i + size]) for i in range(0, len(words), size)]


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


_WORD = re.compile(r"\w+")


class InMemoryKnowledgeStore:
    """Dict-backed knowledge store for development and tests.

    Keyword search ranks chunks by how many distinct query words they
    contain; ties keep insertion order.
    """

    def __init__(self) -> None:
        self._chunks: dict[str, tuple[str, str, tuple[float, ...] | None, str, dict[str, Any]]] = {}

    async def largest_partition(self) -> str | None:
        counts: dict[str, int] = {}
        for partition_id, _, vector, _, _ in self._chunks.values():
            if vector is not None:
                counts[partition_id] = counts.get(partition_id, 0) + 1
        if not counts:
            return None
        return max(counts, key=lambda pid: counts[pid])

    async def vector_search(
        self, partition_id: str, vector: tuple[float, ...], threshold: float, limit: int
    ) -> list[KnowledgeHit]:
        hits = []
        for chunk_id, (pid, content, stored, source, metadata) in self._chunks.items():
            if pid != partition_id or stored is None:
                continue
            score = cosine_similarity(vector, stored)
            if score >= threshold:
                hits.append(KnowledgeHit(chunk_id, content, score, source, dict(metadata)))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    async def keyword_search(self, query: str, limit: int) -> list[KnowledgeHit]:
        terms = {w.lower() for w in _WORD.findall(query)}
        if not terms:
            return []
        scored = []
        for chunk_id, (_, content, _, source, metadata) in self._chunks.items():
            matched = len(terms & {w.lower() for w in _WORD.findall(content)})
            if matched:
                scored.append(KnowledgeHit(chunk_id, content, float(matched), source, dict(metadata)))
        scored.sort(key=lambda h: h.score, reverse=True)
        return scored[:limit]

    async def insert_chunks(
        self, partition_id: str, source: str, chunks: list[ChunkInput], metadata: dict[str, Any]
    ) -> int:
        for chunk in chunks:
            self._chunks[str(uuid.uuid4())] = (partition_id, chunk.content, chunk.vector, source, dict(metadata))
        return len(chunks)


class PgKnowledgeStore:
    """pgvector + tsvector store over the knowledge_chunks table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def largest_partition(self) -> str | None:
        stmt = (
            select(KnowledgeChunk.partition_id, func.count().label("n"))
            .where(KnowledgeChunk.embedding.is_not(None))
            .group_by(KnowledgeChunk.partition_id)
            .order_by(func.count().desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        log.debug("knowledge_store.partition_selected", partition_id=str(row.partition_id), chunks=row.n)
        return str(row.partition_id)

    async def vector_search(
        self, partition_id: str, vector: tuple[float, ...], threshold: float, limit: int
    ) -> list[KnowledgeHit]:
        embedding_str = f"[{','.join(str(x) for x in vector)}]"
        sql = text("""
            SELECT
                kc.id AS chunk_id,
                kc.content AS content,
                kc.source AS source,
                kc.metadata AS metadata,
                1 - (kc.embedding <=> CAST(:embedding AS vector)) AS score
            FROM knowledge_chunks kc
            WHERE
                kc.partition_id = CAST(:partition_id AS uuid)
                AND kc.embedding IS NOT NULL
                AND 1 - (kc.embedding <=> CAST(:embedding AS vector)) >= :threshold
            ORDER BY kc.embedding <=> CAST(:embedding AS vector)
            LIMIT :limit
        """)
        params = {
            "embedding": embedding_str,
            "partition_id": partition_id,
            "threshold": threshold,
            "limit": limit,
        }
        async with self._session_factory() as session:
            rows = (await session.execute(sql, params)).all()
        return [
            KnowledgeHit(str(row.chunk_id), row.content, float(row.score), row.source, dict(row.metadata or {}))
            for row in rows
        ]

    async def keyword_search(self, query: str, limit: int) -> list[KnowledgeHit]:
        sql = text("""
            SELECT
                kc.id AS chunk_id,
                kc.content AS content,
                kc.source AS source,
                kc.metadata AS metadata,
                ts_rank(kc.content_tsv, websearch_to_tsquery('simple', :query)) AS score
            FROM knowledge_chunks kc
            WHERE kc.content_tsv @@ websearch_to_tsquery('simple', :query)
            ORDER BY score DESC
            LIMIT :limit
        """)
        async with self._session_factory() as session:
            rows = (await session.execute(sql, {"query": query, "limit": limit})).all()
        return [
            KnowledgeHit(str(row.chunk_id), row.content, float(row.score), row.source, dict(row.metadata or {}))
            for row in rows
        ]

    async def insert_chunks(
        self, partition_id: str, source: str, chunks: list[ChunkInput], metadata: dict[str, Any]
    ) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(
                    [
                        KnowledgeChunk(
                            partition_id=uuid.UUID(partition_id),
                            source=source,
                            chunk_index=chunk.chunk_index,
                            content=chunk.content,
                            embedding=list(chunk.vector) if chunk.vector is not None else None,
                            metadata_=dict(metadata),
                        )
                        for chunk in chunks
                    ]
                )
        return len(chunks)


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------


class HybridRetriever:
    """Vector + keyword retrieval with weighted score fusion."""

    def __init__(
        self,
        store: KnowledgeStore,
        embeddings: EmbeddingService,
        settings: Settings | None = None,
        *,
        budgeter: TokenBudgeter | None = None,
    ) -> None:
        self._store = store
        self._embeddings = embeddings
        self._settings = settings or get_settings()
        self._budgeter = budgeter or TokenBudgeter()

    async def vector_search(
        self,
        query: str,
        limit: int = 10,
        threshold: float = 0.7,
        partition_id: str | None = None,
    ) -> list[RetrievalResult]:
        embedding = await self._embeddings.embed(query)
        if embedding.source is EmbeddingSource.HASH:
            # Stored vectors come from the embedding model; hash vectors cannot match them
            log.info("hybrid_search.vector_skipped", reason="hash_embedding")
            return []

        target = partition_id or await self._store.largest_partition()
        if target is None:
            log.warning("hybrid_search.no_partition")
            return []

        hits = await self._store.vector_search(target, embedding.vector, threshold, limit)
        return [
            RetrievalResult(
                id=hit.id,
                text=hit.text,
                source=hit.source or UNKNOWN_SOURCE,
                vector_score=hit.score,
                combined_score=hit.score,
                metadata=hit.metadata,
            )
            for hit in hits
        ]

    async def keyword_search(self, query: str, limit: int = 10) -> list[RetrievalResult]:
        hits = await self._store.keyword_search(query, limit)
        results = []
        for index, hit in enumerate(hits):
            score = 1 - index / limit
            results.append(
                RetrievalResult(
                    id=hit.id,
                    text=hit.text,
                    source=hit.source or UNKNOWN_SOURCE,
                    keyword_score=score,
                    combined_score=score,
                    metadata=hit.metadata,
                )
            )
        return results

    async def hybrid_search(
        self,
        query: str,
        limit: int | None = None,
        threshold: float | None = None,
        vector_weight: float | None = None,
        keyword_weight: float | None = None,
        partition_id: str | None = None,
    ) -> list[RetrievalResult]:
        """Run both searches concurrently and merge them by document id.

        A failing search contributes no results; the other still counts.
        """
        limit = limit or self._settings.rag_limit
        threshold = self._settings.rag_threshold if threshold is None else threshold
        vector_weight = self._settings.rag_vector_weight if vector_weight is None else vector_weight
        keyword_weight = self._settings.rag_keyword_weight if keyword_weight is None else keyword_weight

        if not query.strip():
            return []

        vector_results, keyword_results = await asyncio.gather(
            self.vector_search(query, limit, threshold, partition_id),
            self.keyword_search(query, limit),
            return_exceptions=True,
        )
        if isinstance(vector_results, BaseException):
            log.warning("hybrid_search.vector_failed", error=str(vector_results))
            vector_results = []
        if isinstance(keyword_results, BaseException):
            log.warning("hybrid_search.keyword_failed", error=str(keyword_results))
            keyword_results = []

        merged = merge_results(vector_results, keyword_results, vector_weight, keyword_weight)
        log.debug(
            "hybrid_search.complete",
            vector_count=len(vector_results),
            keyword_count=len(keyword_results),
            merged_count=len(merged),
        )
        return merged[:limit]

    async def augment_context(self, query: str, **options: Any) -> AugmentedContext:
        chunks = await self.hybrid_search(query, **options)
        parts = [f"[Source {i}: {chunk.source}]\n{chunk.text}" for i, chunk in enumerate(chunks, start=1)]
        augmented = f"Context from knowledge base:\n\n{CONTEXT_SEPARATOR.join(parts)}\n\nUser Query: {query}".strip()
        return AugmentedContext(
            augmented_query=augmented,
            chunks=chunks,
            total_tokens=self._budgeter.estimate_tokens(augmented),
        )

    @staticmethod
    def generate_citations(chunks: list[RetrievalResult]) -> list[Citation]:
        return build_citations(chunks)

    async def add_document(
        self,
        partition_id: str,
        text_value: str,
        *,
        source: str = UNKNOWN_SOURCE,
        metadata: dict[str, Any] | None = None,
        chunk_size: int | None = None,
    ) -> int:
        """Chunk, embed and store a document.

        Chunks whose embedding fell back to the hash source are stored
        without a vector and stay reachable through keyword search only.

        Returns:
            Number of chunks stored
        """
        size = chunk_size or self._settings.rag_chunk_words
        pieces = chunk_words(text_value, size)
        if not pieces:
            return 0

        chunks = []
        for index, piece in enumerate(pieces):
            embedding = await self._embeddings.embed(piece)
            vector = embedding.vector if embedding.source is not EmbeddingSource.HASH else None
            chunks.append(ChunkInput(content=piece, chunk_index=index, vector=vector))

        stored = await self._store.insert_chunks(partition_id, source, chunks, dict(metadata or {}))
        log.info("hybrid_search.document_added", partition_id=partition_id, chunks=stored, source=source)
        return stored


def merge_results(
    vector_results: list[RetrievalResult],
    keyword_results: list[RetrievalResult],
    vector_weight: float,
    keyword_weight: float,
) -> list[RetrievalResult]:
    """Weighted-sum fusion keyed on result id, best first."""
    merged: dict[str, RetrievalResult] = {}
    for result in vector_results:
        merged[result.id] = RetrievalResult(
            id=result.id,
            text=result.text,
            source=result.source,
            vector_score=result.vector_score,
            combined_score=result.vector_score * vector_weight,
            metadata=result.metadata,
        )
    for result in keyword_results:
        existing = merged.get(result.id)
        if existing is not None:
            existing.keyword_score = result.keyword_score
            existing.combined_score += result.keyword_score * keyword_weight
        else:
            merged[result.id] = RetrievalResult(
                id=result.id,
                text=result.text,
                source=result.source,
                keyword_score=result.keyword_score,
                combined_score=result.keyword_score * keyword_weight,
                metadata=result.metadata,
            )
    return sorted(merged.values(), key=lambda r: r.combined_score, reverse=True)
