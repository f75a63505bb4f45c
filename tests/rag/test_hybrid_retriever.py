"""Tests for HybridRetriever over the in-memory knowledge store.

Covers:
- Weighted fusion, including documents found by only one search
- Degradation when one search fails or the query embedding is hash-based
- Partition selection
- Context augmentation and citations
- Document ingestion
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest


@pytest.fixture
def store():
    from adaptive_router.rag.hybrid_search import InMemoryKnowledgeStore

    return InMemoryKnowledgeStore()


@pytest.fixture
def retriever(store, fixed_embeddings, fake_settings):
    from adaptive_router.rag.hybrid_search import HybridRetriever

    return HybridRetriever(store, fixed_embeddings, fake_settings)


async def _seed(store):
    from adaptive_router.rag.hybrid_search import ChunkInput

    await store.insert_chunks(
        "p1",
        "table-guide.md",
        [ChunkInput("react table pagination guide", 0, (1.0, 0.0, 0.0))],
        {},
    )
    await store.insert_chunks(
        "p1",
        "hooks.md",
        [ChunkInput("pagination with hooks", 0, (0.0, 1.0, 0.0))],
        {},
    )


class TestMergeResults:
    def test_weighted_sum_and_single_side_results(self):
        from adaptive_router.rag.hybrid_search import RetrievalResult, merge_results

        vector = [RetrievalResult(id="a", text="A", source="s", vector_score=0.9, combined_score=0.9)]
        keyword = [
            RetrievalResult(id="a", text="A", source="s", keyword_score=1.0, combined_score=1.0),
            RetrievalResult(id="b", text="B", source="s", keyword_score=0.5, combined_score=0.5),
        ]

        merged = merge_results(vector, keyword, 0.7, 0.3)

        assert [r.id for r in merged] == ["a", "b"]
        assert merged[0].combined_score == pytest.approx(0.9 * 0.7 + 1.0 * 0.3)
        assert merged[1].combined_score == pytest.approx(0.5 * 0.3)
        assert merged[1].vector_score == 0.0


class TestHybridSearch:
    @pytest.mark.asyncio
    async def test_keyword_only_document_scores_keyword_term_only(self, store, retriever, fixed_embeddings):
        await _seed(store)
        fixed_embeddings.vectors["pagination hooks"] = (1.0, 0.0, 0.0)

        results = await retriever.hybrid_search("pagination hooks", limit=10)

        by_source = {r.source: r for r in results}
        table, hooks = by_source["table-guide.md"], by_source["hooks.md"]

        # hooks.md ranks first on keywords but has no vector match
        assert hooks.vector_score == 0.0
        assert hooks.keyword_score == 1.0
        assert hooks.combined_score == pytest.approx(hooks.keyword_score * 0.3)

        assert table.vector_score == pytest.approx(1.0)
        assert table.keyword_score == pytest.approx(0.9)
        assert table.combined_score == pytest.approx(1.0 * 0.7 + 0.9 * 0.3)
        assert results[0] is table

    @pytest.mark.asyncio
    async def test_empty_query_returns_nothing(self, retriever, fixed_embeddings):
        assert await retriever.hybrid_search("   ") == []
        assert fixed_embeddings.calls == []

    @pytest.mark.asyncio
    async def test_vector_failure_keeps_keyword_results(self, store, retriever):
        await _seed(store)
        store.vector_search = AsyncMock(side_effect=RuntimeError("pgvector unavailable"))

        results = await retriever.hybrid_search("pagination hooks")

        assert {r.source for r in results} == {"table-guide.md", "hooks.md"}
        assert all(r.vector_score == 0.0 for r in results)

    @pytest.mark.asyncio
    async def test_keyword_failure_keeps_vector_results(self, store, retriever, fixed_embeddings):
        await _seed(store)
        fixed_embeddings.vectors["pagination hooks"] = (0.0, 1.0, 0.0)
        store.keyword_search = AsyncMock(side_effect=RuntimeError("tsvector unavailable"))

        results = await retriever.hybrid_search("pagination hooks")

        assert [r.source for r in results] == ["hooks.md"]
        assert results[0].combined_score == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_hash_query_embedding_skips_vector_search(self, store, retriever, fixed_embeddings):
        from adaptive_router.agent.embeddings import EmbeddingSource

        await _seed(store)
        fixed_embeddings.vectors["pagination hooks"] = (1.0, 0.0, 0.0)
        fixed_embeddings.source = EmbeddingSource.HASH

        assert await retriever.vector_search("pagination hooks") == []

    @pytest.mark.asyncio
    async def test_results_respect_limit(self, store, retriever):
        await _seed(store)

        assert len(await retriever.hybrid_search("pagination", limit=1)) == 1


class TestPartitions:
    @pytest.mark.asyncio
    async def test_largest_partition_is_default_target(self, store, retriever, fixed_embeddings):
        from adaptive_router.rag.hybrid_search import ChunkInput

        await store.insert_chunks("small", "s.md", [ChunkInput("alpha", 0, (1.0, 0.0, 0.0))], {})
        await store.insert_chunks(
            "big",
            "b.md",
            [ChunkInput("beta", 0, (1.0, 0.0, 0.0)), ChunkInput("gamma", 1, (1.0, 0.0, 0.0))],
            {},
        )
        fixed_embeddings.vectors["query"] = (1.0, 0.0, 0.0)

        results = await retriever.vector_search("query")

        assert {r.source for r in results} == {"b.md"}

    @pytest.mark.asyncio
    async def test_explicit_partition_overrides_default(self, store, retriever, fixed_embeddings):
        from adaptive_router.rag.hybrid_search import ChunkInput

        await store.insert_chunks("small", "s.md", [ChunkInput("alpha", 0, (1.0, 0.0, 0.0))], {})
        await store.insert_chunks(
            "big",
            "b.md",
            [ChunkInput("beta", 0, (1.0, 0.0, 0.0)), ChunkInput("gamma", 1, (1.0, 0.0, 0.0))],
            {},
        )
        fixed_embeddings.vectors["query"] = (1.0, 0.0, 0.0)

        results = await retriever.vector_search("query", partition_id="small")

        assert [r.source for r in results] == ["s.md"]

    @pytest.mark.asyncio
    async def test_no_embedded_chunks_means_no_vector_results(self, retriever):
        assert await retriever.vector_search("query") == []


class TestAugmentation:
    @pytest.mark.asyncio
    async def test_augmented_query_layout(self, store, retriever, fixed_embeddings):
        await _seed(store)
        fixed_embeddings.vectors["pagination hooks"] = (1.0, 0.0, 0.0)

        context = await retriever.augment_context("pagination hooks", limit=10)

        assert context.augmented_query.startswith("Context from knowledge base:\n\n[Source 1: table-guide.md]")
        assert "\n\n---\n\n[Source 2: hooks.md]" in context.augmented_query
        assert context.augmented_query.endswith("User Query: pagination hooks")
        assert context.total_tokens > 0

        citations = retriever.generate_citations(context.chunks)
        assert [c.source for c in citations] == ["table-guide.md", "hooks.md"]


class TestAddDocument:
    @pytest.mark.asyncio
    async def test_document_is_chunked_and_searchable(self, store, retriever):
        text = "one two three four five six seven eight nine ten"

        stored = await retriever.add_document("p1", text, source="numbers.txt", chunk_size=4)

        assert stored == 3
        results = await retriever.keyword_search("nine")
        assert [r.text for r in results] == ["nine ten"]
        assert results[0].source == "numbers.txt"

    @pytest.mark.asyncio
    async def test_hash_embedded_chunks_are_keyword_only(self, store, retriever, fixed_embeddings):
        from adaptive_router.agent.embeddings import EmbeddingSource

        fixed_embeddings.source = EmbeddingSource.HASH
        await retriever.add_document("p1", "offline fallback chunk", chunk_size=16)

        assert await store.largest_partition() is None
        assert len(await retriever.keyword_search("offline")) == 1

    @pytest.mark.asyncio
    async def test_blank_document_stores_nothing(self, retriever):
        assert await retriever.add_document("p1", "   ") == 0
