"""Tests for embedding generation and its fallback chain."""

from __future__ import annotations

import math
from unittest.mock import AsyncMock

import pytest


class TestHashEmbedding:
    @pytest.mark.parametrize("text,expected", [("", 0x811C9DC5), ("a", 0xE40C292C), ("foobar", 0xBF9CF968)])
    def test_fnv1a_reference_values(self, text, expected):
        from adaptive_router.agent.embeddings import fnv1a

        assert fnv1a(text) == expected

    def test_seed_changes_hash(self):
        from adaptive_router.agent.embeddings import fnv1a

        assert fnv1a("login", 1) != fnv1a("login", 2)

    def test_deterministic_and_normalized(self):
        from adaptive_router.agent.embeddings import hash_embedding

        vector = hash_embedding("Create a login form", 64)

        assert vector == hash_embedding("  create a LOGIN form ", 64)
        assert len(vector) == 64
        assert math.sqrt(sum(v * v for v in vector)) == pytest.approx(1.0)

    def test_different_texts_differ(self):
        from adaptive_router.agent.embeddings import hash_embedding

        assert hash_embedding("login form", 32) != hash_embedding("dark mode", 32)


class TestCosineSimilarity:
    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ((1.0, 0.0), (1.0, 0.0), 1.0),
            ((1.0, 0.0), (0.0, 1.0), 0.0),
            ((1.0, 0.0), (-1.0, 0.0), -1.0),
            ((1.0, 0.0), (1.0, 0.0, 0.0), 0.0),
            ((0.0, 0.0), (1.0, 0.0), 0.0),
            ((), (), 0.0),
        ],
    )
    def test_values(self, a, b, expected):
        from adaptive_router.agent.embeddings import cosine_similarity

        assert cosine_similarity(a, b) == pytest.approx(expected)


class TestEmbeddingService:
    @pytest.mark.asyncio
    async def test_local_embedder_first(self, mock_llm, fake_settings):
        from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource

        local = AsyncMock(return_value=[0.5, 0.5])
        service = EmbeddingService(mock_llm, fake_settings, local_embedder=local)

        embedding = await service.embed("hello")

        assert embedding.source is EmbeddingSource.CLIENT
        assert embedding.vector == (0.5, 0.5)
        mock_llm.embed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_after_local_failure(self, mock_llm, fake_settings):
        from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource

        local = AsyncMock(side_effect=RuntimeError("model not loaded"))
        service = EmbeddingService(mock_llm, fake_settings, local_embedder=local)

        embedding = await service.embed("hello")

        assert embedding.source is EmbeddingSource.SERVER
        assert embedding.vector == (0.1, 0.2, 0.3)

    @pytest.mark.asyncio
    async def test_hash_after_server_failure(self, mock_llm, fake_settings):
        from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource, hash_embedding

        mock_llm.embed = AsyncMock(side_effect=ConnectionError("proxy down"))
        service = EmbeddingService(mock_llm, fake_settings)

        embedding = await service.embed("hello")

        assert embedding.source is EmbeddingSource.HASH
        assert embedding.vector == hash_embedding("hello", fake_settings.embedding_dimensions)

    @pytest.mark.asyncio
    async def test_empty_server_response_falls_back_to_hash(self, mock_llm, fake_settings):
        from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource

        mock_llm.embed = AsyncMock(return_value=[])
        service = EmbeddingService(mock_llm, fake_settings)

        assert (await service.embed("hello")).source is EmbeddingSource.HASH

    @pytest.mark.asyncio
    async def test_no_providers_uses_hash(self, fake_settings):
        from adaptive_router.agent.embeddings import EmbeddingService, EmbeddingSource

        service = EmbeddingService(None, fake_settings)
        embedding = await service.embed("hello")

        assert embedding.source is EmbeddingSource.HASH
        assert len(embedding.vector) == service.dimensions == 384
