"""Tests for engine and session factory lifecycle (no database connection is opened)."""

from __future__ import annotations

import pytest


class TestSessionFactory:
    @pytest.mark.asyncio
    async def test_uninitialized_factory_raises(self):
        from adaptive_router.database import close_db, get_session_factory

        await close_db()
        with pytest.raises(RuntimeError, match="init_db"):
            get_session_factory()

    @pytest.mark.asyncio
    async def test_init_and_close(self, fake_settings):
        from adaptive_router.database import close_db, get_session_factory, init_db

        init_db(fake_settings, for_test=True)
        factory = get_session_factory()
        assert factory.kw["expire_on_commit"] is False

        await close_db()
        with pytest.raises(RuntimeError):
            get_session_factory()

    def test_all_tables_registered_on_metadata(self):
        import adaptive_router.models  # noqa: F401
        from adaptive_router.database import Base

        assert {
            "agent_feedback",
            "daily_usage",
            "subscriptions",
            "user_preferences",
            "tier_settings",
            "knowledge_partitions",
            "knowledge_chunks",
        } <= set(Base.metadata.tables)
