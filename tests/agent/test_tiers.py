"""Tests for TierGate and TierConfigSource.

Covers:
- Tier resolution, including every path that must land on ``free``
- Tier lookup caching
- Model allow-list enforcement
- Per-request and daily budget checks
- Tier configuration loading from the database with fallback
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from adaptive_router.agent.model_router.catalog import TIER_ALLOWED_MODELS, UserTier

ALL_MODELS = sorted(TIER_ALLOWED_MODELS[UserTier.ENTERPRISE] | {"unknown-model", "gptimage-xl"})


def _gate(fake_settings, tiers=None, budget_limits=None, **kwargs):
    from adaptive_router.agent.model_router.tiers import InMemorySubscriptionStore, TierGate

    store = InMemorySubscriptionStore(tiers, budget_limits)
    return TierGate(store, fake_settings, **kwargs)


def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


# ---------------------------------------------------------------------------
# Tier resolution
# ---------------------------------------------------------------------------


class TestResolveTier:
    @pytest.mark.asyncio
    async def test_subscribed_user_gets_their_tier(self, fake_settings, valid_user_id):
        gate = _gate(fake_settings, {valid_user_id: "pro"})

        assert await gate.resolve_tier(valid_user_id) is UserTier.PRO

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", [None, "", "anon", "anonymous", "ANONYMOUS", "short_id"])
    async def test_invalid_ids_resolve_to_free(self, fake_settings, user_id):
        gate = _gate(fake_settings, {user_id or "x": "enterprise"})

        assert await gate.resolve_tier(user_id) is UserTier.FREE

    @pytest.mark.asyncio
    async def test_unknown_stored_tier_is_free(self, fake_settings, valid_user_id):
        gate = _gate(fake_settings, {valid_user_id: "platinum"})

        assert await gate.resolve_tier(valid_user_id) is UserTier.FREE

    @pytest.mark.asyncio
    async def test_no_subscription_row_is_free(self, fake_settings, valid_user_id):
        assert await _gate(fake_settings).resolve_tier(valid_user_id) is UserTier.FREE

    @pytest.mark.asyncio
    async def test_store_failure_is_free(self, fake_settings, valid_user_id):
        from adaptive_router.agent.model_router.tiers import TierGate

        store = MagicMock()
        store.get_active_tier = AsyncMock(side_effect=ConnectionError("db down"))
        gate = TierGate(store, fake_settings)

        assert await gate.resolve_tier(valid_user_id) is UserTier.FREE

    @pytest.mark.asyncio
    async def test_slow_store_times_out_to_free(self, fake_settings, valid_user_id):
        from adaptive_router.agent.model_router.tiers import TierGate

        async def slow(user_id):
            await asyncio.sleep(1)
            return "enterprise"

        store = MagicMock()
        store.get_active_tier = slow
        settings = fake_settings.model_copy(update={"tier_lookup_timeout_seconds": 0.01})
        gate = TierGate(store, settings)

        assert await gate.resolve_tier(valid_user_id) is UserTier.FREE

    @pytest.mark.asyncio
    async def test_lookup_is_cached_until_expiry(self, fake_settings, valid_user_id, clock):
        from adaptive_router.agent.model_router.tiers import TierGate

        store = MagicMock()
        store.get_active_tier = AsyncMock(return_value="enterprise")
        gate = TierGate(store, fake_settings, clock=clock)

        await gate.resolve_tier(valid_user_id)
        await gate.resolve_tier(valid_user_id)
        assert store.get_active_tier.await_count == 1

        clock.advance(fake_settings.tier_lookup_cache_seconds + 1)
        await gate.resolve_tier(valid_user_id)
        assert store.get_active_tier.await_count == 2

    @pytest.mark.asyncio
    async def test_forget_user_drops_cached_tier(self, fake_settings, valid_user_id):
        from adaptive_router.agent.model_router.tiers import InMemorySubscriptionStore, TierGate

        store = InMemorySubscriptionStore({valid_user_id: "free"})
        gate = TierGate(store, fake_settings)
        await gate.resolve_tier(valid_user_id)

        store.set_tier(valid_user_id, "enterprise")
        gate.forget_user(valid_user_id)

        assert await gate.resolve_tier(valid_user_id) is UserTier.ENTERPRISE

    @pytest.mark.asyncio
    async def test_tier_cache_is_bounded(self, fake_settings, clock):
        from adaptive_router.agent.model_router.tiers import TierGate

        store = MagicMock()
        store.get_active_tier = AsyncMock(return_value="pro")
        gate = TierGate(store, fake_settings, clock=clock, max_cached_tiers=3)
        users = [f"user_{i:02d}_0123456789abcdefgh" for i in range(5)]

        for user_id in users[:3]:
            await gate.resolve_tier(user_id)
        # Full and nothing expired: the oldest lookup makes room
        await gate.resolve_tier(users[3])
        assert list(gate._tier_cache) == users[1:4]

        # Full with every entry expired: all of them are purged
        clock.advance(fake_settings.tier_lookup_cache_seconds + 1)
        await gate.resolve_tier(users[4])
        assert list(gate._tier_cache) == [users[4]]

    @pytest.mark.asyncio
    async def test_expired_lookup_is_removed_when_refresh_fails(self, fake_settings, valid_user_id, clock):
        from adaptive_router.agent.model_router.tiers import TierGate

        store = MagicMock()
        store.get_active_tier = AsyncMock(return_value="enterprise")
        gate = TierGate(store, fake_settings, clock=clock)
        await gate.resolve_tier(valid_user_id)

        clock.advance(fake_settings.tier_lookup_cache_seconds + 1)
        store.get_active_tier.side_effect = ConnectionError("db down")

        assert await gate.resolve_tier(valid_user_id) is UserTier.FREE
        assert valid_user_id not in gate._tier_cache

    @pytest.mark.asyncio
    async def test_has_access_compares_levels(self, fake_settings, valid_user_id):
        gate = _gate(fake_settings, {valid_user_id: "pro"})

        assert await gate.has_access(valid_user_id, UserTier.FREE) is True
        assert await gate.has_access(valid_user_id, UserTier.PRO) is True
        assert await gate.has_access(valid_user_id, UserTier.ENTERPRISE) is False


# ---------------------------------------------------------------------------
# Model access
# ---------------------------------------------------------------------------


class TestEnforceTierModel:
    @pytest.mark.parametrize("tier", list(UserTier))
    @pytest.mark.parametrize("model", ALL_MODELS)
    def test_result_is_always_allowed(self, fake_settings, tier, model):
        gate = _gate(fake_settings)

        assert gate.enforce_tier_model(model, tier) in TIER_ALLOWED_MODELS[tier]

    def test_allowed_model_passes_through(self, fake_settings):
        assert _gate(fake_settings).enforce_tier_model("mistral", UserTier.FREE) == "mistral"

    def test_disallowed_text_model_falls_back_to_tier_primary(self, fake_settings):
        assert _gate(fake_settings).enforce_tier_model("claude", UserTier.FREE) == "openai-fast"

    def test_disallowed_image_model_falls_back_to_image_primary(self, fake_settings):
        assert _gate(fake_settings).enforce_tier_model("gptimage", UserTier.PRO) == "seedream"

    def test_tier_allow_lists_are_nested(self):
        assert TIER_ALLOWED_MODELS[UserTier.FREE] < TIER_ALLOWED_MODELS[UserTier.PRO]
        assert TIER_ALLOWED_MODELS[UserTier.PRO] < TIER_ALLOWED_MODELS[UserTier.ENTERPRISE]

    @pytest.mark.parametrize("tier", list(UserTier))
    def test_tier_defaults_are_allowed(self, tier):
        from adaptive_router.agent.model_router.catalog import ModelKind
        from adaptive_router.agent.model_router.tiers import TierGate

        for kind in ModelKind:
            assert TierGate.get_model_for_tier(tier, kind) in TIER_ALLOWED_MODELS[tier]
            assert TierGate.get_fallback_model_for_tier(tier, kind) in TIER_ALLOWED_MODELS[tier]


# ---------------------------------------------------------------------------
# Budgets
# ---------------------------------------------------------------------------


class TestBudgetChecks:
    @pytest.mark.asyncio
    async def test_estimate_over_user_limit_is_denied(self, fake_settings, valid_user_id):
        gate = _gate(fake_settings, budget_limits={valid_user_id: 1.0})

        check = await gate.check_budget_limit(valid_user_id, 1.5)

        assert check.allowed is False
        assert "1.5000" in check.message
        assert "1.0000" in check.message
        assert check.limit == 1.0

    @pytest.mark.asyncio
    async def test_estimate_equal_to_limit_is_allowed(self, fake_settings, valid_user_id):
        gate = _gate(fake_settings, budget_limits={valid_user_id: 1.0})

        check = await gate.check_budget_limit(valid_user_id, 1.0)

        assert check.allowed is True
        assert check.message is None

    @pytest.mark.asyncio
    async def test_no_limit_always_allows(self, fake_settings, valid_user_id):
        check = await _gate(fake_settings).check_budget_limit(valid_user_id, 999.0)

        assert check.allowed is True

    @pytest.mark.asyncio
    async def test_daily_budget_denies_projected_overage(self, fake_settings, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        budgets = BudgetManager()
        await budgets.record_usage(valid_user_id, "text", 0.9)
        gate = _gate(fake_settings, budget_manager=budgets)

        check = await gate.check_daily_budget(valid_user_id, UserTier.FREE, "codegen", 0.2)

        assert check.allowed is False
        assert check.limit == 1

    @pytest.mark.asyncio
    async def test_daily_request_count_limit(self, fake_settings, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        budgets = BudgetManager()
        await budgets.record_usage(valid_user_id, "image", 0.0, requests=5)
        gate = _gate(fake_settings, budget_manager=budgets)

        check = await gate.check_daily_budget(valid_user_id, UserTier.FREE, "imagegen", 0.0)

        assert check.allowed is False
        assert "request limit" in check.message

    @pytest.mark.asyncio
    async def test_daily_budget_without_manager_allows(self, fake_settings, valid_user_id):
        check = await _gate(fake_settings).check_daily_budget(valid_user_id, UserTier.FREE, "codegen", 50.0)

        assert check.allowed is True

    @pytest.mark.asyncio
    async def test_stalled_usage_lookup_allows(self, fake_settings, valid_user_id):
        never = asyncio.Event()

        async def stalled(user_id, category, day=None):
            await never.wait()

        budgets = MagicMock()
        budgets.get_usage = stalled
        settings = fake_settings.model_copy(update={"usage_lookup_timeout_seconds": 0.01})
        gate = _gate(settings, budget_manager=budgets)

        check = await asyncio.wait_for(
            gate.check_daily_budget(valid_user_id, UserTier.FREE, "codegen", 50.0), timeout=2
        )

        assert check.allowed is True
        assert check.limit == 1


# ---------------------------------------------------------------------------
# Tier configuration source
# ---------------------------------------------------------------------------


class TestTierConfigSource:
    @pytest.mark.asyncio
    async def test_defaults_without_database(self, fake_settings):
        from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        source = TierConfigSource(settings=fake_settings)

        assert await source.get_limits(UserTier.PRO) == DEFAULT_TIER_LIMITS[UserTier.PRO]

    @pytest.mark.asyncio
    async def test_database_rows_override_defaults(self, fake_settings):
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        row = SimpleNamespace(
            tier="free",
            daily_budget_units=2.5,
            max_session_messages=30,
            max_sessions=12,
            semantic_cache_limit=80,
            response_cache_limit=60,
            prefetch_enabled=True,
            context_window=32_000,
            rate_limit_per_minute=15,
        )
        result = MagicMock()
        result.scalars.return_value.all.return_value = [row]
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)

        source = TierConfigSource(_session_factory(session), fake_settings)
        limits = await source.get_limits(UserTier.FREE)

        assert limits.daily_budget_units == 2.5
        assert limits.response_cache_limit == 60
        assert limits.prefetch_enabled is True

    @pytest.mark.asyncio
    async def test_invalid_row_keeps_default(self, fake_settings):
        from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        row = SimpleNamespace(
            tier="pro",
            daily_budget_units=5,
            max_session_messages=50,
            max_sessions=50,
            semantic_cache_limit=0,
            response_cache_limit=150,
            prefetch_enabled=True,
            context_window=64_000,
            rate_limit_per_minute=30,
        )
        result = MagicMock()
        result.scalars.return_value.all.return_value = [row]
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)

        source = TierConfigSource(_session_factory(session), fake_settings)

        assert await source.get_limits(UserTier.PRO) == DEFAULT_TIER_LIMITS[UserTier.PRO]

    @pytest.mark.asyncio
    async def test_database_failure_serves_defaults(self, fake_settings):
        from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        session = MagicMock()
        session.execute = AsyncMock(side_effect=ConnectionError("db down"))
        source = TierConfigSource(_session_factory(session), fake_settings)

        assert await source.get_limits(UserTier.ENTERPRISE) == DEFAULT_TIER_LIMITS[UserTier.ENTERPRISE]

    @pytest.mark.asyncio
    async def test_stalled_database_serves_defaults(self, fake_settings):
        from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        never = asyncio.Event()

        async def stalled(stmt):
            await never.wait()

        session = MagicMock()
        session.execute = stalled
        settings = fake_settings.model_copy(update={"tier_lookup_timeout_seconds": 0.01})
        source = TierConfigSource(_session_factory(session), settings)

        limits = await asyncio.wait_for(source.get_limits(UserTier.PRO), timeout=2)

        assert limits == DEFAULT_TIER_LIMITS[UserTier.PRO]

    @pytest.mark.asyncio
    async def test_loaded_config_is_cached(self, fake_settings, clock):
        from adaptive_router.agent.model_router.tiers import TierConfigSource

        result = MagicMock()
        result.scalars.return_value.all.return_value = []
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        source = TierConfigSource(_session_factory(session), fake_settings, clock=clock)

        await source.get_all()
        await source.get_all()
        assert session.execute.await_count == 1

        clock.advance(fake_settings.tier_config_ttl_seconds + 1)
        await source.get_all()
        assert session.execute.await_count == 2
