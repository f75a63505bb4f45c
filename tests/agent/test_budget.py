"""Tests for budget checks and daily usage accounting."""

from __future__ import annotations

import asyncio
from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest


def _session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory


class TestCheckBudgetLimit:
    @pytest.mark.parametrize(
        "estimate,limit,allowed",
        [
            (1.5, 1.0, False),
            (1.0, 1.0, True),
            (0.2, 1.0, True),
            (100.0, None, True),
            (0.0, 0.0, True),
        ],
    )
    def test_boundaries(self, estimate, limit, allowed):
        from adaptive_router.agent.model_router.budget import check_budget_limit

        check = check_budget_limit(estimate, limit)

        assert check.allowed is allowed
        assert (check.message is None) is allowed

    def test_denial_message_names_both_amounts(self):
        from adaptive_router.agent.model_router.budget import check_budget_limit

        check = check_budget_limit(1.5, 1.0)

        assert check.message == "Estimated cost (1.5000 units) exceeds your budget limit (1.0000 units)"

    @pytest.mark.parametrize("agent_type,category", [("imagegen", "image"), ("codegen", "text"), ("x", "text")])
    def test_usage_category(self, agent_type, category):
        from adaptive_router.agent.model_router.budget import usage_category

        assert usage_category(agent_type) == category


class TestBudgetManager:
    @pytest.mark.asyncio
    async def test_usage_accumulates_per_category(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        manager = BudgetManager()
        await manager.record_usage(valid_user_id, "text", 0.25)
        await manager.record_usage(valid_user_id, "text", 0.5)
        await manager.record_usage(valid_user_id, "image", 0.04)

        text = await manager.get_usage(valid_user_id, "text")
        assert text.cost_units == pytest.approx(0.75)
        assert text.request_count == 2
        assert (await manager.get_usage(valid_user_id, "image")).request_count == 1

    @pytest.mark.asyncio
    async def test_unknown_user_has_zero_usage(self):
        from adaptive_router.agent.model_router.budget import BudgetManager

        usage = await BudgetManager().get_usage("nobody", "text")

        assert usage.cost_units == 0.0
        assert usage.request_count == 0

    @pytest.mark.asyncio
    async def test_other_days_are_separate(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        manager = BudgetManager()
        await manager.record_usage(valid_user_id, "text", 0.5)

        usage = await manager.get_usage(valid_user_id, "text", date(2000, 1, 1))
        assert usage.request_count == 0

    @pytest.mark.asyncio
    async def test_concurrent_records_are_not_lost(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        manager = BudgetManager()
        await asyncio.gather(*(manager.record_usage(valid_user_id, "text", 0.01) for _ in range(50)))

        assert (await manager.get_usage(valid_user_id, "text")).request_count == 50

    @pytest.mark.asyncio
    async def test_returned_record_is_a_snapshot(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import BudgetManager

        manager = BudgetManager()
        first = await manager.record_usage(valid_user_id, "text", 0.1)
        await manager.record_usage(valid_user_id, "text", 0.1)

        assert first.request_count == 1

    @pytest.mark.asyncio
    async def test_day_rollover_drops_earlier_counters(self, valid_user_id, monkeypatch):
        from adaptive_router.agent.model_router import budget
        from adaptive_router.agent.model_router.budget import BudgetManager

        manager = BudgetManager()
        monkeypatch.setattr(budget, "_today", lambda: date(2026, 3, 1))
        await manager.record_usage(valid_user_id, "text", 0.5)
        await manager.record_usage("user_other_0123456789abc", "image", 0.1)

        monkeypatch.setattr(budget, "_today", lambda: date(2026, 3, 2))
        await manager.record_usage(valid_user_id, "text", 0.2)

        assert list(manager._usage) == [(valid_user_id, "text", date(2026, 3, 2))]
        earlier = await manager.get_usage(valid_user_id, "text", date(2026, 3, 1))
        assert earlier.request_count == 0
        assert (await manager.get_usage(valid_user_id, "text")).cost_units == pytest.approx(0.2)


class TestPersistentBudgetManager:
    @pytest.mark.asyncio
    async def test_first_record_inserts_row(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import PersistentBudgetManager

        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        session.commit = AsyncMock()
        manager = PersistentBudgetManager(_session_factory(session))

        record = await manager.record_usage(valid_user_id, "text", 0.3)

        session.add.assert_called_once()
        session.commit.assert_awaited_once()
        assert record.cost_units == pytest.approx(0.3)
        assert record.request_count == 1

    @pytest.mark.asyncio
    async def test_existing_row_is_incremented(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import PersistentBudgetManager

        row = SimpleNamespace(cost_units=0.5, request_count=3)
        result = MagicMock()
        result.scalar_one_or_none.return_value = row
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        session.commit = AsyncMock()
        manager = PersistentBudgetManager(_session_factory(session))

        record = await manager.record_usage(valid_user_id, "text", 0.25)

        session.add.assert_not_called()
        assert row.cost_units == pytest.approx(0.75)
        assert record.request_count == 4

    @pytest.mark.asyncio
    async def test_get_usage_without_row(self, valid_user_id):
        from adaptive_router.agent.model_router.budget import PersistentBudgetManager

        result = MagicMock()
        result.scalar_one_or_none.return_value = None
        session = MagicMock()
        session.execute = AsyncMock(return_value=result)
        manager = PersistentBudgetManager(_session_factory(session))

        usage = await manager.get_usage(valid_user_id, "image")

        assert usage.cost_units == 0.0
        assert usage.category == "image"
