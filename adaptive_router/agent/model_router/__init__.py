"""Tier-aware model routing.

This package resolves subscription tiers, enforces per-tier model
allow-lists and budgets, selects models from historical feedback and runs
the fallback chain:
- catalog: tier tables, context windows, prices
- tiers: TierGate and the tier configuration source
- budget: per-request budget checks and daily usage counters
- selector: ModelSelector
- fallback: pure attempt() over an ordered model chain

BudgetManager uses in-memory storage by default.
Use PersistentBudgetManager for durable, multi-instance deployments.
"""

from __future__ import annotations

from adaptive_router.agent.model_router.budget import (
    BudgetCheck,
    BudgetManager,
    PersistentBudgetManager,
    check_budget_limit,
)
from adaptive_router.agent.model_router.catalog import ModelKind, TierLimits, UserTier
from adaptive_router.agent.model_router.fallback import Attempt, AttemptResult, attempt, build_chain
from adaptive_router.agent.model_router.selector import ModelRecommendation, ModelSelector, Priority
from adaptive_router.agent.model_router.tiers import (
    InMemorySubscriptionStore,
    SqlSubscriptionStore,
    TierConfigSource,
    TierGate,
)

__all__ = [
    "Attempt",
    "AttemptResult",
    "BudgetCheck",
    "BudgetManager",
    "InMemorySubscriptionStore",
    "ModelKind",
    "ModelRecommendation",
    "ModelSelector",
    "PersistentBudgetManager",
    "Priority",
    "SqlSubscriptionStore",
    "TierConfigSource",
    "TierGate",
    "TierLimits",
    "UserTier",
    "attempt",
    "build_chain",
    "check_budget_limit",
]
