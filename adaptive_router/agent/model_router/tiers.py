"""Tier resolution, model allow-lists and budget gating.

The TierGate answers three questions for the routing pipeline:
1. Which tier is this user on? Anything doubtful resolves to ``free``.
2. May this tier use the requested model? If not, which model instead?
3. Does this request fit the user's per-request and daily budgets?

It never raises on overage or on storage failure. Budget results are
reports; storage errors fail closed on privilege (``free``) and open on
availability (the request proceeds).
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping
from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_router.agent.model_router.budget import (
    DAILY_REQUEST_LIMITS,
    BudgetCheck,
    BudgetManager,
    check_budget_limit,
    usage_category,
)
from adaptive_router.agent.model_router.catalog import (
    DEFAULT_TIER_LIMITS,
    IMAGE_TIER_MODELS,
    TEXT_TIER_MODELS,
    TIER_ALLOWED_MODELS,
    ModelKind,
    TierLimits,
    UserTier,
    model_kind,
)
from adaptive_router.config import Settings, get_settings
from adaptive_router.models.usage import Subscription, TierSetting, UserPreference
from adaptive_router.telemetry.logging import short_user_id

log = structlog.get_logger(__name__)

_ANONYMOUS_IDS = frozenset({"anon", "anonymous"})

# Resolved tiers kept in memory; expired entries go first, then the oldest
MAX_CACHED_TIERS = 10_000


def parse_tier(value: str | None) -> UserTier:
    """Map a stored tier string to a UserTier; anything unknown is ``free``."""
    try:
        return UserTier((value or "").strip().lower())
    except ValueError:
        return UserTier.FREE


# ---------------------------------------------------------------------------
# Subscription stores
# ---------------------------------------------------------------------------


class SubscriptionStore(Protocol):
    async def get_active_tier(self, user_id: str) -> str | None: ...

    async def get_budget_limit(self, user_id: str) -> float | None: ...


class InMemorySubscriptionStore:
    """Dict-backed subscription store for tests and single-process dev."""

    def __init__(
        self,
        tiers: Mapping[str, str] | None = None,
        budget_limits: Mapping[str, float] | None = None,
    ) -> None:
        self._tiers = dict(tiers or {})
        self._budget_limits = dict(budget_limits or {})

    async def get_active_tier(self, user_id: str) -> str | None:
        return self._tiers.get(user_id)

    async def get_budget_limit(self, user_id: str) -> float | None:
        return self._budget_limits.get(user_id)

    def set_tier(self, user_id: str, tier: str) -> None:
        self._tiers[user_id] = tier

    def set_budget_limit(self, user_id: str, limit: float | None) -> None:
        if limit is None:
            self._budget_limits.pop(user_id, None)
        else:
            self._budget_limits[user_id] = limit


class SqlSubscriptionStore:
    """Reads ``subscriptions`` and ``user_preferences``."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_active_tier(self, user_id: str) -> str | None:
        stmt = (
            select(Subscription.tier)
            .where(Subscription.user_id == user_id, Subscription.status == "active")
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def get_budget_limit(self, user_id: str) -> float | None:
        stmt = select(UserPreference.budget_limit).where(UserPreference.user_id == user_id)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Tier configuration source
# ---------------------------------------------------------------------------


class TierConfigSource:
    """Serves TierLimits per tier from ``tier_settings`` with a TTL cache.

    Without a session factory, or whenever the table cannot be read, the
    hardcoded DEFAULT_TIER_LIMITS are served instead.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        cfg = settings or get_settings()
        self._ttl = cfg.tier_config_ttl_seconds
        self._timeout = cfg.tier_lookup_timeout_seconds
        self._clock = clock
        self._cached: dict[UserTier, TierLimits] | None = None
        self._loaded_at = 0.0
        self._lock = asyncio.Lock()

    async def get_limits(self, tier: UserTier) -> TierLimits:
        limits = await self.get_all()
        return limits.get(tier, DEFAULT_TIER_LIMITS[UserTier.FREE])

    async def get_all(self) -> dict[UserTier, TierLimits]:
        async with self._lock:
            if self._cached is not None and self._clock() - self._loaded_at < self._ttl:
                return self._cached
            self._cached = await self._load()
            self._loaded_at = self._clock()
            return self._cached

    def invalidate(self) -> None:
        self._cached = None

    async def _load(self) -> dict[UserTier, TierLimits]:
        limits = dict(DEFAULT_TIER_LIMITS)
        if self._session_factory is None:
            return limits

        try:
            async with asyncio.timeout(self._timeout), self._session_factory() as session:
                result = await session.execute(select(TierSetting))
                rows = result.scalars().all()
        except Exception as exc:
            log.warning("tier_config.load_failed", error_type=type(exc).__name__, error=str(exc))
            return limits

        for row in rows:
            try:
                tier = UserTier(row.tier)
                limits[tier] = TierLimits(
                    daily_budget_units=row.daily_budget_units,
                    max_session_messages=row.max_session_messages,
                    max_sessions=row.max_sessions,
                    semantic_cache_limit=row.semantic_cache_limit,
                    response_cache_limit=row.response_cache_limit,
                    prefetch_enabled=row.prefetch_enabled,
                    context_window=row.context_window,
                    rate_limit_per_minute=row.rate_limit_per_minute,
                )
            except ValueError as exc:
                log.warning("tier_config.invalid_row", tier=row.tier, error=str(exc))

        log.info("tier_config.loaded", tiers=sorted(t.value for t in limits), rows=len(rows))
        return limits


# ---------------------------------------------------------------------------
# Tier gate
# ---------------------------------------------------------------------------


class TierGate:
    """Resolves tiers and enforces model access and budgets for them."""

    def __init__(
        self,
        subscriptions: SubscriptionStore | None = None,
        settings: Settings | None = None,
        *,
        config_source: TierConfigSource | None = None,
        budget_manager: BudgetManager | None = None,
        clock: Callable[[], float] = time.monotonic,
        max_cached_tiers: int = MAX_CACHED_TIERS,
    ) -> None:
        self._settings = settings or get_settings()
        self._subscriptions = subscriptions
        self._max_cached_tiers = max_cached_tiers
        self._config = config_source or TierConfigSource(settings=self._settings)
        self._budgets = budget_manager
        self._clock = clock
        # Key: user_id, Value: (tier, resolved_at)
        self._tier_cache: dict[str, tuple[UserTier, float]] = {}

    # ------------------------------------------------------------------
    # Tier resolution
    # ------------------------------------------------------------------

    def is_valid_user_id(self, user_id: str | None) -> bool:
        if not user_id:
            return False
        uid = user_id.strip()
        if uid.lower() in _ANONYMOUS_IDS:
            return False
        return len(uid) >= self._settings.min_user_id_length

    async def resolve_tier(self, user_id: str | None) -> UserTier:
        """Return the user's tier. Missing, anonymous, short or unreadable ids get ``free``."""
        if user_id is None or not self.is_valid_user_id(user_id) or self._subscriptions is None:
            return UserTier.FREE

        cached = self._tier_cache.get(user_id)
        if cached is not None:
            if not self._is_expired(cached[1]):
                return cached[0]
            del self._tier_cache[user_id]

        try:
            async with asyncio.timeout(self._settings.tier_lookup_timeout_seconds):
                raw = await self._subscriptions.get_active_tier(user_id)
        except Exception as exc:
            log.warning(
                "tier_gate.resolve_failed",
                user_id=short_user_id(user_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return UserTier.FREE

        tier = parse_tier(raw)
        self._remember(user_id, tier)
        log.debug("tier_gate.resolved", user_id=short_user_id(user_id), tier=tier.value)
        return tier

    def forget_user(self, user_id: str) -> None:
        """Drop a cached tier, e.g. after a subscription change."""
        self._tier_cache.pop(user_id, None)

    def _is_expired(self, resolved_at: float) -> bool:
        return self._clock() - resolved_at >= self._settings.tier_lookup_cache_seconds

    def _remember(self, user_id: str, tier: UserTier) -> None:
        if len(self._tier_cache) >= self._max_cached_tiers:
            for uid in [uid for uid, (_, at) in self._tier_cache.items() if self._is_expired(at)]:
                del self._tier_cache[uid]
            # Dicts keep insertion order, so the first key is the oldest lookup
            while len(self._tier_cache) >= self._max_cached_tiers:
                del self._tier_cache[next(iter(self._tier_cache))]
        self._tier_cache[user_id] = (tier, self._clock())

    async def get_limits(self, tier: UserTier) -> TierLimits:
        return await self._config.get_limits(tier)

    async def has_access(self, user_id: str | None, required_tier: UserTier) -> bool:
        tier = await self.resolve_tier(user_id)
        return tier.level >= required_tier.level

    # ------------------------------------------------------------------
    # Model access
    # ------------------------------------------------------------------

    @staticmethod
    def is_model_allowed_for_tier(model: str, tier: UserTier) -> bool:
        return model in TIER_ALLOWED_MODELS[tier]

    @staticmethod
    def get_model_for_tier(tier: UserTier, kind: ModelKind = ModelKind.TEXT) -> str:
        table = IMAGE_TIER_MODELS if kind is ModelKind.IMAGE else TEXT_TIER_MODELS
        return table[tier].primary

    @staticmethod
    def get_fallback_model_for_tier(tier: UserTier, kind: ModelKind = ModelKind.TEXT) -> str:
        table = IMAGE_TIER_MODELS if kind is ModelKind.IMAGE else TEXT_TIER_MODELS
        return table[tier].fallback

    def enforce_tier_model(self, requested_model: str, tier: UserTier, kind: ModelKind | None = None) -> str:
        """Return ``requested_model`` if the tier allows it, else the tier's default.

        Never raises; a downgrade is logged as a warning.
        """
        if self.is_model_allowed_for_tier(requested_model, tier):
            return requested_model

        effective_kind = kind or model_kind(requested_model)
        replacement = self.get_model_for_tier(tier, effective_kind)
        log.warning(
            "tier_gate.model_downgraded",
            requested_model=requested_model,
            replacement_model=replacement,
            tier=tier.value,
        )
        return replacement

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    async def check_budget_limit(self, user_id: str | None, estimated_cost: float) -> BudgetCheck:
        """Compare the estimate with the user's stored per-request limit."""
        if user_id is None or not self.is_valid_user_id(user_id) or self._subscriptions is None:
            return check_budget_limit(estimated_cost, None)

        try:
            async with asyncio.timeout(self._settings.tier_lookup_timeout_seconds):
                limit = await self._subscriptions.get_budget_limit(user_id)
        except Exception as exc:
            log.warning("tier_gate.budget_lookup_failed", user_id=short_user_id(user_id), error=str(exc))
            limit = None

        check = check_budget_limit(estimated_cost, limit)
        if not check.allowed:
            log.warning(
                "tier_gate.budget_exceeded",
                user_id=short_user_id(user_id),
                estimated_cost=estimated_cost,
                budget_limit=limit,
            )
        return check

    async def check_daily_budget(
        self,
        user_id: str | None,
        tier: UserTier,
        agent_type: str,
        estimated_cost: float,
    ) -> BudgetCheck:
        """Compare today's usage plus this estimate with the tier's daily quota."""
        if self._budgets is None or user_id is None or not self.is_valid_user_id(user_id):
            return BudgetCheck(allowed=True, estimated_cost=estimated_cost)

        limits = await self.get_limits(tier)
        category = usage_category(agent_type)
        try:
            async with asyncio.timeout(self._settings.usage_lookup_timeout_seconds):
                usage = await self._budgets.get_usage(user_id, category)
        except Exception as exc:
            log.warning(
                "tier_gate.usage_lookup_failed",
                user_id=short_user_id(user_id),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return BudgetCheck(allowed=True, estimated_cost=estimated_cost, limit=limits.daily_budget_units)

        request_limit = DAILY_REQUEST_LIMITS[tier][category]
        if usage.request_count >= request_limit:
            return BudgetCheck(
                allowed=False,
                message=f"Daily {category} request limit reached ({usage.request_count}/{request_limit})",
                estimated_cost=estimated_cost,
                limit=limits.daily_budget_units,
            )

        projected = usage.cost_units + estimated_cost
        if projected > limits.daily_budget_units:
            return BudgetCheck(
                allowed=False,
                message=(
                    f"Daily usage would reach {projected:.4f} units, over the "
                    f"{tier.value} tier allowance of {limits.daily_budget_units:.4f} units"
                ),
                estimated_cost=estimated_cost,
                limit=limits.daily_budget_units,
            )

        return BudgetCheck(allowed=True, estimated_cost=estimated_cost, limit=limits.daily_budget_units)
