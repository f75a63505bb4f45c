"""Routing pipeline - the single entry point agent orchestrators call.

Request flow:
1. Resolve the caller's tier and load its limits (the tier's caches follow them)
2. Select a model from feedback history and clamp it to the tier allow-list
3. Estimate cost and check the per-request and daily budgets
4. Exact cache lookup, then fuzzy / semantic lookup
5. On a miss: retrieve knowledge context, bounded by the token budget
6. Run the fallback chain (recommended -> tier fallback -> tier primary)
7. Cache the response; feedback, usage, embedding and prefetch run detached

Budget overage is reported in ``RouteResult.budget`` under the soft policy
and raised as BudgetExceededError under the hard policy, before any cache
or model call. Cache hits cost nothing and record no usage.

Caches are namespaced per (agent type, tier): one agent never answers
with another agent's response, and a request on one tier never resizes
the caches serving another tier.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adaptive_router.agent.embeddings import EmbeddingService
from adaptive_router.agent.llm import LLMClient
from adaptive_router.agent.model_router.budget import (
    BudgetCheck,
    BudgetManager,
    PersistentBudgetManager,
    usage_category,
)
from adaptive_router.agent.model_router.catalog import (
    DEFAULT_TIER_LIMITS,
    ModelKind,
    UserTier,
    estimate_cost,
    model_kind,
)
from adaptive_router.agent.model_router.fallback import attempt, build_chain
from adaptive_router.agent.model_router.selector import ModelRecommendation, ModelSelector
from adaptive_router.agent.model_router.tiers import (
    SqlSubscriptionStore,
    SubscriptionStore,
    TierConfigSource,
    TierGate,
)
from adaptive_router.cache.prefetch import Prefetcher
from adaptive_router.cache.prompt_cache import PromptCache
from adaptive_router.cache.response_cache import ResponseCache
from adaptive_router.cache.semantic_cache import SemanticCache
from adaptive_router.config import BudgetPolicy, Settings, get_settings
from adaptive_router.exceptions import BudgetExceededError, ModelInvocationError
from adaptive_router.infra.background import BackgroundTaskRunner
from adaptive_router.rag.citations import Citation
from adaptive_router.rag.hybrid_search import HybridRetriever, PgKnowledgeStore
from adaptive_router.rag.token_budget import TokenBudgeter
from adaptive_router.services.feedback import FeedbackRecord, FeedbackStore, PersistentFeedbackStore
from adaptive_router.telemetry.logging import (
    bind_agent_context,
    bind_request_context,
    bind_user_context,
)

log = structlog.get_logger(__name__)

# Completion size assumed when estimating a request's cost up front
ESTIMATED_COMPLETION_TOKENS = 1024

ModelInvoker = Callable[[str, list[dict[str, str]]], Awaitable[Any]]


class CacheHit(StrEnum):
    NONE = "none"
    EXACT = "exact"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


@dataclass(frozen=True)
class RouteResult:
    response: Any
    model_used: str | None
    cache_hit: CacheHit
    tier: UserTier
    citations: list[Citation] = field(default_factory=list)
    cost_units: float = 0.0
    attempted_models: list[str] = field(default_factory=list)
    recommendation: ModelRecommendation | None = None
    budget: BudgetCheck | None = None
    request_id: str | None = None


@dataclass
class CacheSet:
    """Response, semantic and prefetch layers for one agent type and tier."""

    responses: ResponseCache
    semantic: SemanticCache
    prefetcher: Prefetcher


def _unpack(payload: Any) -> tuple[Any, str | None]:
    if isinstance(payload, dict) and "response" in payload:
        return payload["response"], payload.get("model_used")
    return payload, None


class RoutingPipeline:
    """Tier-aware, cache-first routing of agent requests to models."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        llm_client: LLMClient | None = None,
        tier_gate: TierGate | None = None,
        feedback_store: FeedbackStore | None = None,
        selector: ModelSelector | None = None,
        embeddings: EmbeddingService | None = None,
        retriever: HybridRetriever | None = None,
        prompt_cache: PromptCache | None = None,
        budgeter: TokenBudgeter | None = None,
        budget_manager: BudgetManager | None = None,
        runner: BackgroundTaskRunner | None = None,
        invoker: ModelInvoker | None = None,
        cache_factory: Callable[[str, UserTier], CacheSet] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._llm = llm_client
        self._budgets = budget_manager
        self._gate = tier_gate or TierGate(settings=self._settings, budget_manager=budget_manager)
        self._feedback = feedback_store or FeedbackStore()
        self._selector = selector or ModelSelector(self._feedback, self._settings)
        self._embeddings = embeddings or EmbeddingService(llm_client, self._settings)
        self._retriever = retriever
        self._prompts = prompt_cache or PromptCache()
        self._budgeter = budgeter or TokenBudgeter()
        self._runner = runner or BackgroundTaskRunner(default_timeout=self._settings.feedback_timeout_seconds)
        self._invoker = invoker or self._default_invoker
        self._cache_factory = cache_factory or self._default_cache_set
        self._caches: dict[tuple[str, UserTier], CacheSet] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def caches(self, agent_type: str, tier: UserTier = UserTier.FREE) -> CacheSet:
        key = (agent_type, tier)
        cache_set = self._caches.get(key)
        if cache_set is None:
            cache_set = self._cache_factory(agent_type, tier)
            self._caches[key] = cache_set
        return cache_set

    async def drain(self) -> None:
        """Wait for detached feedback, usage, embedding and prefetch work."""
        await self._runner.drain()

    async def route(
        self,
        agent_type: str,
        query: str,
        user_id: str | None = None,
        priority: str = "balanced",
        session_id: str | None = None,
        system_prompt: str | None = None,
    ) -> RouteResult:
        """Answer ``query`` for ``agent_type`` from cache or the best allowed model.

        Raises:
            BudgetExceededError: Over budget while the hard policy is active
            ModelInvocationError: Every model in the fallback chain failed
        """
        started = time.perf_counter()
        request_id = bind_request_context()
        bind_user_context(user_id)
        bind_agent_context(agent_type, session_id)

        tier = await self._gate.resolve_tier(user_id)
        limits = await self._gate.get_limits(tier)
        caches = self.caches(agent_type, tier)
        # Shrinks only when the tier's configured limits change
        await caches.responses.set_tier(tier, limits)
        await caches.semantic.set_tier(tier, limits)

        recommendation = await self._selector.select_model(agent_type, priority, user_id)
        kind = ModelKind.IMAGE if usage_category(agent_type) == "image" else ModelKind.TEXT
        model = self._gate.enforce_tier_model(recommendation.model, tier, kind)

        prompt_tokens = self._budgeter.estimate_tokens(query) + self._budgeter.estimate_tokens(system_prompt)
        estimated = estimate_cost(model, prompt_tokens, ESTIMATED_COMPLETION_TOKENS)
        budget = await self._check_budget(user_id, tier, agent_type, estimated)
        if not budget.allowed:
            if self._settings.budget_policy is BudgetPolicy.HARD:
                log.warning("pipeline.budget_blocked", tier=tier.value, message=budget.message)
                raise BudgetExceededError(budget)
            log.info("pipeline.budget_warning", tier=tier.value, message=budget.message)

        cached = await self._lookup(caches, query)
        if cached is not None:
            payload, hit = cached
            response, cached_model = _unpack(payload)
            log.info("pipeline.route_completed", cache_hit=hit.value, tier=tier.value)
            return RouteResult(
                response=response,
                model_used=cached_model,
                cache_hit=hit,
                tier=tier,
                recommendation=recommendation,
                budget=budget,
                request_id=request_id,
            )

        messages, citations = await self._build_messages(agent_type, query, model, tier, system_prompt)

        chain = build_chain(
            model,
            self._gate.get_fallback_model_for_tier(tier, kind),
            self._gate.get_model_for_tier(tier, kind),
            max_attempts=self._settings.model_max_attempts,
        )
        result = await attempt(
            chain,
            lambda m: self._invoker(m, messages),
            timeout=self._settings.model_timeout_seconds,
        )
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        if not result.succeeded:
            self._spawn_feedback(
                FeedbackRecord(
                    session_id=session_id or request_id,
                    agent_type=agent_type,
                    model_used=result.attempted_models[-1] if result.attempts else model,
                    was_successful=False,
                    user_id=user_id,
                    iteration_count=len(result.attempts),
                    execution_time_ms=elapsed_ms,
                )
            )
            raise ModelInvocationError(result.attempts)

        model_used = result.model
        response = result.value
        cost = self._actual_cost(model_used, messages, response)

        await caches.responses.set(query, {"response": response, "model_used": model_used})
        self._runner.spawn(
            "semantic_cache.add_embedding",
            lambda: caches.semantic.add_embedding(query),
            timeout=self._settings.embedding_timeout_seconds + 1,
        )
        self._spawn_feedback(
            FeedbackRecord(
                session_id=session_id or request_id,
                agent_type=agent_type,
                model_used=model_used,
                was_successful=True,
                user_id=user_id,
                iteration_count=len(result.attempts),
                execution_time_ms=elapsed_ms,
                cost_units=cost,
            )
        )
        self._spawn_usage(user_id, agent_type, cost)
        if limits.prefetch_enabled:
            self._runner.spawn(
                "prefetch",
                lambda: caches.prefetcher.prefetch(session_id, query, tier, limits),
                timeout=self._settings.prediction_timeout_seconds,
            )

        log.info(
            "pipeline.route_completed",
            cache_hit=CacheHit.NONE.value,
            tier=tier.value,
            model=model_used,
            attempts=len(result.attempts),
            citations=len(citations),
            cost_units=round(cost, 6),
            duration_ms=elapsed_ms,
        )
        return RouteResult(
            response=response,
            model_used=model_used,
            cache_hit=CacheHit.NONE,
            tier=tier,
            citations=citations,
            cost_units=cost,
            attempted_models=result.attempted_models,
            recommendation=recommendation,
            budget=budget,
            request_id=request_id,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _check_budget(
        self,
        user_id: str | None,
        tier: UserTier,
        agent_type: str,
        estimated: float,
    ) -> BudgetCheck:
        check = await self._gate.check_budget_limit(user_id, estimated)
        if not check.allowed:
            return check
        return await self._gate.check_daily_budget(user_id, tier, agent_type, estimated)

    async def _lookup(self, caches: CacheSet, query: str) -> tuple[Any, CacheHit] | None:
        try:
            payload = await caches.responses.get(query)
            if payload is not None:
                return payload, CacheHit.EXACT
            match = await caches.semantic.lookup(query, self._settings.semantic_similarity_threshold)
        except Exception as exc:
            log.warning("pipeline.cache_lookup_failed", error_type=type(exc).__name__, error=str(exc))
            return None
        if match is None:
            return None
        return match.payload, CacheHit(match.layer.value)

    async def _build_messages(
        self,
        agent_type: str,
        query: str,
        model: str,
        tier: UserTier,
        system_prompt: str | None,
    ) -> tuple[list[dict[str, str]], list[Citation]]:
        messages: list[dict[str, str]] = []
        if system_prompt:
            prompt = self._prompts.get_or_cache(f"{agent_type}:system", system_prompt, tier)
            messages.append({"role": "system", "content": prompt})

        user_content = query
        citations: list[Citation] = []
        if self._retriever is not None and model_kind(model) is ModelKind.TEXT:
            try:
                async with asyncio.timeout(self._settings.retrieval_timeout_seconds):
                    context = await self._retriever.augment_context(query)
            except Exception as exc:
                log.warning("pipeline.retrieval_skipped", error_type=type(exc).__name__, error=str(exc))
                context = None
            if context is not None and context.chunks:
                plan = self._budgeter.calculate_optimal_budget(model)
                user_content = self._budgeter.enforce_token_budget(
                    context.augmented_query, plan.rag + plan.user_prompt
                )
                citations = self._retriever.generate_citations(context.chunks)

        messages.append({"role": "user", "content": user_content})
        return messages, citations

    def _actual_cost(self, model: str, messages: list[dict[str, str]], response: Any) -> float:
        prompt_tokens = sum(self._budgeter.estimate_tokens(m["content"]) for m in messages)
        completion_tokens = self._budgeter.estimate_tokens(response if isinstance(response, str) else None)
        return estimate_cost(model, prompt_tokens, completion_tokens)

    def _spawn_feedback(self, record: FeedbackRecord) -> None:
        self._runner.spawn(
            "feedback.submit",
            lambda: self._feedback.submit(record),
            timeout=self._settings.feedback_timeout_seconds,
        )

    def _spawn_usage(self, user_id: str | None, agent_type: str, cost: float) -> None:
        if self._budgets is None or not self._gate.is_valid_user_id(user_id):
            return
        budgets = self._budgets
        self._runner.spawn(
            "budget.record_usage",
            lambda: budgets.record_usage(user_id, usage_category(agent_type), cost),
            timeout=self._settings.feedback_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Defaults
    # ------------------------------------------------------------------

    async def _default_invoker(self, model: str, messages: list[dict[str, str]]) -> str:
        if self._llm is None:
            raise RuntimeError("No LLM client configured")
        return await self._llm.complete_text(messages=messages, model=model)

    def _default_cache_set(self, agent_type: str, tier: UserTier) -> CacheSet:
        limits = DEFAULT_TIER_LIMITS[tier]
        responses = ResponseCache(
            max_size=limits.response_cache_limit,
            ttl_seconds=self._settings.response_cache_ttl_seconds,
        )
        semantic = SemanticCache(
            responses,
            self._embeddings,
            max_size=limits.semantic_cache_limit,
            fuzzy_threshold=self._settings.response_similarity_threshold,
        )
        prefetcher = Prefetcher(responses, self._llm, self._settings)
        return CacheSet(responses=responses, semantic=semantic, prefetcher=prefetcher)


def create_pipeline(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    subscriptions: SubscriptionStore | None = None,
    llm_client: LLMClient | None = None,
) -> RoutingPipeline:
    """Wire a pipeline from settings.

    With a session factory, feedback, daily usage, subscriptions, tier
    configuration and the knowledge store are backed by PostgreSQL;
    without one everything is in memory and retrieval is disabled.
    """
    cfg = settings or get_settings()
    llm = llm_client or LLMClient(cfg)
    embeddings = EmbeddingService(llm, cfg)

    if session_factory is None:
        feedback: FeedbackStore = FeedbackStore()
        budgets: BudgetManager = BudgetManager()
        gate = TierGate(subscriptions, cfg, budget_manager=budgets)
        retriever = None
    else:
        feedback = PersistentFeedbackStore(session_factory)
        budgets = PersistentBudgetManager(session_factory)
        gate = TierGate(
            subscriptions or SqlSubscriptionStore(session_factory),
            cfg,
            config_source=TierConfigSource(session_factory, cfg),
            budget_manager=budgets,
        )
        retriever = HybridRetriever(PgKnowledgeStore(session_factory), embeddings, cfg)

    return RoutingPipeline(
        cfg,
        llm_client=llm,
        tier_gate=gate,
        feedback_store=feedback,
        embeddings=embeddings,
        retriever=retriever,
        budget_manager=budgets,
    )


__all__ = [
    "CacheHit",
    "CacheSet",
    "RouteResult",
    "RoutingPipeline",
    "create_pipeline",
]
