"""Adaptive model selection from historical feedback.

The selector ranks the models that have served an agent type before and
picks the best one for the caller's priority:

- speed:    1000 / avg latency (0 when latency is unknown)
- quality:  avg rating x success rate
- cost:     avg rating / avg cost (avg rating when cost is 0)
- balanced: 0.5 x quality + 0.3 x (1 / cost) + 0.2 x (1000 / latency),
            where a zero cost or latency term counts as 1

With no history, or when the feedback store fails or does not answer
within ``selection_timeout_seconds``, a static per-agent default is
returned with confidence 0.5. Selection never raises.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

import structlog

from adaptive_router.config import Settings, get_settings
from adaptive_router.services.feedback import FeedbackStore, ModelStats

log = structlog.get_logger(__name__)

MAX_CANDIDATES = 5
DEFAULT_CONFIDENCE = 0.5


class Priority(StrEnum):
    SPEED = "speed"
    QUALITY = "quality"
    COST = "cost"
    BALANCED = "balanced"


class Grade(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    POOR = "poor"


@dataclass(frozen=True)
class ModelRecommendation:
    model: str
    confidence: float
    reasoning: str
    estimated_cost: float
    expected_quality: float


@dataclass(frozen=True)
class ModelComparison:
    model: str
    stats: ModelStats
    score: float
    grade: Grade


@dataclass(frozen=True)
class _AgentDefault:
    model: str
    cost: float
    quality: float


AGENT_DEFAULTS: dict[str, _AgentDefault] = {
    "solve": _AgentDefault("gemini-fast", 0.1, 4.0),
    "question": _AgentDefault("openai", 0.15, 4.0),
    "research": _AgentDefault("gemini-fast", 0.1, 4.0),
    "guide": _AgentDefault("gemini-fast", 0.1, 4.0),
    "ideagen": _AgentDefault("gemini-fast", 0.1, 4.2),
    "cowriter": _AgentDefault("gemini-fast", 0.1, 4.0),
    "codegen": _AgentDefault("gemini-fast", 0.0, 4.5),
    "imagegen": _AgentDefault("flux", 0.0002, 3.8),
    "audit": _AgentDefault("gemini-fast", 0.1, 4.0),
}
GENERIC_DEFAULT = _AgentDefault("gemini-fast", 0.1, 4.0)


def calculate_confidence(sample_count: int) -> float:
    """Confidence from sample size: 0 with no data, 0.3..0.95 up to 100 samples, then 0.95."""
    if sample_count <= 0:
        return 0.0
    return 0.3 + min(sample_count, 100) / 100 * 0.65


def score_model(stats: ModelStats, priority: Priority) -> tuple[float, str]:
    """Return (score, reasoning) for one model under ``priority``."""
    if priority is Priority.SPEED:
        score = 1000 / stats.avg_execution_time_ms if stats.avg_execution_time_ms > 0 else 0.0
        return score, f"Selected for speed (avg: {stats.avg_execution_time_ms}ms)"

    if priority is Priority.QUALITY:
        score = stats.avg_rating * stats.success_rate
        return score, (
            f"Selected for quality (rating: {stats.avg_rating}/5, "
            f"success: {stats.success_rate * 100:.1f}%)"
        )

    if priority is Priority.COST:
        score = stats.avg_rating / stats.avg_cost if stats.avg_cost > 0 else stats.avg_rating
        return score, (
            f"Selected for cost efficiency ({stats.avg_cost:.4f} units, "
            f"rating: {stats.avg_rating}/5)"
        )

    quality = stats.avg_rating * stats.success_rate
    cost = 1 / stats.avg_cost if stats.avg_cost > 0 else 1.0
    speed = 1000 / stats.avg_execution_time_ms if stats.avg_execution_time_ms > 0 else 1.0
    score = quality * 0.5 + cost * 0.3 + speed * 0.2
    return score, (
        f"Balanced selection (quality: {stats.avg_rating}/5, cost: {stats.avg_cost:.4f}, "
        f"speed: {stats.avg_execution_time_ms}ms)"
    )


def grade_model(stats: ModelStats) -> tuple[float, Grade]:
    """Composite of rating and success rate on a 0-5 scale, with its grade."""
    composite = stats.avg_rating * 0.6 + stats.success_rate * 0.4 * 5
    if composite >= 4.5:
        return composite, Grade.EXCELLENT
    if composite >= 3.5:
        return composite, Grade.GOOD
    if composite >= 2.5:
        return composite, Grade.AVERAGE
    return composite, Grade.POOR


class ModelSelector:
    """Chooses a model per agent type and priority from feedback aggregates."""

    def __init__(self, feedback_store: FeedbackStore, settings: Settings | None = None) -> None:
        self._feedback = feedback_store
        self._timeout = (settings or get_settings()).selection_timeout_seconds

    def default_recommendation(self, agent_type: str) -> ModelRecommendation:
        default = AGENT_DEFAULTS.get(agent_type, GENERIC_DEFAULT)
        return ModelRecommendation(
            model=default.model,
            confidence=DEFAULT_CONFIDENCE,
            reasoning=f"Default model for {agent_type} (no historical data available)",
            estimated_cost=default.cost,
            expected_quality=default.quality,
        )

    async def select_model(
        self,
        agent_type: str,
        priority: Priority | str = Priority.BALANCED,
        user_id: str | None = None,
    ) -> ModelRecommendation:
        try:
            effective_priority = Priority(priority)
        except ValueError:
            log.warning("model_selector.unknown_priority", priority=str(priority))
            effective_priority = Priority.BALANCED

        try:
            async with asyncio.timeout(self._timeout):
                candidates = await self._feedback.top_models(agent_type, MAX_CANDIDATES)
        except Exception as exc:
            log.warning(
                "model_selector.feedback_unavailable",
                agent_type=agent_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self.default_recommendation(agent_type)

        candidates = [c for c in candidates if c.total_feedback > 0]
        if not candidates:
            log.debug("model_selector.no_history", agent_type=agent_type)
            return self.default_recommendation(agent_type)

        scored = [(stats, *score_model(stats, effective_priority)) for stats in candidates]
        # max() returns the first of equal scores, so ties keep candidate order
        best_stats, best_score, best_reasoning = max(scored, key=lambda item: item[1])

        recommendation = ModelRecommendation(
            model=best_stats.model,
            confidence=calculate_confidence(best_stats.total_feedback),
            reasoning=f"{best_reasoning}. Based on {best_stats.total_feedback} feedback entries.",
            estimated_cost=best_stats.avg_cost,
            expected_quality=best_stats.avg_rating,
        )

        log.info(
            "model_selector.selected",
            agent_type=agent_type,
            priority=effective_priority.value,
            model=recommendation.model,
            score=round(best_score, 4),
            confidence=round(recommendation.confidence, 3),
            candidates=len(candidates),
        )
        return recommendation

    async def compare_models(self, agent_type: str, models: list[str]) -> list[ModelComparison]:
        """Grade each model on its own feedback, best first."""
        comparisons = []
        for model in models:
            stats = await self._feedback.model_stats(agent_type, model)
            score, grade = grade_model(stats)
            comparisons.append(ModelComparison(model=model, stats=stats, score=score, grade=grade))
        comparisons.sort(key=lambda c: c.score, reverse=True)
        return comparisons

    async def personalized_recommendation(self, user_id: str, agent_type: str) -> ModelRecommendation:
        """Balanced selection for one user; user history does not yet reweight candidates."""
        return await self.select_model(agent_type, Priority.BALANCED, user_id)
