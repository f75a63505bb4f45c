"""Static model catalog: tiers, allow-lists, context windows and prices.

These tables are the hardcoded fallback for every configurable source.
Cost units are USD-equivalent: token prices are per million tokens,
image prices are per generated image.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType


class UserTier(StrEnum):
    """Subscription levels, ordered free < pro < enterprise."""

    FREE = "free"
    PRO = "pro"
    ENTERPRISE = "enterprise"

    @property
    def level(self) -> int:
        return _TIER_LEVELS[self]


_TIER_LEVELS = {UserTier.FREE: 0, UserTier.PRO: 1, UserTier.ENTERPRISE: 2}


class ModelKind(StrEnum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class TierLimits:
    """Quotas for one tier. ``max_sessions == -1`` means unlimited."""

    daily_budget_units: float
    max_session_messages: int
    max_sessions: int
    semantic_cache_limit: int
    response_cache_limit: int
    prefetch_enabled: bool
    context_window: int = 16_000
    rate_limit_per_minute: int = 10

    def __post_init__(self) -> None:
        if self.semantic_cache_limit < 1 or self.response_cache_limit < 1:
            raise ValueError("cache limits must be at least 1")
        if self.daily_budget_units < 0:
            raise ValueError("daily_budget_units cannot be negative")


@dataclass(frozen=True)
class TierModels:
    primary: str
    fallback: str


@dataclass(frozen=True)
class ModelPrice:
    input_per_million: float = 0.0
    output_per_million: float = 0.0
    per_request: float = 0.0


# ---------------------------------------------------------------------------
# Tier tables
# ---------------------------------------------------------------------------

DEFAULT_TIER_LIMITS: MappingProxyType[UserTier, TierLimits] = MappingProxyType(
    {
        UserTier.FREE: TierLimits(
            daily_budget_units=1,
            max_session_messages=20,
            max_sessions=10,
            semantic_cache_limit=50,
            response_cache_limit=50,
            prefetch_enabled=False,
            context_window=16_000,
            rate_limit_per_minute=10,
        ),
        UserTier.PRO: TierLimits(
            daily_budget_units=5,
            max_session_messages=50,
            max_sessions=50,
            semantic_cache_limit=200,
            response_cache_limit=150,
            prefetch_enabled=True,
            context_window=64_000,
            rate_limit_per_minute=30,
        ),
        UserTier.ENTERPRISE: TierLimits(
            daily_budget_units=10,
            max_session_messages=100,
            max_sessions=-1,
            semantic_cache_limit=500,
            response_cache_limit=300,
            prefetch_enabled=True,
            context_window=200_000,
            rate_limit_per_minute=60,
        ),
    }
)

TEXT_TIER_MODELS: MappingProxyType[UserTier, TierModels] = MappingProxyType(
    {
        UserTier.FREE: TierModels(primary="openai-fast", fallback="qwen-coder"),
        UserTier.PRO: TierModels(primary="gemini-fast", fallback="mistral"),
        UserTier.ENTERPRISE: TierModels(primary="deepseek", fallback="claude-fast"),
    }
)

IMAGE_TIER_MODELS: MappingProxyType[UserTier, TierModels] = MappingProxyType(
    {
        UserTier.FREE: TierModels(primary="flux", fallback="zimage"),
        UserTier.PRO: TierModels(primary="seedream", fallback="turbo"),
        UserTier.ENTERPRISE: TierModels(primary="seedream-pro", fallback="kontext"),
    }
)

_FREE_MODELS = ("qwen-coder", "openai-fast", "gemini-fast", "mistral", "flux", "zimage", "turbo")
_PRO_MODELS = _FREE_MODELS + ("deepseek", "seedream", "kontext", "seedream-pro", "grok")
_ENTERPRISE_MODELS = _PRO_MODELS + (
    "claude",
    "claude-fast",
    "claude-large",
    "openai",
    "openai-large",
    "gemini-large",
    "gptimage",
    "gptimage-large",
)

# Each tier's list is a strict superset of the one below it
TIER_ALLOWED_MODELS: MappingProxyType[UserTier, frozenset[str]] = MappingProxyType(
    {
        UserTier.FREE: frozenset(_FREE_MODELS),
        UserTier.PRO: frozenset(_PRO_MODELS),
        UserTier.ENTERPRISE: frozenset(_ENTERPRISE_MODELS),
    }
)

IMAGE_MODELS = frozenset(
    {"flux", "zimage", "turbo", "seedream", "seedream-pro", "kontext", "gptimage", "gptimage-large"}
)

# ---------------------------------------------------------------------------
# Context windows (tokens)
# ---------------------------------------------------------------------------

DEFAULT_MODEL_LIMIT = 8000

MODEL_LIMITS: MappingProxyType[str, int] = MappingProxyType(
    {
        # Free tier
        "qwen-coder": 8000,
        "openai-fast": 16000,
        "gemini-fast": 32000,
        "mistral": 8000,
        "grok": 128000,
        "groq-mixtral": 32000,
        # Pro tier
        "openai": 32000,
        "gemini": 100000,
        "claude-fast": 100000,
        "deepseek": 64000,
        "perplexity-fast": 16000,
        "perplexity-reasoning": 32000,
        "kimi-k2-thinking": 32000,
        "glm": 32000,
        "gemini-search": 100000,
        # Enterprise tier
        "claude": 200000,
        "claude-large": 200000,
        "gemini-large": 100000,
        "openai-large": 128000,
        "minimax": 64000,
    }
)

# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

DEFAULT_TEXT_PRICE = ModelPrice(input_per_million=0.1, output_per_million=0.5)
DEFAULT_IMAGE_PRICE = ModelPrice(per_request=0.04)

MODEL_PRICES: MappingProxyType[str, ModelPrice] = MappingProxyType(
    {
        "gemini-fast": ModelPrice(0.10, 0.40),
        "openai-fast": ModelPrice(0.06, 0.44),
        "qwen-coder": ModelPrice(0.06, 0.22),
        "mistral": ModelPrice(0.15, 0.35),
        "grok": ModelPrice(0.20, 0.50),
        "deepseek": ModelPrice(0.58, 1.68),
        "claude-fast": ModelPrice(1.0, 5.0),
        "claude": ModelPrice(3.0, 15.0),
        "openai-large": ModelPrice(1.75, 14.0),
        "llama-3.1-8b-instant": ModelPrice(0.0, 0.0),
        "flux": ModelPrice(per_request=0.0002),
        "zimage": ModelPrice(per_request=0.0002),
        "turbo": ModelPrice(per_request=0.0003),
    }
)


def model_limit(model: str) -> int:
    """Context window for ``model``; unknown models get the conservative default."""
    return MODEL_LIMITS.get(model, DEFAULT_MODEL_LIMIT)


def model_kind(model: str) -> ModelKind:
    return ModelKind.IMAGE if model in IMAGE_MODELS else ModelKind.TEXT


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int = 0, *, images: int = 1) -> float:
    """Estimated cost units for one call to ``model``."""
    if model_kind(model) is ModelKind.IMAGE:
        price = MODEL_PRICES.get(model, DEFAULT_IMAGE_PRICE)
        return price.per_request * images

    price = MODEL_PRICES.get(model, DEFAULT_TEXT_PRICE)
    cost = (
        prompt_tokens / 1_000_000 * price.input_per_million
        + completion_tokens / 1_000_000 * price.output_per_million
    )
    return cost or price.per_request
