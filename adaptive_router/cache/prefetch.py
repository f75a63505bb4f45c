"""Prefetcher - predicts follow-up queries and reserves cache slots for them.

Prediction is hybrid:
1. Keyword table (fast, English and Indonesian substrings)
2. LLM prediction on a small fast model when no keyword matches

For each prediction that is not already resident in the ResponseCache, a
``pending`` placeholder is inserted while the tier's pre-generation quota
lasts (free 0, pro 1, enterprise 3). Generation itself is deferred; the
placeholder never answers a request.

Prefetching runs detached from the request path. Failures are logged and
never retried.
"""

from __future__ import annotations

import json
import re
from typing import Any

import structlog

from adaptive_router.agent.llm import LLMClient
from adaptive_router.agent.model_router.catalog import DEFAULT_TIER_LIMITS, TierLimits, UserTier
from adaptive_router.cache.response_cache import ResponseCache
from adaptive_router.config import Settings, get_settings

log = structlog.get_logger(__name__)

MAX_PREDICTIONS = 3

PREGEN_QUOTA: dict[UserTier, int] = {
    UserTier.FREE: 0,
    UserTier.PRO: 1,
    UserTier.ENTERPRISE: 3,
}

FOLLOW_UP_PATTERNS: dict[str, tuple[str, ...]] = {
    "login": ("register form", "forgot password", "dashboard after login"),
    "form": ("form validation", "form submission", "input handling"),
    "button": ("button loading state", "button disabled state", "button animation"),
    "modal": ("modal close", "modal animation", "modal backdrop"),
    "table": ("table pagination", "table sorting", "table filtering"),
    "navbar": ("mobile menu", "dropdown menu", "navbar sticky"),
    "card": ("card hover effect", "card grid layout", "card skeleton"),
    "api": ("api error handling", "api loading state", "api caching"),
    "auth": ("protected route", "auth context", "logout button"),
    "dark": ("dark mode toggle", "theme provider", "color scheme"),
    # Indonesian
    "tombol": ("tombol loading", "tombol disabled", "animasi tombol"),
    "tabel": ("pagination tabel", "sorting tabel", "filter tabel"),
    "formulir": ("validasi formulir", "submit formulir", "input handling"),
}

_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")

_PREDICTION_PROMPT = """Given this request: "{query}"

What are 3 likely follow-up requests the user might make next?
Answer in the SAME LANGUAGE as the input query.
Return ONLY a JSON array, no explanation: ["prediction1", "prediction2", "prediction3"]"""


def keyword_predictions(query: str) -> list[str]:
    """Canned follow-ups for every pattern found in the query, deduplicated, max 3."""
    normalized = query.lower()
    predictions: list[str] = []
    for pattern, follow_ups in FOLLOW_UP_PATTERNS.items():
        if pattern not in normalized:
            continue
        for follow_up in follow_ups:
            if follow_up not in predictions:
                predictions.append(follow_up)
    return predictions[:MAX_PREDICTIONS]


def parse_predictions(text: str) -> list[str]:
    """First JSON array of strings in ``text``; [] when there is none."""
    match = _JSON_ARRAY.search(text)
    if match is None:
        return []
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return []
    if not isinstance(parsed, list):
        return []
    return [item.strip() for item in parsed if isinstance(item, str) and item.strip()][:MAX_PREDICTIONS]


class Prefetcher:
    def __init__(
        self,
        response_cache: ResponseCache,
        llm_client: LLMClient | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._responses = response_cache
        self._llm = llm_client
        self._reserved = 0
        self._runs = 0

    async def llm_predictions(self, query: str) -> list[str]:
        """Ask the prefetch model for follow-ups. Never raises."""
        if self._llm is None:
            return []
        try:
            text = await self._llm.complete_text(
                messages=[{"role": "user", "content": _PREDICTION_PROMPT.format(query=query)}],
                model=self._settings.prefetch_model,
                temperature=0.3,
                max_tokens=150,
            )
        except Exception as exc:
            log.warning("prefetch.llm_prediction_failed", error_type=type(exc).__name__, error=str(exc))
            return []
        predictions = parse_predictions(text)
        log.debug("prefetch.llm_predictions", count=len(predictions))
        return predictions

    async def predict(self, query: str) -> list[str]:
        predictions = keyword_predictions(query)
        if predictions:
            return predictions
        return await self.llm_predictions(query)

    async def prefetch(
        self,
        session_id: str | None,
        query: str,
        tier: UserTier,
        limits: TierLimits | None = None,
    ) -> int:
        """Reserve pending cache slots for predicted follow-ups.

        Returns:
            Number of placeholders inserted
        """
        self._runs += 1
        effective = limits or DEFAULT_TIER_LIMITS[tier]
        quota = PREGEN_QUOTA[tier] if effective.prefetch_enabled else 0

        predictions = await self.predict(query)
        if not predictions:
            log.debug("prefetch.no_predictions", session_id=session_id)
            return 0

        inserted = 0
        for prediction in predictions:
            if await self._responses.is_resident(prediction, self._settings.prefetch_similarity_threshold):
                continue
            if inserted >= quota:
                log.debug("prefetch.quota_exhausted", tier=tier.value, quota=quota)
                break
            placeholder = {"prefetched": True, "query": prediction, "status": "pending"}
            if await self._responses.set_pending(prediction, placeholder):
                inserted += 1

        self._reserved += inserted
        log.info(
            "prefetch.completed",
            session_id=session_id,
            tier=tier.value,
            predictions=len(predictions),
            reserved=inserted,
        )
        return inserted

    def stats(self) -> dict[str, Any]:
        return {
            "total_patterns": sum(len(v) for v in FOLLOW_UP_PATTERNS.values()),
            "categories": list(FOLLOW_UP_PATTERNS),
            "llm_enabled": self._llm is not None,
            "runs": self._runs,
            "reserved": self._reserved,
        }
