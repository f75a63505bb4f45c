"""Prompt cache - stores system prompts with a compressed variant.

Free-tier callers receive the compressed prompt; paid tiers receive the
full text. Compression is a fixed list of meaning-preserving phrase
contractions plus whitespace collapsing, applied until the text stops
changing, so compressing an already compressed prompt is a no-op.
"""

from __future__ import annotations

import hashlib
import math
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from adaptive_router.agent.model_router.catalog import UserTier

log = structlog.get_logger(__name__)

_REWRITES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\n{3,}"), "\n\n"),
    (re.compile(r"  +"), " "),
    (re.compile(r"You are an expert", re.IGNORECASE), "Expert"),
    (re.compile(r"You must always", re.IGNORECASE), "Always"),
    (re.compile(r"Please ensure that", re.IGNORECASE), "Ensure"),
    (re.compile(r"It is important to", re.IGNORECASE), "Important:"),
    (re.compile(r"In addition to", re.IGNORECASE), "Also"),
    (re.compile(r"For example", re.IGNORECASE), "Ex:"),
    (re.compile(r"such as", re.IGNORECASE), "like"),
    (re.compile(r"in order to", re.IGNORECASE), "to"),
    (re.compile(r"make sure to", re.IGNORECASE), "ensure"),
    (re.compile(r"\bthe user\b", re.IGNORECASE), "user"),
    (re.compile(r"\bthe code\b", re.IGNORECASE), "code"),
)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def compress_prompt(text: str) -> str:
    """Contract common phrases and collapse whitespace. Idempotent."""
    current = text.strip()
    while True:
        compressed = current
        for pattern, replacement in _REWRITES:
            compressed = pattern.sub(replacement, compressed)
        compressed = compressed.strip()
        # Every rewrite shortens the text, so this terminates
        if compressed == current:
            return compressed
        current = compressed


def prompt_hash(text: str) -> str:
    return "prompt_" + hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


@dataclass
class CachedPrompt:
    prompt_id: str
    hash: str
    full_text: str
    compressed_text: str
    token_count: int
    compressed_token_count: int
    last_used: float


class PromptCache:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._prompts: dict[str, CachedPrompt] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._prompts)

    def cache_prompt(self, prompt_id: str, full_text: str) -> CachedPrompt:
        compressed = compress_prompt(full_text)
        cached = CachedPrompt(
            prompt_id=prompt_id,
            hash=prompt_hash(full_text),
            full_text=full_text,
            compressed_text=compressed,
            token_count=estimate_tokens(full_text),
            compressed_token_count=estimate_tokens(compressed),
            last_used=self._clock(),
        )
        self._prompts[prompt_id] = cached
        log.debug(
            "prompt_cache.cached",
            prompt_id=prompt_id,
            tokens=cached.token_count,
            compressed_tokens=cached.compressed_token_count,
        )
        return cached

    def get_prompt(self, prompt_id: str, tier: UserTier | str = UserTier.FREE) -> str | None:
        cached = self._prompts.get(prompt_id)
        if cached is None:
            return None
        cached.last_used = self._clock()
        if UserTier(tier) is UserTier.FREE:
            return cached.compressed_text
        return cached.full_text

    def get_or_cache(self, prompt_id: str, full_text: str, tier: UserTier | str = UserTier.FREE) -> str:
        """Return the tier-appropriate prompt, caching ``full_text`` on first use.

        A prompt whose text changed under the same id is re-cached.
        """
        cached = self._prompts.get(prompt_id)
        if cached is None or cached.hash != prompt_hash(full_text):
            self.cache_prompt(prompt_id, full_text)
        prompt = self.get_prompt(prompt_id, tier)
        return prompt if prompt is not None else full_text

    def stats(self) -> dict[str, int | str]:
        total = sum(p.token_count for p in self._prompts.values())
        compressed = sum(p.compressed_token_count for p in self._prompts.values())
        savings = f"{(total - compressed) / total * 100:.1f}%" if total else "0%"
        return {
            "count": len(self._prompts),
            "total_tokens": total,
            "compressed_tokens": compressed,
            "savings": savings,
        }

    def clear(self) -> None:
        self._prompts.clear()
