"""Token budgeting for prompts and retrieved context.

Token counts are estimated at four characters per token. Over-budget text
keeps its first 70% and last 30% of the allowed characters, joined by an
elision marker, so leading instructions and trailing context both survive.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum

from adaptive_router.agent.model_router.catalog import model_limit as catalog_model_limit

CHARS_PER_TOKEN = 4
TRUNCATION_MARKER = "\n\n... [context truncated for efficiency] ...\n\n"

HEAD_SHARE = 0.7
TAIL_SHARE = 0.3

EXAMPLES_SHARE = 0.5
PRACTICES_SHARE = 0.3
DOCS_SHARE = 0.2


class Complexity(StrEnum):
    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"


# (response share, rag share) of the model window
_COMPLEXITY_SHARES: dict[Complexity, tuple[float, float]] = {
    Complexity.LIGHT: (0.3, 0.2),
    Complexity.MEDIUM: (0.4, 0.25),
    Complexity.HEAVY: (0.5, 0.2),
}
SYSTEM_PROMPT_SHARE = 0.1


@dataclass(frozen=True)
class TokenBudget:
    total: int
    system_prompt: int
    user_prompt: int
    rag: int
    response: int


@dataclass(frozen=True)
class RagBudgetResult:
    examples: list[str]
    best_practices: list[str]
    documentation: str
    truncated: bool
    original_tokens: int
    final_tokens: int


class TokenBudgeter:
    """Stateless helpers; an instance exists so callers can inject one."""

    @staticmethod
    def estimate_tokens(text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN)

    @staticmethod
    def model_limit(model: str) -> int:
        return catalog_model_limit(model)

    def enforce_token_budget(self, text: str | None, max_tokens: int = 4000) -> str:
        """Return ``text`` unchanged if it fits, else head + marker + tail."""
        if not text:
            return ""
        if self.estimate_tokens(text) <= max_tokens:
            return text

        char_limit = max(max_tokens, 0) * CHARS_PER_TOKEN
        head = math.floor(char_limit * HEAD_SHARE)
        tail = math.floor(char_limit * TAIL_SHARE)
        # text[-0:] would be the whole string
        end = text[-tail:] if tail > 0 else ""
        return text[:head] + TRUNCATION_MARKER + end

    def enforce_rag_budget(
        self,
        examples: list[str] | None = None,
        best_practices: list[str] | None = None,
        documentation: str | None = None,
        max_tokens: int = 4000,
    ) -> RagBudgetResult:
        """Fit sectioned context into ``max_tokens`` with a 50/30/20 split.

        List sections keep whole items while they fit; if not even the first
        item fits, it is truncated on its own.
        """
        examples = list(examples or [])
        best_practices = list(best_practices or [])
        documentation = documentation or ""

        original = self.estimate_tokens(
            "\n\n".join(examples) + "\n".join(best_practices) + documentation
        )
        if original <= max_tokens:
            return RagBudgetResult(
                examples=examples,
                best_practices=best_practices,
                documentation=documentation,
                truncated=False,
                original_tokens=original,
                final_tokens=original,
            )

        kept_examples = self._truncate_items(examples, math.floor(max_tokens * EXAMPLES_SHARE))
        kept_practices = self._truncate_items(best_practices, math.floor(max_tokens * PRACTICES_SHARE))
        kept_docs = self.enforce_token_budget(documentation, math.floor(max_tokens * DOCS_SHARE))

        final = self.estimate_tokens(
            "\n\n".join(kept_examples) + "\n".join(kept_practices) + kept_docs
        )
        return RagBudgetResult(
            examples=kept_examples,
            best_practices=kept_practices,
            documentation=kept_docs,
            truncated=True,
            original_tokens=original,
            final_tokens=final,
        )

    def calculate_optimal_budget(
        self,
        model: str,
        complexity: Complexity | str = Complexity.MEDIUM,
    ) -> TokenBudget:
        total = self.model_limit(model)
        response_share, rag_share = _COMPLEXITY_SHARES[Complexity(complexity)]
        response = math.floor(total * response_share)
        rag = math.floor(total * rag_share)
        system_prompt = math.floor(total * SYSTEM_PROMPT_SHARE)
        return TokenBudget(
            total=total,
            system_prompt=system_prompt,
            user_prompt=total - response - rag - system_prompt,
            rag=rag,
            response=response,
        )

    def _truncate_items(self, items: list[str], max_tokens: int) -> list[str]:
        kept: list[str] = []
        used = 0
        for item in items:
            tokens = self.estimate_tokens(item)
            if used + tokens <= max_tokens:
                kept.append(item)
                used += tokens
            elif not kept:
                kept.append(self.enforce_token_budget(item, max_tokens))
                break
            else:
                break
        return kept
