"""Domain exceptions raised to callers of the routing pipeline.

Cache, embedding, retrieval and prediction failures never surface here;
they are logged and degraded at their own layer. Only outcomes the caller
must act on are raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from adaptive_router.agent.model_router.budget import BudgetCheck
    from adaptive_router.agent.model_router.fallback import Attempt


class RouterError(Exception):
    """Base exception for routing pipeline failures."""


class ModelInvocationError(RouterError):
    """Every model in the fallback chain failed.

    ``attempts`` is the ordered, immutable attempt log so callers can see
    which models were tried and why each one failed.
    """

    def __init__(self, attempts: tuple[Attempt, ...]) -> None:
        self.attempts = attempts
        self.attempted_models = [a.model for a in attempts]
        last = attempts[-1].error if attempts else "no models attempted"
        super().__init__(
            f"All models failed ({', '.join(self.attempted_models) or 'none'}). "
            f"Last error: {last}"
        )


class BudgetExceededError(RouterError):
    """Estimated cost is over the user's budget and the hard policy is active."""

    def __init__(self, check: BudgetCheck) -> None:
        self.check = check
        super().__init__(check.message or "Budget exceeded")
