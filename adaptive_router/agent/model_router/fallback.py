"""Fallback chain for resilient model execution.

``attempt`` tries each model of an ordered chain until one succeeds or the
attempt ceiling is reached. It owns no mutable state: every iteration
extends an immutable tuple of Attempt entries, and the final log is
returned alongside the outcome so callers can record which models were
tried and why each failed.

Fallback strategy:
1. Try the recommended model (already tier-enforced)
2. On failure or timeout, try the next distinct model in the chain
3. Stop at the first success or after ``max_attempts`` models
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Attempt:
    """One model call within a fallback chain."""

    model: str
    succeeded: bool
    duration_ms: int
    error_type: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class AttemptResult(Generic[T]):
    """Outcome of a fallback chain run with its full attempt log."""

    attempts: tuple[Attempt, ...]
    value: T | None = None
    model: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.model is not None

    @property
    def attempted_models(self) -> list[str]:
        return [a.model for a in self.attempts]


def build_chain(*models: str | None, max_attempts: int = 3) -> tuple[str, ...]:
    """Ordered, de-duplicated chain of at most ``max_attempts`` models."""
    chain: list[str] = []
    for model in models:
        if model and model not in chain:
            chain.append(model)
    return tuple(chain[:max_attempts])


async def attempt(
    chain: Sequence[str],
    fn: Callable[[str], Awaitable[T]],
    *,
    timeout: float | None = None,
    max_attempts: int | None = None,
) -> AttemptResult[T]:
    """Call ``fn(model)`` for each model in ``chain`` until one succeeds.

    Each call is bounded by ``timeout`` seconds. Cancellation of the caller
    propagates immediately and is not recorded as a failed attempt.
    """
    ceiling = max_attempts if max_attempts is not None else len(chain)
    attempts: tuple[Attempt, ...] = ()

    for model in list(chain)[:ceiling]:
        started = time.perf_counter()
        try:
            if timeout is not None:
                async with asyncio.timeout(timeout):
                    value = await fn(model)
            else:
                value = await fn(model)
        except Exception as exc:
            elapsed = int((time.perf_counter() - started) * 1000)
            attempts = attempts + (
                Attempt(
                    model=model,
                    succeeded=False,
                    duration_ms=elapsed,
                    error_type=type(exc).__name__,
                    error=str(exc) or type(exc).__name__,
                ),
            )
            log.warning(
                "fallback_chain.model_failed",
                model=model,
                error_type=type(exc).__name__,
                error=str(exc),
                remaining=ceiling - len(attempts),
            )
            continue

        elapsed = int((time.perf_counter() - started) * 1000)
        attempts = attempts + (Attempt(model=model, succeeded=True, duration_ms=elapsed),)
        log.info(
            "fallback_chain.model_succeeded",
            model=model,
            fallback_occurred=len(attempts) > 1,
            duration_ms=elapsed,
        )
        return AttemptResult(attempts=attempts, value=value, model=model)

    log.error(
        "fallback_chain.all_models_failed",
        attempted_models=[a.model for a in attempts],
    )
    return AttemptResult(attempts=attempts)
