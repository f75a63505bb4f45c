"""
Fire-and-forget runner for speculative and bookkeeping work.

Prefetch, embedding population, feedback writes and usage recording run
off the response path. Each job is an independent asyncio task, so
cancelling the request that spawned it does not cancel the job.

Key features:
- Bounded concurrency (max_concurrency) and a per-job timeout that also
  covers the wait for a free slot
- Bounded backlog (max_pending): spawns past it are rejected, not queued
- No retries: a failed job is logged and recorded, never re-queued
- Strong references to in-flight tasks so they are not garbage collected
- drain() for tests and graceful shutdown
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)


class TaskStatus(StrEnum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"


@dataclass
class BackgroundJob:
    """One detached unit of work with lifecycle tracking."""
    name: str
    timeout: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class BackgroundTaskRunner:
    """
    Runs coroutine factories as detached tasks with a timeout each.

    Example usage:
        runner = BackgroundTaskRunner(max_concurrency=8)
        runner.spawn("feedback.submit", lambda: store.submit(record), timeout=10)
        await runner.drain()
    """

    def __init__(
        self,
        *,
        max_concurrency: int = 8,
        max_pending: int = 256,
        default_timeout: float = 10.0,
        history_size: int = 100,
    ) -> None:
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._max_pending = max_pending
        self._default_timeout = default_timeout
        self._inflight: set[asyncio.Task[None]] = set()
        self._failed: deque[BackgroundJob] = deque(maxlen=history_size)
        self._completed_count = 0

        log.info(
            "background_runner.initialized",
            max_concurrency=max_concurrency,
            max_pending=max_pending,
            default_timeout=default_timeout,
        )

    def spawn(
        self,
        name: str,
        factory: Callable[[], Awaitable[Any]],
        *,
        timeout: float | None = None,
    ) -> BackgroundJob:
        """Schedule ``factory()`` to run detached from the caller.

        Must be called from a running event loop. When ``max_pending`` jobs
        are already in flight the job is rejected and ``factory`` is never
        called.
        """
        job = BackgroundJob(name=name, timeout=timeout or self._default_timeout)
        if len(self._inflight) >= self._max_pending:
            job.status = TaskStatus.REJECTED
            job.error = f"backlog full ({self._max_pending} jobs in flight)"
            job.completed_at = datetime.now(UTC)
            self._failed.append(job)
            log.warning("background_runner.job_rejected", job_id=job.id, job=name, inflight=len(self._inflight))
            return job

        task = asyncio.create_task(self._run(job, factory), name=f"{name}:{job.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

        log.debug("background_runner.job_spawned", job_id=job.id, job=name)
        return job

    async def drain(self) -> None:
        """Wait until every in-flight job (including ones they spawn) finishes."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def failed_jobs(self) -> list[BackgroundJob]:
        """Return the most recent failed or timed out jobs."""
        return list(self._failed)

    def stats(self) -> dict[str, int]:
        return {
            "inflight": len(self._inflight),
            "completed": self._completed_count,
            "failed": len(self._failed),
        }

    async def _run(self, job: BackgroundJob, factory: Callable[[], Awaitable[Any]]) -> None:
        try:
            async with asyncio.timeout(job.timeout), self._semaphore:
                job.status = TaskStatus.RUNNING
                job.started_at = datetime.now(UTC)
                await factory()
        except TimeoutError:
            job.status = TaskStatus.TIMED_OUT
            job.error = f"timed out after {job.timeout}s"
            self._failed.append(job)
            log.warning("background_runner.job_timed_out", job_id=job.id, job=job.name, timeout=job.timeout)
        except Exception as exc:
            job.status = TaskStatus.FAILED
            job.error = str(exc)
            self._failed.append(job)
            log.warning(
                "background_runner.job_failed",
                job_id=job.id,
                job=job.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        else:
            job.status = TaskStatus.COMPLETED
            self._completed_count += 1
            log.debug("background_runner.job_completed", job_id=job.id, job=job.name)
        finally:
            job.completed_at = datetime.now(UTC)
