"""Feedback store for agent execution outcomes.

Every completed or failed agent execution appends one FeedbackRecord.
Records are never mutated; model selection only ever reads aggregates
(average rating, success rate, average cost and latency) over them.

FeedbackStore keeps records in memory. PersistentFeedbackStore writes them
to the ``agent_feedback`` table and computes aggregates in SQL.

Statistics follow one convention everywhere: missing ratings, costs and
latencies count as 0 in the averages, success rate is a fraction in
[0, 1], and values are rounded (rating 2dp, success rate 4dp, cost 4dp,
latency to whole milliseconds).
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_router.models.feedback import AgentFeedback
from adaptive_router.telemetry.logging import short_user_id

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FeedbackRecord:
    """Outcome of one agent execution."""

    session_id: str
    agent_type: str
    model_used: str
    was_successful: bool
    user_id: str | None = None
    user_rating: int | None = None
    iteration_count: int | None = None
    execution_time_ms: int | None = None
    cost_units: float | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if self.user_rating is not None and not 1 <= self.user_rating <= 5:
            raise ValueError(f"user_rating must be between 1 and 5, got {self.user_rating}")
        if not self.agent_type or not self.model_used:
            raise ValueError("agent_type and model_used are required")


@dataclass(frozen=True)
class ModelStats:
    """Aggregated feedback for one agent type (and optionally one model)."""

    agent_type: str
    model: str
    avg_rating: float = 0.0
    success_rate: float = 0.0
    total_feedback: int = 0
    avg_cost: float = 0.0
    avg_execution_time_ms: int = 0

    @property
    def composite_score(self) -> float:
        """Ranking key for top models: success rate weighted rating."""
        return self.success_rate * self.avg_rating


@dataclass(frozen=True)
class UserTrends:
    total_sessions: int = 0
    avg_rating: float = 0.0
    favorite_agent: str | None = None
    most_used_model: str | None = None


def _most_common(values: Iterable[str]) -> str | None:
    counts = Counter(values)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def _build_stats(
    agent_type: str,
    model: str,
    total: int,
    rating_sum: float,
    success_count: int,
    cost_sum: float,
    time_sum: float,
) -> ModelStats:
    if total == 0:
        return ModelStats(agent_type=agent_type, model=model)
    return ModelStats(
        agent_type=agent_type,
        model=model,
        avg_rating=round(rating_sum / total, 2),
        success_rate=round(success_count / total, 4),
        total_feedback=total,
        avg_cost=round(cost_sum / total, 4),
        avg_execution_time_ms=round(time_sum / total),
    )


def _stats_from_records(agent_type: str, model: str, records: list[FeedbackRecord]) -> ModelStats:
    return _build_stats(
        agent_type,
        model,
        total=len(records),
        rating_sum=sum(r.user_rating or 0 for r in records),
        success_count=sum(1 for r in records if r.was_successful),
        cost_sum=sum(r.cost_units or 0.0 for r in records),
        time_sum=sum(r.execution_time_ms or 0 for r in records),
    )


class FeedbackStore:
    """In-memory append-only feedback log."""

    def __init__(self) -> None:
        self._records: list[FeedbackRecord] = []
        self._lock = asyncio.Lock()

    async def submit(self, record: FeedbackRecord) -> None:
        async with self._lock:
            self._records.append(record)
        self._log_submitted(record)

    async def model_stats(
        self,
        agent_type: str,
        model: str | None = None,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ModelStats:
        """Aggregate feedback for ``agent_type``, optionally one model and a time window."""
        async with self._lock:
            records = [
                r
                for r in self._records
                if r.agent_type == agent_type
                and (model is None or r.model_used == model)
                and (since is None or r.created_at >= since)
                and (until is None or r.created_at <= until)
            ]
        return _stats_from_records(agent_type, model or "all", records)

    async def top_models(self, agent_type: str, limit: int = 5) -> list[ModelStats]:
        """Per-model stats sorted by success rate x rating, first-seen order on ties."""
        async with self._lock:
            by_model: dict[str, list[FeedbackRecord]] = {}
            for r in self._records:
                if r.agent_type == agent_type:
                    by_model.setdefault(r.model_used, []).append(r)

        stats = [_stats_from_records(agent_type, m, recs) for m, recs in by_model.items()]
        stats.sort(key=lambda s: s.composite_score, reverse=True)
        return stats[:limit]

    async def user_trends(self, user_id: str, agent_type: str | None = None) -> UserTrends:
        async with self._lock:
            records = [
                r
                for r in self._records
                if r.user_id == user_id and (agent_type is None or r.agent_type == agent_type)
            ]
        if not records:
            return UserTrends()

        return UserTrends(
            total_sessions=len(records),
            avg_rating=round(sum(r.user_rating or 0 for r in records) / len(records), 2),
            favorite_agent=_most_common(r.agent_type for r in records),
            most_used_model=_most_common(r.model_used for r in records),
        )

    def _log_submitted(self, record: FeedbackRecord) -> None:
        log.info(
            "feedback.submitted",
            agent_type=record.agent_type,
            model=record.model_used,
            successful=record.was_successful,
            rating=record.user_rating,
            user_id=short_user_id(record.user_id),
        )


# ---------------------------------------------------------------------------
# Persistent feedback store backed by PostgreSQL
# ---------------------------------------------------------------------------


class PersistentFeedbackStore(FeedbackStore):
    """Feedback log stored in ``agent_feedback`` with SQL-side aggregation."""

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def submit(self, record: FeedbackRecord) -> None:
        row = AgentFeedback(
            session_id=record.session_id,
            user_id=record.user_id,
            agent_type=record.agent_type,
            model_used=record.model_used,
            user_rating=record.user_rating,
            was_successful=record.was_successful,
            iteration_count=record.iteration_count,
            execution_time_ms=record.execution_time_ms,
            cost_units=record.cost_units,
            created_at=record.created_at,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        self._log_submitted(record)

    @staticmethod
    def _aggregate_columns() -> tuple:
        return (
            func.count(AgentFeedback.id).label("total"),
            func.coalesce(func.sum(func.coalesce(AgentFeedback.user_rating, 0)), 0).label("rating_sum"),
            func.coalesce(
                func.sum(case((AgentFeedback.was_successful.is_(True), 1), else_=0)), 0
            ).label("success_count"),
            func.coalesce(func.sum(func.coalesce(AgentFeedback.cost_units, 0.0)), 0.0).label("cost_sum"),
            func.coalesce(func.sum(func.coalesce(AgentFeedback.execution_time_ms, 0)), 0).label("time_sum"),
        )

    async def model_stats(
        self,
        agent_type: str,
        model: str | None = None,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> ModelStats:
        stmt = select(*self._aggregate_columns()).where(AgentFeedback.agent_type == agent_type)
        if model is not None:
            stmt = stmt.where(AgentFeedback.model_used == model)
        if since is not None:
            stmt = stmt.where(AgentFeedback.created_at >= since)
        if until is not None:
            stmt = stmt.where(AgentFeedback.created_at <= until)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            row = result.one()

        return _build_stats(
            agent_type,
            model or "all",
            total=row.total or 0,
            rating_sum=float(row.rating_sum or 0),
            success_count=int(row.success_count or 0),
            cost_sum=float(row.cost_sum or 0),
            time_sum=float(row.time_sum or 0),
        )

    async def top_models(self, agent_type: str, limit: int = 5) -> list[ModelStats]:
        stmt = (
            select(
                AgentFeedback.model_used,
                func.min(AgentFeedback.created_at).label("first_seen"),
                *self._aggregate_columns(),
            )
            .where(AgentFeedback.agent_type == agent_type)
            .group_by(AgentFeedback.model_used)
            .order_by(func.min(AgentFeedback.created_at))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        stats = [
            _build_stats(
                agent_type,
                row.model_used,
                total=row.total or 0,
                rating_sum=float(row.rating_sum or 0),
                success_count=int(row.success_count or 0),
                cost_sum=float(row.cost_sum or 0),
                time_sum=float(row.time_sum or 0),
            )
            for row in rows
        ]
        stats.sort(key=lambda s: s.composite_score, reverse=True)
        return stats[:limit]

    async def user_trends(self, user_id: str, agent_type: str | None = None) -> UserTrends:
        stmt = select(
            AgentFeedback.agent_type,
            AgentFeedback.model_used,
            AgentFeedback.user_rating,
        ).where(AgentFeedback.user_id == user_id)
        if agent_type is not None:
            stmt = stmt.where(AgentFeedback.agent_type == agent_type)

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        if not rows:
            return UserTrends()
        return UserTrends(
            total_sessions=len(rows),
            avg_rating=round(sum(r.user_rating or 0 for r in rows) / len(rows), 2),
            favorite_agent=_most_common(r.agent_type for r in rows),
            most_used_model=_most_common(r.model_used for r in rows),
        )
