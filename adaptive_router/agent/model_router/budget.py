"""Budget checks and daily usage accounting.

Two concerns live here:
- ``check_budget_limit``: compares one request's estimated cost with the
  user's per-request ceiling. It reports, it never raises.
- ``BudgetManager``: a daily usage counter keyed by (user, category, date)
  that the tier gate reads when checking the daily tier budget.

BudgetManager uses in-memory storage (non-persistent). PersistentBudgetManager
extends it to persist counters in PostgreSQL via SQLAlchemy async sessions,
making daily usage durable across restarts and shared between workers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adaptive_router.agent.model_router.catalog import UserTier
from adaptive_router.models.usage import DailyUsage
from adaptive_router.telemetry.logging import short_user_id

log = structlog.get_logger(__name__)

# Request-count ceilings per day when no tier configuration says otherwise
DAILY_REQUEST_LIMITS: dict[UserTier, dict[str, int]] = {
    UserTier.FREE: {"image": 5, "text": 20},
    UserTier.PRO: {"image": 20, "text": 100},
    UserTier.ENTERPRISE: {"image": 50, "text": 500},
}


@dataclass(frozen=True)
class BudgetCheck:
    """Outcome of a budget comparison. ``message`` is set only when denied."""

    allowed: bool
    message: str | None = None
    estimated_cost: float = 0.0
    limit: float | None = None


def check_budget_limit(estimated_cost: float, budget_limit: float | None) -> BudgetCheck:
    """Compare an estimate with the user's configured ceiling.

    No configured limit always allows.
    """
    if budget_limit is None:
        return BudgetCheck(allowed=True, estimated_cost=estimated_cost)

    if estimated_cost > budget_limit:
        return BudgetCheck(
            allowed=False,
            message=(
                f"Estimated cost ({estimated_cost:.4f} units) exceeds your "
                f"budget limit ({budget_limit:.4f} units)"
            ),
            estimated_cost=estimated_cost,
            limit=budget_limit,
        )

    return BudgetCheck(allowed=True, estimated_cost=estimated_cost, limit=budget_limit)


def usage_category(agent_type: str) -> str:
    """Quota bucket an agent's requests count against."""
    return "image" if agent_type == "imagegen" else "text"


@dataclass
class DailyUsageRecord:
    """Usage counters for one (user, category, day)."""

    user_id: str
    category: str
    usage_date: date
    cost_units: float = 0.0
    request_count: int = 0


def _today() -> date:
    return datetime.now(UTC).date()


class BudgetManager:
    """Tracks daily cost and request counts per user and category."""

    def __init__(self) -> None:
        # Key: (user_id, category, date), Value: DailyUsageRecord
        self._usage: dict[tuple[str, str, date], DailyUsageRecord] = {}
        self._day: date | None = None
        self._lock = asyncio.Lock()

        log.info("budget_manager.initialized", persistent=False)

    async def record_usage(
        self,
        user_id: str,
        category: str,
        cost_units: float,
        *,
        requests: int = 1,
    ) -> DailyUsageRecord:
        """Add one request's cost to today's counter and return the new totals.

        Counters from earlier days are dropped; only today's usage is kept.
        """
        day = _today()
        async with self._lock:
            if day != self._day:
                for past in [k for k in self._usage if k[2] < day]:
                    del self._usage[past]
                self._day = day
            key = (user_id, category, day)
            record = self._usage.get(key)
            if record is None:
                record = DailyUsageRecord(user_id=user_id, category=category, usage_date=day)
                self._usage[key] = record
            record.cost_units += cost_units
            record.request_count += requests
            snapshot = DailyUsageRecord(**vars(record))

        log.info(
            "budget_manager.usage_recorded",
            user_id=short_user_id(user_id),
            category=category,
            cost_units=round(cost_units, 6),
            daily_cost=round(snapshot.cost_units, 6),
            daily_requests=snapshot.request_count,
        )
        return snapshot

    async def get_usage(self, user_id: str, category: str, day: date | None = None) -> DailyUsageRecord:
        day = day or _today()
        async with self._lock:
            record = self._usage.get((user_id, category, day))
            if record is None:
                return DailyUsageRecord(user_id=user_id, category=category, usage_date=day)
            return DailyUsageRecord(**vars(record))


# ---------------------------------------------------------------------------
# Persistent budget manager backed by PostgreSQL
# ---------------------------------------------------------------------------


class PersistentBudgetManager(BudgetManager):
    """Daily usage counter backed by the ``daily_usage`` table.

    Increments use SELECT ... FOR UPDATE on the (user, category, date) row
    to serialise concurrent updates from several workers.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

        log.info("persistent_budget_manager.initialized")

    async def record_usage(
        self,
        user_id: str,
        category: str,
        cost_units: float,
        *,
        requests: int = 1,
    ) -> DailyUsageRecord:
        day = _today()
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id, category, day, lock=True)
            if row is None:
                row = DailyUsage(
                    user_id=user_id,
                    category=category,
                    usage_date=day,
                    cost_units=0.0,
                    request_count=0,
                )
                session.add(row)
            row.cost_units = (row.cost_units or 0.0) + cost_units
            row.request_count = (row.request_count or 0) + requests
            await session.commit()

            record = DailyUsageRecord(
                user_id=user_id,
                category=category,
                usage_date=day,
                cost_units=row.cost_units,
                request_count=row.request_count,
            )

        log.info(
            "persistent_budget_manager.usage_recorded",
            user_id=short_user_id(user_id),
            category=category,
            cost_units=round(cost_units, 6),
            daily_cost=round(record.cost_units, 6),
            daily_requests=record.request_count,
        )
        return record

    async def get_usage(self, user_id: str, category: str, day: date | None = None) -> DailyUsageRecord:
        day = day or _today()
        async with self._session_factory() as session:
            row = await self._get_row(session, user_id, category, day, lock=False)

        if row is None:
            return DailyUsageRecord(user_id=user_id, category=category, usage_date=day)
        return DailyUsageRecord(
            user_id=user_id,
            category=category,
            usage_date=day,
            cost_units=row.cost_units,
            request_count=row.request_count,
        )

    async def _get_row(
        self,
        session: AsyncSession,
        user_id: str,
        category: str,
        day: date,
        *,
        lock: bool,
    ) -> DailyUsage | None:
        stmt = select(DailyUsage).where(
            DailyUsage.user_id == user_id,
            DailyUsage.category == category,
            DailyUsage.usage_date == day,
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()
