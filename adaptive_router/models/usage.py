"""Subscription, budget preference, tier settings and daily usage ORM models.

Design principles:
- Subscription: source of truth for a user's tier. Only ``active`` rows count.
- UserPreference: optional per-user spending ceiling for a single request.
- TierSetting: one row per tier, editable by operators; the code carries a
  hardcoded fallback for when this table is unreachable.
- DailyUsage: counter keyed by (user, category, date), incremented in place
  with an upsert.
"""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime

from sqlalchemy import Boolean, Date, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from adaptive_router.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )


class UserPreference(Base):
    __tablename__ = "user_preferences"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    budget_limit: Mapped[float | None] = mapped_column(
        Float,
        nullable=True,
        comment="Maximum estimated cost units per request; null means no limit",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class TierSetting(Base):
    """Operator-editable quotas for one tier."""

    __tablename__ = "tier_settings"

    tier: Mapped[str] = mapped_column(String(32), primary_key=True)
    daily_budget_units: Mapped[float] = mapped_column(Float, nullable=False)
    max_session_messages: Mapped[int] = mapped_column(Integer, nullable=False)
    max_sessions: Mapped[int] = mapped_column(Integer, nullable=False, comment="-1 = unlimited")
    semantic_cache_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    response_cache_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    prefetch_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    context_window: Mapped[int] = mapped_column(Integer, nullable=False, default=16_000)
    rate_limit_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class DailyUsage(Base):
    __tablename__ = "daily_usage"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    cost_units: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    request_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "category", "usage_date", name="uq_daily_usage_user_category_date"),
    )

    def __repr__(self) -> str:
        return f"<DailyUsage user={self.user_id} category={self.category} date={self.usage_date}>"
