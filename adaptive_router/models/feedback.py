"""Agent execution feedback ORM model.

One row per completed (or failed) agent execution. Rows are append-only:
the store never updates or deletes them, and model selection reads them
only through aggregate queries.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, SmallInteger, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from adaptive_router.database import Base


class AgentFeedback(Base):
    """Outcome of one agent execution.

    Attributes:
        session_id: Agent session the execution belonged to
        user_id: Optional user identifier (anonymous executions have none)
        agent_type: Agent that ran (codegen, research, ...)
        model_used: Catalog model name that produced the output
        user_rating: Optional 1-5 rating
        was_successful: Whether the execution produced a usable result
        iteration_count: Optional number of agent iterations
        execution_time_ms: Optional wall-clock latency
        cost_units: Optional cost of the execution
    """

    __tablename__ = "agent_feedback"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    agent_type: Mapped[str] = mapped_column(String(64), nullable=False)
    model_used: Mapped[str] = mapped_column(String(128), nullable=False)
    user_rating: Mapped[int | None] = mapped_column(
        SmallInteger,
        nullable=True,
        comment="1-5 star rating, null when the user did not rate",
    )
    was_successful: Mapped[bool] = mapped_column(Boolean, nullable=False)
    iteration_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execution_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost_units: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_agent_feedback_agent_model", "agent_type", "model_used"),
        Index("ix_agent_feedback_created", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AgentFeedback id={self.id} agent={self.agent_type} "
            f"model={self.model_used} ok={self.was_successful}>"
        )
