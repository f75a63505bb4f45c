"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from adaptive_router.models.feedback import AgentFeedback
from adaptive_router.models.knowledge import KnowledgeChunk, KnowledgePartition
from adaptive_router.models.usage import DailyUsage, Subscription, TierSetting, UserPreference

__all__ = [
    "AgentFeedback",
    "DailyUsage",
    "KnowledgeChunk",
    "KnowledgePartition",
    "Subscription",
    "TierSetting",
    "UserPreference",
]
