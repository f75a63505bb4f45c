"""Create routing tables: feedback, usage, subscriptions, tier settings, knowledge.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

EMBEDDING_DIMENSIONS = 384

_TIER_ROWS = [
    # tier, daily budget, messages, sessions, semantic, response, prefetch, context
    ('free', 1.0, 20, 10, 50, 50, False, 16000),
    ('pro', 5.0, 50, 50, 200, 150, True, 64000),
    ('enterprise', 10.0, 100, -1, 500, 300, True, 200000),
]


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    op.create_table(
        'agent_feedback',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('session_id', sa.String(128), nullable=False),
        sa.Column('user_id', sa.String(128), nullable=True),
        sa.Column('agent_type', sa.String(64), nullable=False),
        sa.Column('model_used', sa.String(128), nullable=False),
        sa.Column('user_rating', sa.SmallInteger, nullable=True),
        sa.Column('was_successful', sa.Boolean, nullable=False),
        sa.Column('iteration_count', sa.Integer, nullable=True),
        sa.Column('execution_time_ms', sa.Integer, nullable=True),
        sa.Column('cost_units', sa.Float, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('user_rating IS NULL OR user_rating BETWEEN 1 AND 5', name='ck_agent_feedback_rating'),
    )
    op.create_index('ix_agent_feedback_agent_model', 'agent_feedback', ['agent_type', 'model_used'])
    op.create_index('ix_agent_feedback_created', 'agent_feedback', ['created_at'])
    op.create_index('ix_agent_feedback_user_id', 'agent_feedback', ['user_id'])

    op.create_table(
        'daily_usage',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('category', sa.String(64), nullable=False),
        sa.Column('usage_date', sa.Date, nullable=False),
        sa.Column('cost_units', sa.Float, nullable=False, server_default='0'),
        sa.Column('request_count', sa.Integer, nullable=False, server_default='0'),
        sa.UniqueConstraint('user_id', 'category', 'usage_date', name='uq_daily_usage_user_category_date'),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(128), nullable=False),
        sa.Column('tier', sa.String(32), nullable=False, server_default='free'),
        sa.Column('status', sa.String(32), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])

    op.create_table(
        'user_preferences',
        sa.Column('user_id', sa.String(128), primary_key=True),
        sa.Column('budget_limit', sa.Float, nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    tier_settings = op.create_table(
        'tier_settings',
        sa.Column('tier', sa.String(32), primary_key=True),
        sa.Column('daily_budget_units', sa.Float, nullable=False),
        sa.Column('max_session_messages', sa.Integer, nullable=False),
        sa.Column('max_sessions', sa.Integer, nullable=False),
        sa.Column('semantic_cache_limit', sa.Integer, nullable=False),
        sa.Column('response_cache_limit', sa.Integer, nullable=False),
        sa.Column('prefetch_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('context_window', sa.Integer, nullable=False, server_default='16000'),
        sa.Column('rate_limit_per_minute', sa.Integer, nullable=False, server_default='10'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.bulk_insert(
        tier_settings,
        [
            {
                'tier': tier,
                'daily_budget_units': budget,
                'max_session_messages': messages,
                'max_sessions': sessions,
                'semantic_cache_limit': semantic,
                'response_cache_limit': response,
                'prefetch_enabled': prefetch,
                'context_window': context,
            }
            for tier, budget, messages, sessions, semantic, response, prefetch, context in _TIER_ROWS
        ],
    )

    op.create_table(
        'knowledge_partitions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, unique=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'knowledge_chunks',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('partition_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('source', sa.String(512), nullable=False),
        sa.Column('chunk_index', sa.Integer, nullable=False, server_default='0'),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('embedding', Vector(EMBEDDING_DIMENSIONS), nullable=True),
        sa.Column(
            'content_tsv',
            postgresql.TSVECTOR,
            sa.Computed("to_tsvector('simple', content)", persisted=True),
        ),
        sa.Column('metadata', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['partition_id'], ['knowledge_partitions.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_knowledge_chunks_partition_id', 'knowledge_chunks', ['partition_id'])
    op.create_index('ix_knowledge_chunks_tsv', 'knowledge_chunks', ['content_tsv'], postgresql_using='gin')
    op.execute(
        'CREATE INDEX ix_knowledge_chunks_embedding ON knowledge_chunks '
        'USING hnsw (embedding vector_cosine_ops)'
    )


def downgrade() -> None:
    op.execute('DROP INDEX IF EXISTS ix_knowledge_chunks_embedding')
    op.drop_index('ix_knowledge_chunks_tsv', table_name='knowledge_chunks')
    op.drop_index('ix_knowledge_chunks_partition_id', table_name='knowledge_chunks')
    op.drop_table('knowledge_chunks')
    op.drop_table('knowledge_partitions')
    op.drop_table('tier_settings')
    op.drop_table('user_preferences')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('daily_usage')
    op.drop_index('ix_agent_feedback_user_id', table_name='agent_feedback')
    op.drop_index('ix_agent_feedback_created', table_name='agent_feedback')
    op.drop_index('ix_agent_feedback_agent_model', table_name='agent_feedback')
    op.drop_table('agent_feedback')
