"""Event log, processing watermarks, stat buckets and snapshots.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('enrichment_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('at', sa.BigInteger(), nullable=False),
        sa.Column('session_id', sa.String(128), nullable=False),
        sa.Column('post_id', sa.String(128), nullable=True),
        sa.Column('story_id', sa.String(128), nullable=True),
        sa.Column('subreddit', sa.String(128), nullable=True),
        sa.Column('thread_id', sa.String(128), nullable=True),
        sa.Column('entities', sa.JSON(), nullable=True),
        sa.Column('categories', sa.JSON(), nullable=True),
        sa.Column('sentiment', sa.Float(), nullable=True),
        sa.Column('quality', sa.Float(), nullable=True),
        sa.Column('engagement', sa.JSON(), nullable=True),
        sa.Column('story_themes', sa.JSON(), nullable=True),
        sa.Column('story_concepts', sa.JSON(), nullable=True),
        sa.Column('is_cross_post', sa.Boolean(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False),
        sa.Column('applied_at', sa.BigInteger(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_enrichment_events_kind', 'enrichment_events', ['kind'])
    op.create_index('ix_enrichment_events_at', 'enrichment_events', ['at'])
    op.create_index('ix_enrichment_events_session_id', 'enrichment_events', ['session_id'])
    op.create_index('ix_enrichment_events_post_id', 'enrichment_events', ['post_id'])
    op.create_index('ix_enrichment_processed_at', 'enrichment_events', ['processed', 'at', 'id'])

    op.create_table('processing_watermarks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('processor_id', sa.String(64), nullable=False),
        sa.Column('last_processed_at', sa.BigInteger(), nullable=False),
        sa.Column('last_event_id', sa.Integer(), nullable=True),
        sa.Column('processed_count', sa.Integer(), nullable=False),
        sa.Column('last_run_at', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('error_message', sa.String(1024), nullable=True),
        sa.Column('run_id', sa.String(32), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processing_watermarks_processor_id', 'processing_watermarks', ['processor_id'], unique=True)
    op.create_index('ix_processing_watermarks_status', 'processing_watermarks', ['status'])

    op.create_table('stat_buckets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('window', sa.String(8), nullable=False),
        sa.Column('bucket_start', sa.BigInteger(), nullable=False),
        sa.Column('dim_kind', sa.String(16), nullable=False),
        sa.Column('dim_value', sa.String(256), nullable=False),
        sa.Column('dim_hash', sa.String(300), nullable=False),
        sa.Column('stories_total', sa.Integer(), nullable=False),
        sa.Column('stories_aligned', sa.Integer(), nullable=False),
        sa.Column('rc_percent', sa.Float(), nullable=False),
        sa.Column('unique_concepts', sa.JSON(), nullable=False),
        sa.Column('ni_count', sa.Integer(), nullable=False),
        sa.Column('stories_cross_post', sa.Integer(), nullable=False),
        sa.Column('tp_percent', sa.Float(), nullable=False),
        sa.Column('posts_total', sa.Integer(), nullable=False),
        sa.Column('story_yield', sa.Float(), nullable=False),
        sa.Column('story_yield_delta', sa.Float(), nullable=False),
        sa.Column('cm_percent', sa.Float(), nullable=False),
        sa.Column('sum_sentiment', sa.Float(), nullable=False),
        sa.Column('sum_weighted_sentiment', sa.Float(), nullable=False),
        sa.Column('sum_weights', sa.Float(), nullable=False),
        sa.Column('sum_engagement', sa.Float(), nullable=False),
        sa.Column('var_sum_x', sa.Float(), nullable=False),
        sa.Column('var_sum_x2', sa.Float(), nullable=False),
        sa.Column('var_n', sa.Integer(), nullable=False),
        sa.Column('event_count', sa.Integer(), nullable=False),
        sa.Column('last_event_id', sa.Integer(), nullable=True),
        sa.Column('last_updated_at', sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ux_stat_bucket_key', 'stat_buckets', ['window', 'bucket_start', 'dim_hash'], unique=True)
    op.create_index('ix_stat_bucket_dim_window', 'stat_buckets', ['dim_kind', 'dim_value', 'window', 'bucket_start'])

    op.create_table('stats_snapshots',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('snapshot_id', sa.String(64), nullable=False),
        sa.Column('session_id', sa.String(128), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('window', sa.String(8), nullable=False),
        sa.Column('metrics', sa.JSON(), nullable=False),
        sa.Column('by_dimension', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_stats_snapshots_snapshot_id', 'stats_snapshots', ['snapshot_id'], unique=True)
    op.create_index('ix_stats_snapshots_session_id', 'stats_snapshots', ['session_id'])
    op.create_index('ix_stats_snapshots_created_at', 'stats_snapshots', ['created_at'])
    op.create_index('ix_stats_snapshots_is_active', 'stats_snapshots', ['is_active'])


def downgrade() -> None:
    op.drop_table('stats_snapshots')
    op.drop_table('stat_buckets')
    op.drop_table('processing_watermarks')
    op.drop_table('enrichment_events')
