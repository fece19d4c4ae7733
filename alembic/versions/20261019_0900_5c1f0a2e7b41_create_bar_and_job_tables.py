"""Create historical_bars and sync_jobs tables

Revision ID: 5c1f0a2e7b41
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1f0a2e7b41'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'historical_bars',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('timeframe', sa.String(length=10), nullable=False),
        sa.Column('open', sa.Numeric(12, 4), nullable=False),
        sa.Column('high', sa.Numeric(12, 4), nullable=False),
        sa.Column('low', sa.Numeric(12, 4), nullable=False),
        sa.Column('close', sa.Numeric(12, 4), nullable=False),
        sa.Column('volume', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('symbol', 'timestamp', 'timeframe', name='uq_bar_symbol_timestamp_timeframe'),
        sa.CheckConstraint('volume >= 0', name='ck_bar_volume_non_negative'),
    )
    op.create_index('idx_bars_series', 'historical_bars', ['symbol', 'timeframe', 'timestamp'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('symbol', sa.String(length=20), nullable=False),
        sa.Column('timeframe', sa.String(length=10), nullable=False),
        sa.Column('period', sa.String(length=10), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('expected_records', sa.Integer(), nullable=False),
        sa.Column('current_records', sa.Integer(), nullable=False),
        sa.Column('progress_percentage', sa.Float(), nullable=False),
        sa.Column('current_label', sa.String(length=50)),
        sa.Column('error_message', sa.Text()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime()),
        sa.CheckConstraint("status IN ('in_progress', 'completed', 'failed')", name='ck_sync_job_status'),
        sa.CheckConstraint('progress_percentage >= 0 AND progress_percentage <= 100',
                           name='ck_sync_job_progress_range'),
    )
    op.create_index('idx_sync_jobs_lookup', 'sync_jobs', ['symbol', 'timeframe', 'period', 'status'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_sync_jobs_lookup', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_index('idx_bars_series', table_name='historical_bars')
    op.drop_table('historical_bars')
