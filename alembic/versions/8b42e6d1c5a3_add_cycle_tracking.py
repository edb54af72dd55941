"""Add cycle columns to metric_snapshots and migration_runs table

Existing snapshots keep NULL cycle columns until the cycle backfill runs.

Revision ID: 8b42e6d1c5a3
Revises: 3f1c9a7d2e10
Create Date: 2025-03-17 14:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8b42e6d1c5a3'
down_revision: Union[str, None] = '3f1c9a7d2e10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('metric_snapshots', sa.Column('cycle_number', sa.Integer(), nullable=True))
    op.add_column('metric_snapshots', sa.Column('cycle_start_date', sa.Date(), nullable=True))
    op.add_column('metric_snapshots', sa.Column('cycle_end_date', sa.Date(), nullable=True))
    op.add_column('metric_snapshots', sa.Column('day_in_cycle', sa.Integer(), nullable=True))
    op.add_column('metric_snapshots', sa.Column('total_cycle_days', sa.Integer(), nullable=True))
    op.create_index('ix_metric_snapshots_rep_cycle', 'metric_snapshots', ['representative_id', 'cycle_number'])

    op.create_table(
        'migration_runs',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='not_started'),
        sa.Column('requested_by', sa.Text(), nullable=True),
        sa.Column('total_records', sa.Integer(), server_default='0'),
        sa.Column('records_migrated', sa.Integer(), server_default='0'),
        sa.Column('records_failed', sa.Integer(), server_default='0'),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('records_per_second', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('migration_runs')
    op.drop_index('ix_metric_snapshots_rep_cycle', table_name='metric_snapshots')
    op.drop_column('metric_snapshots', 'total_cycle_days')
    op.drop_column('metric_snapshots', 'day_in_cycle')
    op.drop_column('metric_snapshots', 'cycle_end_date')
    op.drop_column('metric_snapshots', 'cycle_start_date')
    op.drop_column('metric_snapshots', 'cycle_number')
