"""Create metric_snapshots, report_uploads and action_deliveries

Revision ID: 3f1c9a7d2e10
Revises:
Create Date: 2025-01-06 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'metric_snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('representative_id', sa.Text(), nullable=False),
        sa.Column('representative_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('team', sa.Text(), nullable=False),
        sa.Column('report_date', sa.Date(), nullable=False),
        sa.Column('activity', sa.Float(), nullable=True),
        sa.Column('revenue_per_asset', sa.Float(), nullable=True),
        sa.Column('revenue', sa.Float(), nullable=True),
        sa.Column('multibrand_per_asset', sa.Float(), nullable=True),
        sa.Column('conversions', sa.Float(), nullable=True),
        sa.Column('upa', sa.Float(), nullable=True),
        sa.Column('upload_id', sa.Text(), nullable=True),
        sa.Column('submitted_by', sa.Text(), nullable=True),
        sa.Column('recorded_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_metric_snapshots_rep_recorded', 'metric_snapshots', ['representative_id', 'recorded_at'])
    op.create_index('ix_metric_snapshots_upload_id', 'metric_snapshots', ['upload_id'])

    op.create_table(
        'report_uploads',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('submitted_by', sa.Text(), nullable=False),
        sa.Column('filename', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='processing'),
        sa.Column('rows_received', sa.Integer(), server_default='0'),
        sa.Column('rows_rejected', sa.Integer(), server_default='0'),
        sa.Column('processed_count', sa.Integer(), server_default='0'),
        sa.Column('changed_count', sa.Integer(), server_default='0'),
        sa.Column('actions_submitted_count', sa.Integer(), server_default='0'),
        sa.Column('actions_failed_count', sa.Integer(), server_default='0'),
        sa.Column('errors', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'action_deliveries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('upload_id', sa.Text(), nullable=False),
        sa.Column('snapshot_id', sa.Integer(), nullable=False),
        sa.Column('representative_id', sa.Text(), nullable=False),
        sa.Column('metric', sa.Text(), nullable=False),
        sa.Column('action_id', sa.Text(), nullable=False),
        sa.Column('previous_value', sa.Float(), nullable=True),
        sa.Column('new_value', sa.Float(), nullable=False),
        sa.Column('delta', sa.Float(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('upload_id', 'snapshot_id', 'metric', name='uq_action_delivery_change'),
    )
    op.create_index('ix_action_deliveries_upload_id', 'action_deliveries', ['upload_id'])


def downgrade() -> None:
    op.drop_index('ix_action_deliveries_upload_id', table_name='action_deliveries')
    op.drop_table('action_deliveries')
    op.drop_table('report_uploads')
    op.drop_index('ix_metric_snapshots_upload_id', table_name='metric_snapshots')
    op.drop_index('ix_metric_snapshots_rep_recorded', table_name='metric_snapshots')
    op.drop_table('metric_snapshots')
