"""Initial NB pipeline schema

Revision ID: 3f9a61c0d2e8
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f9a61c0d2e8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'companies',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('ticker', sa.Text(), nullable=True),
        sa.Column('website', sa.Text(), nullable=True),
        sa.Column('sector', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'sources',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('type', sa.Text(), nullable=False, server_default='url'),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('uploaded_filename', sa.Text(), nullable=True),
        sa.Column('content_hash', sa.Text(), nullable=True),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_sources_company_id', 'sources', ['company_id'])

    op.create_table(
        'runs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('target_company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=True),
        sa.Column('user_id', sa.Text(), nullable=True),
        sa.Column('mode', sa.Text(), nullable=False, server_default='full'),
        sa.Column('status', sa.Text(), nullable=False, server_default='queued'),
        sa.Column('nb_codes', sa.JSON(), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('estimated_tokens', sa.Integer(), nullable=True),
        sa.Column('estimated_cost', sa.Float(), nullable=True),
        sa.Column('actual_tokens', sa.Integer(), server_default='0'),
        sa.Column('actual_cost', sa.Float(), server_default='0.0'),
        sa.Column('reused_snapshot_id', sa.Integer(), nullable=True),
        sa.Column('reused_target_snapshot_id', sa.Integer(), nullable=True),
        sa.Column('error', sa.JSON(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_runs_company_id', 'runs', ['company_id'])
    op.create_index('ix_runs_status', 'runs', ['status'])

    op.create_table(
        'nb_results',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('runs.id'), nullable=False),
        sa.Column('nb_code', sa.Text(), nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('citations', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default='0'),
        sa.Column('repaired', sa.Boolean(), server_default=sa.false()),
        sa.Column('reused', sa.Boolean(), server_default=sa.false()),
        sa.Column('tokens_used', sa.Integer(), server_default='0'),
        sa.Column('duration_ms', sa.Integer(), server_default='0'),
        sa.Column('cost', sa.Float(), server_default='0.0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('run_id', 'nb_code', name='uq_nb_results_run_code'),
    )
    op.create_index('ix_nb_results_run_id', 'nb_results', ['run_id'])

    op.create_table(
        'snapshots',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('company_id', sa.Integer(), sa.ForeignKey('companies.id'), nullable=False),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('runs.id'), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('size_bytes', sa.Integer(), server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_snapshots_company_id', 'snapshots', ['company_id'])
    op.create_index('ix_snapshots_run_id', 'snapshots', ['run_id'])

    op.create_table(
        'diffs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('from_snapshot_id', sa.Integer(), sa.ForeignKey('snapshots.id'), nullable=False),
        sa.Column('to_snapshot_id', sa.Integer(), sa.ForeignKey('snapshots.id'), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('from_snapshot_id', 'to_snapshot_id', name='uq_diffs_pair'),
    )
    op.create_index('ix_diffs_to_snapshot_id', 'diffs', ['to_snapshot_id'])

    op.create_table(
        'telemetry',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.Integer(), sa.ForeignKey('runs.id'), nullable=True),
        sa.Column('metric_key', sa.Text(), nullable=False),
        sa.Column('metric_value', sa.Float(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_telemetry_run_id', 'telemetry', ['run_id'])
    op.create_index('ix_telemetry_metric_key', 'telemetry', ['metric_key'])


def downgrade() -> None:
    op.drop_table('telemetry')
    op.drop_table('diffs')
    op.drop_table('snapshots')
    op.drop_table('nb_results')
    op.drop_table('runs')
    op.drop_table('sources')
    op.drop_table('companies')
