"""strategy config, operation log and maintenance jobs

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'strategy_config',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('target_object', sa.String(length=128), nullable=False, index=True),
        sa.Column('strategy_type', sa.String(length=16), nullable=False, index=True),
        sa.Column('partition_column', sa.String(length=128), nullable=True),
        sa.Column('interval_expression', sa.String(length=256), nullable=True),
        sa.Column('subpartition_type', sa.String(length=16), nullable=True),
        sa.Column('subpartition_column', sa.String(length=128), nullable=True),
        sa.Column('tablespace', sa.String(length=128), nullable=True),
        sa.Column('retention_days', sa.Integer(), nullable=False, server_default='90'),
        sa.Column('auto_maintenance', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('updated_by', sa.String(length=128), nullable=True),
    )
    if op.get_bind().dialect.name == 'oracle':
        op.create_index('uq_strategy_config_active_fn', 'strategy_config',
                        [sa.text('CASE WHEN is_active = 1 THEN target_object END')], unique=True)
    else:
        op.create_index('uq_strategy_config_active_target', 'strategy_config', ['target_object'], unique=True,
                        postgresql_where=sa.text('is_active'), sqlite_where=sa.text('is_active = 1'))
    op.create_index('ix_strategy_config_target_version', 'strategy_config', ['target_object', 'version'])

    op.create_table(
        'operation_log',
        sa.Column('operation_id', sa.BigInteger().with_variant(sa.Integer(), 'sqlite'), primary_key=True, autoincrement=True),
        sa.Column('parent_operation_id', sa.BigInteger(), nullable=True, index=True),
        sa.Column('operation_type', sa.String(length=64), nullable=False, index=True),
        sa.Column('target_object', sa.String(length=128), nullable=True, index=True),
        sa.Column('target_type', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='STARTED', index=True),
        sa.Column('message', sa.String(length=1024), nullable=True),
        sa.Column('duration_ms', sa.BigInteger(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'), index=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('user_name', sa.String(length=128), nullable=True),
        sa.Column('session_id', sa.String(length=64), nullable=True),
        sa.Column('sql_text', sa.Text(), nullable=True),
        sa.Column('error_code', sa.String(length=32), nullable=True),
        sa.Column('error_message', sa.String(length=2048), nullable=True),
        sa.Column('rows_processed', sa.BigInteger(), nullable=True),
        sa.Column('objects_affected', sa.Integer(), nullable=True),
        sa.Column('context', sa.JSON(), nullable=True),
    )
    op.create_index('ix_oplog_target_time', 'operation_log', ['target_object', 'started_at'])
    op.create_index('ix_oplog_type_status', 'operation_log', ['operation_type', 'status'])

    op.create_table(
        'maintenance_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_name', sa.String(length=128), nullable=False, unique=True),
        sa.Column('target_object', sa.String(length=128), nullable=False, index=True),
        sa.Column('job_type', sa.String(length=32), nullable=False, index=True),
        sa.Column('schedule_type', sa.String(length=16), nullable=False, server_default='DAILY'),
        sa.Column('schedule_value', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('depends_on', sa.JSON(), nullable=True),
        sa.Column('job_parameters', sa.JSON(), nullable=True),
        sa.Column('resource_limits', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), index=True),
        sa.Column('last_run', sa.DateTime(), nullable=True),
        sa.Column('last_status', sa.String(length=16), nullable=True),
        sa.Column('last_duration_ms', sa.BigInteger(), nullable=True),
        sa.Column('last_error', sa.String(length=1024), nullable=True),
        sa.Column('next_run', sa.DateTime(), nullable=True, index=True),
        sa.Column('execution_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_maintenance_due', 'maintenance_jobs', ['is_active', 'next_run'])


def downgrade():
    op.drop_index('ix_maintenance_due', table_name='maintenance_jobs')
    op.drop_table('maintenance_jobs')
    op.drop_index('ix_oplog_type_status', table_name='operation_log')
    op.drop_index('ix_oplog_target_time', table_name='operation_log')
    op.drop_table('operation_log')
    op.drop_index('ix_strategy_config_target_version', table_name='strategy_config')
    if op.get_bind().dialect.name == 'oracle':
        op.drop_index('uq_strategy_config_active_fn', table_name='strategy_config')
    else:
        op.drop_index('uq_strategy_config_active_target', table_name='strategy_config')
    op.drop_table('strategy_config')
