"""initial tracking schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 09:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

from tasktrack.dialects import dialect_for
from tasktrack.status import RUN_STATUSES, SUBTASK_STATUSES


# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

Timestamp = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql", "mariadb")


def _status_check(statuses):
    return "status IN (%s)" % ", ".join(f"'{s}'" for s in statuses)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('stages',
        sa.Column('stage_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stage_name', sa.String(255), nullable=False),
        sa.Column('stage_order', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', Timestamp, server_default=sa.func.current_timestamp(), nullable=False),
        sa.Column('updated_at', Timestamp, server_default=sa.func.current_timestamp(), nullable=False),
        sa.PrimaryKeyConstraint('stage_id'),
        sa.UniqueConstraint('stage_name')
    )

    op.create_table('tasks',
        sa.Column('task_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stage_id', sa.Integer(), nullable=False),
        sa.Column('task_name', sa.String(255), nullable=False),
        sa.Column('task_type', sa.String(32), nullable=True),
        sa.Column('task_order', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('script_path', sa.Text(), nullable=True),
        sa.Column('script_filename', sa.String(255), nullable=True),
        sa.Column('log_path', sa.Text(), nullable=True),
        sa.Column('log_filename', sa.String(255), nullable=True),
        sa.Column('created_at', Timestamp, server_default=sa.func.current_timestamp(), nullable=False),
        sa.Column('updated_at', Timestamp, server_default=sa.func.current_timestamp(), nullable=False),
        sa.ForeignKeyConstraint(['stage_id'], ['stages.stage_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('task_id'),
        sa.UniqueConstraint('stage_id', 'task_name', name='uq_tasks_stage_task')
    )
    op.create_index('ix_tasks_stage_id', 'tasks', ['stage_id'])

    op.create_table('task_runs',
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('task_id', sa.Integer(), nullable=False),
        sa.Column('hostname', sa.String(255), nullable=False),
        sa.Column('process_id', sa.Integer(), nullable=True),
        sa.Column('parent_pid', sa.Integer(), nullable=True),
        sa.Column('start_time', Timestamp, nullable=True),
        sa.Column('end_time', Timestamp, nullable=True),
        sa.Column('last_update', Timestamp, nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('total_subtasks', sa.Integer(), nullable=True),
        sa.Column('current_subtask', sa.Integer(), nullable=True),
        sa.Column('overall_percent_complete', sa.Float(), nullable=True),
        sa.Column('overall_progress_message', sa.Text(), nullable=True),
        sa.Column('memory_mb', sa.Float(), nullable=True),
        sa.Column('cpu_percent', sa.Float(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_detail', sa.Text(), nullable=True),
        sa.Column('version', sa.String(64), nullable=True),
        sa.Column('git_commit', sa.String(64), nullable=True),
        sa.Column('user_name', sa.String(128), nullable=True),
        sa.Column('environment', sa.JSON(), nullable=True),
        sa.CheckConstraint(_status_check(RUN_STATUSES), name='ck_task_runs_status'),
        sa.ForeignKeyConstraint(['task_id'], ['tasks.task_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('run_id')
    )
    op.create_index('idx_task_runs_host_status', 'task_runs', ['hostname', 'status'])
    op.create_index('idx_task_runs_task_start', 'task_runs', ['task_id', 'start_time'])

    op.create_table('subtask_progress',
        sa.Column('progress_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('subtask_number', sa.Integer(), nullable=False),
        sa.Column('subtask_name', sa.String(255), nullable=True),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('start_time', Timestamp, nullable=True),
        sa.Column('end_time', Timestamp, nullable=True),
        sa.Column('last_update', Timestamp, nullable=True),
        sa.Column('percent_complete', sa.Float(), nullable=True),
        sa.Column('progress_message', sa.Text(), nullable=True),
        sa.Column('items_total', sa.Integer(), nullable=True),
        sa.Column('items_complete', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.CheckConstraint(_status_check(SUBTASK_STATUSES), name='ck_subtask_progress_status'),
        sa.ForeignKeyConstraint(['run_id'], ['task_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('progress_id'),
        sa.UniqueConstraint('run_id', 'subtask_number', name='uq_subtask_run_number')
    )

    op.create_table('process_metrics',
        sa.Column('metric_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('timestamp', Timestamp, nullable=False),
        sa.Column('process_id', sa.Integer(), nullable=False),
        sa.Column('hostname', sa.String(255), nullable=False),
        sa.Column('is_alive', sa.Boolean(), nullable=False),
        sa.Column('process_start_time', sa.Float(), nullable=True),
        sa.Column('cpu_percent', sa.Float(), nullable=True),
        sa.Column('cpu_cores', sa.Integer(), nullable=True),
        sa.Column('memory_mb', sa.Float(), nullable=True),
        sa.Column('memory_percent', sa.Float(), nullable=True),
        sa.Column('memory_vms_mb', sa.Float(), nullable=True),
        sa.Column('swap_mb', sa.Float(), nullable=True),
        sa.Column('read_bytes', sa.BigInteger(), nullable=True),
        sa.Column('write_bytes', sa.BigInteger(), nullable=True),
        sa.Column('read_count', sa.BigInteger(), nullable=True),
        sa.Column('write_count', sa.BigInteger(), nullable=True),
        sa.Column('io_wait_percent', sa.Float(), nullable=True),
        sa.Column('open_files', sa.Integer(), nullable=True),
        sa.Column('num_fds', sa.Integer(), nullable=True),
        sa.Column('num_threads', sa.Integer(), nullable=True),
        sa.Column('page_faults_minor', sa.BigInteger(), nullable=True),
        sa.Column('page_faults_major', sa.BigInteger(), nullable=True),
        sa.Column('num_ctx_switches_voluntary', sa.BigInteger(), nullable=True),
        sa.Column('num_ctx_switches_involuntary', sa.BigInteger(), nullable=True),
        sa.Column('child_count', sa.Integer(), nullable=True),
        sa.Column('child_total_cpu_percent', sa.Float(), nullable=True),
        sa.Column('child_total_memory_mb', sa.Float(), nullable=True),
        sa.Column('collection_error', sa.Boolean(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('error_type', sa.String(32), nullable=True),
        sa.Column('reporter_version', sa.String(32), nullable=True),
        sa.Column('collection_duration_ms', sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['task_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('metric_id'),
        sa.UniqueConstraint('run_id', 'timestamp', name='uq_process_metrics_run_ts')
    )
    op.create_index('idx_process_metrics_run_ts', 'process_metrics', ['run_id', 'timestamp'])

    op.create_table('reporter_status',
        sa.Column('hostname', sa.String(255), nullable=False),
        sa.Column('process_id', sa.Integer(), nullable=False),
        sa.Column('started_at', Timestamp, nullable=False),
        sa.Column('last_heartbeat', Timestamp, nullable=False),
        sa.Column('version', sa.String(32), nullable=True),
        sa.Column('shutdown_requested', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('hostname')
    )

    op.create_table('process_metrics_retention',
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('task_completed_at', Timestamp, nullable=True),
        sa.Column('metrics_delete_after', Timestamp, nullable=True),
        sa.Column('metrics_deleted', sa.Boolean(), nullable=False),
        sa.Column('deleted_at', Timestamp, nullable=True),
        sa.Column('metrics_count', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['run_id'], ['task_runs.run_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('run_id')
    )

    # Views
    for statement in dialect_for(op.get_bind().dialect.name).view_statements():
        op.execute(statement)


def downgrade() -> None:
    """Downgrade schema."""
    for statement in dialect_for(op.get_bind().dialect.name).drop_view_statements():
        op.execute(statement)

    op.drop_table('process_metrics_retention')
    op.drop_table('reporter_status')
    op.drop_index('idx_process_metrics_run_ts', 'process_metrics')
    op.drop_table('process_metrics')
    op.drop_table('subtask_progress')
    op.drop_index('idx_task_runs_task_start', 'task_runs')
    op.drop_index('idx_task_runs_host_status', 'task_runs')
    op.drop_table('task_runs')
    op.drop_index('ix_tasks_stage_id', 'tasks')
    op.drop_table('tasks')
    op.drop_table('stages')
