"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-14 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'batches',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('created_by', sa.String(64), nullable=False),
        sa.Column('created_on', sa.DateTime, nullable=False),
        sa.Column('completed_on', sa.DateTime, nullable=True),
        sa.Column('batch_type', sa.String(64), nullable=False),
        sa.Column('host_name', sa.String(255), nullable=True),
        sa.Column('batch_params', sa.JSON, nullable=False),
        sa.Column('errors', sa.JSON, nullable=False),
    )
    op.create_index('ix_batches_completed_on', 'batches', ['completed_on'])
    op.create_index('ix_batches_batch_type', 'batches', ['batch_type'])
    op.create_index('ix_batches_host_name', 'batches', ['host_name'])

    op.create_table(
        'tasks',
        sa.Column('id', sa.String(32), primary_key=True),
        sa.Column('seq', sa.Integer, nullable=False, server_default=sa.text('0')),
        sa.Column('batch_id', sa.String(32), sa.ForeignKey('batches.id'), nullable=False),
        sa.Column('task_type', sa.String(64), nullable=False),
        sa.Column('processed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('task_params', sa.JSON, nullable=False),
    )
    op.create_index('ix_tasks_batch_id', 'tasks', ['batch_id'])
    op.create_index('ix_tasks_processed', 'tasks', ['processed'])

    op.create_table(
        'task_attempts',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('task_id', sa.String(32), sa.ForeignKey('tasks.id'), nullable=False),
        sa.Column('started_on', sa.DateTime, nullable=False),
        sa.Column('completed_on', sa.DateTime, nullable=True),
        sa.Column('error', sa.Text, nullable=True),
    )
    op.create_index('ix_task_attempts_task_id', 'task_attempts', ['task_id'])


def downgrade() -> None:
    op.drop_index('ix_task_attempts_task_id', 'task_attempts')
    op.drop_table('task_attempts')
    op.drop_index('ix_tasks_processed', 'tasks')
    op.drop_index('ix_tasks_batch_id', 'tasks')
    op.drop_table('tasks')
    op.drop_index('ix_batches_host_name', 'batches')
    op.drop_index('ix_batches_batch_type', 'batches')
    op.drop_index('ix_batches_completed_on', 'batches')
    op.drop_table('batches')
