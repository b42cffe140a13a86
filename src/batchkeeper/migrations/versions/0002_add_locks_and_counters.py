"""Add lock tables and counters for process coordination

Revision ID: 0002_add_locks_and_counters
Revises: 0001_initial
Create Date: 2026-09-21

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_add_locks_and_counters'
down_revision = '0001_initial'
branch_labels = None
depends_on = None

LOCK_TABLES = ('maintenance_locks', 'batch_locks', 'task_locks', 'document_locks')


def upgrade():
    """Add one lock table per lock family plus the counters table."""

    existing = set(sa.inspect(op.get_bind()).get_table_names())

    # lock_key is the primary key: the unique index is what makes a lock exclusive
    for table_name in LOCK_TABLES:
        if table_name in existing:
            # maintenance_locks is created ahead of the first migration
            continue
        op.create_table(
            table_name,
            sa.Column('lock_key', sa.String(255), primary_key=True),
            sa.Column('session_key', sa.String(64), nullable=False),
            sa.Column('expires', sa.DateTime(), nullable=True),
        )

    op.create_table(
        'counters',
        sa.Column('name', sa.String(64), primary_key=True),
        sa.Column('seq', sa.BigInteger(), nullable=False),
    )


def downgrade():
    op.drop_table('counters')
    for table_name in reversed(LOCK_TABLES):
        op.drop_table(table_name)
