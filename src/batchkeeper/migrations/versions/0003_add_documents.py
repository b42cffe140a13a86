"""Add documents table

Revision ID: 0003_add_documents
Revises: 0002_add_locks_and_counters
Create Date: 2026-10-02

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0003_add_documents'
down_revision = '0002_add_locks_and_counters'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'documents',
        sa.Column('key', sa.String(64), primary_key=True),
        sa.Column('revision', sa.String(64), nullable=False),
        sa.Column('order', sa.BigInteger(), nullable=False),
        sa.Column('origin', sa.String(255), nullable=False),
        sa.Column('origin_url', sa.Text(), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('slug', sa.Text(), nullable=True),
        sa.Column('language', sa.String(16), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=True),
        sa.Column('updated_on', sa.DateTime(), nullable=True),
    )
    # Documents are looked up by origin when diffing against an import source
    op.create_index('ix_documents_origin', 'documents', ['origin'])


def downgrade():
    op.drop_index('ix_documents_origin', 'documents')
    op.drop_table('documents')
