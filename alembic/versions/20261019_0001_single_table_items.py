"""single-table items store

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'items',
        sa.Column('pk', sa.String(length=255), nullable=False),
        sa.Column('sk', sa.String(length=255), nullable=False),
        sa.Column('gsi1pk', sa.String(length=255), nullable=True),
        sa.Column('gsi1sk', sa.String(length=255), nullable=True),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column(
            'schema_version', sa.Integer(), nullable=False,
            server_default='1'
        ),
        sa.Column(
            'version', sa.Integer(), nullable=False,
            server_default='1'
        ),
        sa.Column('attributes', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.String(length=40), nullable=False),
        sa.Column('updated_at', sa.String(length=40), nullable=False),
        sa.PrimaryKeyConstraint('pk', 'sk'),
    )
    op.create_index(
        'ix_items_gsi1', 'items', ['gsi1pk', 'gsi1sk'], unique=False
    )


def downgrade() -> None:
    op.drop_index('ix_items_gsi1', table_name='items')
    op.drop_table('items')
