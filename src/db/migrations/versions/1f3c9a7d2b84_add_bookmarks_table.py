"""
Add bookmarks table.

Revision ID: 1f3c9a7d2b84
Revises:
Create Date: 2026-02-09 10:12:41.318204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = '1f3c9a7d2b84'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'bookmarks',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_bookmarks_created_at', 'bookmarks', ['created_at'])
    op.create_index(
        'ix_bookmarks_user_id_created_at', 'bookmarks', ['user_id', 'created_at'],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_bookmarks_user_id_created_at', table_name='bookmarks')
    op.drop_index('ix_bookmarks_created_at', table_name='bookmarks')
    op.drop_table('bookmarks')
