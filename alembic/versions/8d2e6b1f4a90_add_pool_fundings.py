"""add pool fundings

Revision ID: 8d2e6b1f4a90
Revises: 3f8a1c2d9b47
Create Date: 2026-10-19 15:40:02.771913

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '8d2e6b1f4a90'
down_revision: Union[str, None] = '3f8a1c2d9b47'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Created by the first revision
currency = postgresql.ENUM('XDC', 'ROXN', 'USDC', name='currency', create_type=False)


def upgrade() -> None:
    op.create_table(
        'pool_fundings',
        sa.Column('idempotency_key', sa.String(length=200), primary_key=True),
        sa.Column('github_repo_id', sa.BigInteger(), nullable=False),
        sa.Column('funder_user_id', sa.Integer(), nullable=False),
        sa.Column('currency', currency, nullable=False),
        sa.Column('amount', sa.Numeric(38, 18), nullable=False),
        sa.Column('repository_window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('funder_window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('released_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_pool_fundings_github_repo_id', 'pool_fundings', ['github_repo_id'])
    op.create_index('ix_pool_fundings_funder_user_id', 'pool_fundings', ['funder_user_id'])


def downgrade() -> None:
    op.drop_index('ix_pool_fundings_funder_user_id', table_name='pool_fundings')
    op.drop_index('ix_pool_fundings_github_repo_id', table_name='pool_fundings')
    op.drop_table('pool_fundings')
