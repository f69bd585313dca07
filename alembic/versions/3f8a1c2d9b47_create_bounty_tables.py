"""create bounty tables

Revision ID: 3f8a1c2d9b47
Revises:
Create Date: 2026-10-19 10:12:44.318502

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f8a1c2d9b47'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

currency = sa.Enum('XDC', 'ROXN', 'USDC', name='currency')
window_kind = sa.Enum('FUNDING', 'TRANSFER', name='windowkind')
installation_scope = sa.Enum('REPOSITORY', 'ORGANIZATION', 'USER', name='installationscope')
allocation_status = sa.Enum('PENDING', 'CONFIRMED', 'FAILED', name='allocationstatus')
chain_operation_status = sa.Enum(
    'SUBMITTED', 'PENDING', 'CONFIRMED', 'REJECTED', name='chainoperationstatus'
)


def upgrade() -> None:
    op.create_table(
        'installations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('github_installation_id', sa.BigInteger(), nullable=False),
        sa.Column('owner_type', sa.String(length=20), nullable=False),
        sa.Column('owner_login', sa.String(length=255), nullable=False),
        sa.Column('scope', installation_scope, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('suspended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_installations_github_installation_id', 'installations', ['github_installation_id'], unique=True)
    op.create_index('ix_installations_owner_login', 'installations', ['owner_login'])

    op.create_table(
        'repository_registrations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('github_repo_id', sa.BigInteger(), nullable=False),
        sa.Column('full_name', sa.String(length=255), nullable=False),
        sa.Column('registering_user_id', sa.Integer(), nullable=False),
        sa.Column('installation_id', sa.BigInteger(), nullable=False),
        sa.Column('is_private', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('registered_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_repository_registrations_github_repo_id', 'repository_registrations', ['github_repo_id'], unique=True)
    op.create_index('ix_repository_registrations_full_name', 'repository_registrations', ['full_name'])
    op.create_index('ix_repository_registrations_registering_user_id', 'repository_registrations', ['registering_user_id'])
    op.create_index('ix_repository_registrations_installation_id', 'repository_registrations', ['installation_id'])

    op.create_table(
        'funding_window_counters',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subject_id', sa.String(length=100), nullable=False),
        sa.Column('currency', currency, nullable=False),
        sa.Column('kind', window_kind, nullable=False),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('amount_consumed', sa.Numeric(38, 18), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('subject_id', 'currency', 'kind', name='uq_subject_currency_kind'),
    )
    op.create_index('ix_funding_window_counters_subject_id', 'funding_window_counters', ['subject_id'])

    op.create_table(
        'reward_allocations',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('github_repo_id', sa.BigInteger(), nullable=False),
        sa.Column('issue_id', sa.BigInteger(), nullable=False),
        sa.Column('currency', currency, nullable=False),
        sa.Column('amount', sa.Numeric(38, 18), nullable=False),
        sa.Column('recipient_wallet', sa.String(length=64), nullable=False),
        sa.Column('approver_id', sa.Integer(), nullable=False),
        sa.Column('attempt', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=200), nullable=False),
        sa.Column('status', allocation_status, nullable=False),
        sa.Column('chain_tx_hash', sa.String(length=80), nullable=True),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('github_repo_id', 'issue_id', 'currency', 'attempt', name='uq_allocation_attempt'),
    )
    op.create_index('ix_reward_allocations_github_repo_id', 'reward_allocations', ['github_repo_id'])
    op.create_index('ix_reward_allocations_idempotency_key', 'reward_allocations', ['idempotency_key'], unique=True)
    op.create_index('ix_reward_allocations_status', 'reward_allocations', ['status'])

    op.create_table(
        'chain_operations',
        sa.Column('idempotency_key', sa.String(length=200), primary_key=True),
        sa.Column('operation', sa.String(length=20), nullable=False),
        sa.Column('fingerprint', sa.String(length=64), nullable=False),
        sa.Column('status', chain_operation_status, nullable=False),
        sa.Column('tx_hash', sa.String(length=80), nullable=True),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('chain_operations')
    op.drop_index('ix_reward_allocations_status', table_name='reward_allocations')
    op.drop_index('ix_reward_allocations_idempotency_key', table_name='reward_allocations')
    op.drop_index('ix_reward_allocations_github_repo_id', table_name='reward_allocations')
    op.drop_table('reward_allocations')
    op.drop_index('ix_funding_window_counters_subject_id', table_name='funding_window_counters')
    op.drop_table('funding_window_counters')
    op.drop_index('ix_repository_registrations_installation_id', table_name='repository_registrations')
    op.drop_index('ix_repository_registrations_registering_user_id', table_name='repository_registrations')
    op.drop_index('ix_repository_registrations_full_name', table_name='repository_registrations')
    op.drop_index('ix_repository_registrations_github_repo_id', table_name='repository_registrations')
    op.drop_table('repository_registrations')
    op.drop_index('ix_installations_owner_login', table_name='installations')
    op.drop_index('ix_installations_github_installation_id', table_name='installations')
    op.drop_table('installations')
    for enum in (chain_operation_status, allocation_status, installation_scope, window_kind, currency):
        enum.drop(op.get_bind(), checkfirst=True)
