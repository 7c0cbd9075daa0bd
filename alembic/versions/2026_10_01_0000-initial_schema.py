"""initial schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import INET, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create accounts, usage ledger and admission audit tables."""

    # ========================================================================
    # Create accounts table
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('external_id', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('subscription_tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('subscription_status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('token_limit', sa.BigInteger(), nullable=False, server_default='100000'),
        sa.Column('tokens_used_current_period', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('period_start_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_item_id', sa.String(255), nullable=True),
        sa.Column('last_usage_reported_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('overage_tokens_reported', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_active_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_used_current_period >= 0', name='ck_tokens_used_non_negative'),
        sa.CheckConstraint('token_limit >= 0', name='ck_token_limit_non_negative'),
        sa.CheckConstraint("subscription_tier IN ('free', 'pro', 'enterprise')", name='ck_subscription_tier'),
        sa.UniqueConstraint('external_id', name='uq_accounts_external_id'),
    )

    # Indexes for accounts
    op.create_index('idx_accounts_tier', 'accounts', ['subscription_tier'])
    op.create_index('idx_accounts_period_start', 'accounts', ['period_start_date'])
    op.create_index(
        'idx_accounts_stripe_customer', 'accounts', ['stripe_customer_id'],
        postgresql_where=sa.text('stripe_customer_id IS NOT NULL'),
    )

    # ========================================================================
    # Create usage_records table
    # ========================================================================
    op.create_table(
        'usage_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('conversation_id', sa.String(64), nullable=True),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cache_read_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cache_creation_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('model', sa.String(100), nullable=False),
        sa.Column('request_type', sa.String(20), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('error_code', sa.String(50), nullable=True),
        sa.Column('estimated_cost_usd', sa.Numeric(12, 6), nullable=False, server_default='0'),
        sa.Column('billing_period', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            'input_tokens >= 0 AND output_tokens >= 0 AND cache_read_tokens >= 0 AND cache_creation_tokens >= 0',
            name='ck_usage_tokens_non_negative',
        ),
        sa.CheckConstraint("request_type IN ('chat', 'vision', 'multi_context')", name='ck_usage_request_type'),
    )

    op.create_index('idx_usage_account_period', 'usage_records', ['account_id', 'billing_period'])
    op.create_index('idx_usage_account_created', 'usage_records', ['account_id', 'created_at'])
    op.create_index(
        'idx_usage_conversation', 'usage_records', ['conversation_id'],
        postgresql_where=sa.text('conversation_id IS NOT NULL'),
    )

    # ========================================================================
    # Create rate_limit_events table (admission audit trail)
    # ========================================================================
    op.create_table(
        'rate_limit_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('ip_address', INET(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "event_type IN ('request', 'rate_limited', 'quota_exceeded')",
            name='ck_rate_limit_event_type',
        ),
    )

    op.create_index(
        'idx_rate_limit_events_account_created', 'rate_limit_events', ['account_id', 'created_at']
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('rate_limit_events')
    op.drop_table('usage_records')
    op.drop_table('accounts')
