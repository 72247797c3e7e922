"""credits ledger schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create profiles, credit sources, credit transactions and payment records."""

    # ========================================================================
    # Create profiles table
    # ========================================================================
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('plan', sa.String(50), nullable=True),
        sa.Column('subscription_status', sa.String(20), nullable=True),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_period', sa.String(20), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint(
            "subscription_status IS NULL OR subscription_status IN "
            "('active', 'trialing', 'cancelled', 'past_due', 'expired')",
            name='ck_profiles_subscription_status',
        ),
    )
    op.create_index('idx_profiles_subscription_expires_at', 'profiles', ['subscription_expires_at'])

    # ========================================================================
    # Create credit_sources table
    # ========================================================================
    op.create_table(
        'credit_sources',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('profile_id', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('initial_amount', sa.BigInteger(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('pack_id', sa.String(50), nullable=True),
        sa.Column('billing_cycle_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount >= 0', name='ck_credit_sources_amount_non_negative'),
        sa.CheckConstraint('amount <= initial_amount', name='ck_credit_sources_amount_le_initial'),
        sa.CheckConstraint("type IN ('monthly', 'pack')", name='ck_credit_sources_type'),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], name='fk_credit_sources_profile', ondelete='CASCADE'),
    )
    op.create_index('idx_credit_sources_profile_expires', 'credit_sources', ['profile_id', 'expires_at'])
    op.create_index('idx_credit_sources_profile_type', 'credit_sources', ['profile_id', 'type'])

    # ========================================================================
    # Create credit_transactions table
    # ========================================================================
    op.create_table(
        'credit_transactions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('profile_id', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('operation', sa.String(100), nullable=True),
        sa.Column('source_id', UUID(as_uuid=True), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('balance_after >= 0', name='ck_credit_transactions_balance_non_negative'),
        sa.CheckConstraint(
            "type IN ('allocation', 'pack_purchase', 'consumption', 'expiration', 'adjustment')",
            name='ck_credit_transactions_type',
        ),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], name='fk_credit_transactions_profile', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['source_id'], ['credit_sources.id'], name='fk_credit_transactions_source', ondelete='SET NULL'),
    )
    op.create_index('idx_credit_transactions_profile_created', 'credit_transactions', ['profile_id', 'created_at'])
    op.create_index('idx_credit_transactions_profile_type', 'credit_transactions', ['profile_id', 'type'])

    # ========================================================================
    # Create payment_records table
    # ========================================================================
    op.create_table(
        'payment_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('profile_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_transaction_id', sa.String(255), nullable=False),
        sa.Column('provider_order_id', sa.String(255), nullable=True),
        sa.Column('payment_type', sa.String(20), nullable=False),
        sa.Column('plan', sa.String(50), nullable=True),
        sa.Column('pack_id', sa.String(50), nullable=True),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('provider', 'provider_transaction_id', name='uq_payment_records_provider_txn'),
        sa.CheckConstraint("status IN ('pending', 'completed')", name='ck_payment_records_status'),
        sa.CheckConstraint("payment_type IN ('pack', 'subscription')", name='ck_payment_records_payment_type'),
        sa.ForeignKeyConstraint(['profile_id'], ['profiles.id'], name='fk_payment_records_profile', ondelete='CASCADE'),
    )
    op.create_index('idx_payment_records_provider_order', 'payment_records', ['provider_order_id'])
    op.create_index('idx_payment_records_profile', 'payment_records', ['profile_id'])


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table('payment_records')
    op.drop_table('credit_transactions')
    op.drop_table('credit_sources')
    op.drop_table('profiles')
