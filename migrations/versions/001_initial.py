"""initial

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users (seekers and providers)
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(), nullable=True),
        sa.Column('subscription_tier', sa.String(), nullable=False, server_default='FREE'),
        sa.Column('subscription_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('free_contacts_remaining', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('free_contacts_reset_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('free_contacts_remaining >= 0', name='ck_users_remaining_non_negative'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_phone'), 'users', ['phone'], unique=True)

    # Contact unlocks
    op.create_table('contact_unlocks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('target_id', sa.String(), nullable=False),
        sa.Column('target_kind', sa.String(), nullable=False),
        sa.Column('unlocked_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'target_id', name='uq_unlock_user_target')
    )

    # Subscription payments (idempotency ledger)
    op.create_table('subscription_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payment_reference', sa.String(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('tier_code', sa.String(), nullable=False),
        sa.Column('amount_paid', sa.BigInteger(), nullable=True),
        sa.Column('applied_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_subscription_payments_payment_reference'), 'subscription_payments', ['payment_reference'], unique=True)

    # Provider profiles
    op.create_table('provider_profiles',
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('business_name', sa.String(), nullable=False),
        sa.Column('service_type', sa.String(), nullable=False),
        sa.Column('rating', sa.Numeric(3, 2), nullable=False, server_default='0'),
        sa.Column('total_reviews', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('user_id')
    )

    # Bookings
    op.create_table('bookings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=False),
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('service_type', sa.String(), nullable=False),
        sa.Column('scheduled_date', sa.Date(), nullable=False),
        sa.Column('scheduled_time', sa.String(), nullable=True),
        sa.Column('address', sa.String(), nullable=False),
        sa.Column('city', sa.String(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('quoted_amount', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='PENDING'),
        sa.Column('rating', sa.Integer(), nullable=True),
        sa.Column('review', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), nullable=True),
        sa.CheckConstraint('rating IS NULL OR (rating >= 1 AND rating <= 5)', name='ck_bookings_rating_range'),
        sa.ForeignKeyConstraint(['customer_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bookings_provider_status', 'bookings', ['provider_id', 'status'], unique=False)
    op.create_index('ix_bookings_customer', 'bookings', ['customer_id'], unique=False)

    # Commission ledger
    op.create_table('commission_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('booking_id', sa.Integer(), nullable=False),
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('gross_amount', sa.BigInteger(), nullable=False),
        sa.Column('rate_bps', sa.Integer(), nullable=False),
        sa.Column('commission_amount', sa.BigInteger(), nullable=False),
        sa.Column('payout_amount', sa.BigInteger(), nullable=False),
        sa.Column('tier_code', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('commission_amount + payout_amount = gross_amount', name='ck_commission_split'),
        sa.ForeignKeyConstraint(['booking_id'], ['bookings.id'], ),
        sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('booking_id')
    )
    op.create_index(op.f('ix_commission_records_provider_id'), 'commission_records', ['provider_id'], unique=False)

    # Provider balances
    op.create_table('provider_balances',
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('available', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('pending', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint('available >= 0', name='ck_balance_available_non_negative'),
        sa.CheckConstraint('pending >= 0', name='ck_balance_pending_non_negative'),
        sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('provider_id')
    )

    # Withdrawals
    op.create_table('withdrawals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('reference', sa.String(), nullable=False),
        sa.Column('provider_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('method', sa.String(), nullable=False),
        sa.Column('account_ref', sa.String(), nullable=False),
        sa.Column('account_name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='PENDING'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['provider_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_withdrawals_reference'), 'withdrawals', ['reference'], unique=True)
    op.create_index(op.f('ix_withdrawals_provider_id'), 'withdrawals', ['provider_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_withdrawals_provider_id'), table_name='withdrawals')
    op.drop_index(op.f('ix_withdrawals_reference'), table_name='withdrawals')
    op.drop_table('withdrawals')
    op.drop_table('provider_balances')
    op.drop_index(op.f('ix_commission_records_provider_id'), table_name='commission_records')
    op.drop_table('commission_records')
    op.drop_index('ix_bookings_customer', table_name='bookings')
    op.drop_index('ix_bookings_provider_status', table_name='bookings')
    op.drop_table('bookings')
    op.drop_table('provider_profiles')
    op.drop_index(op.f('ix_subscription_payments_payment_reference'), table_name='subscription_payments')
    op.drop_table('subscription_payments')
    op.drop_table('contact_unlocks')
    op.drop_index(op.f('ix_users_phone'), table_name='users')
    op.drop_table('users')
