"""Billing schema: users, subscriptions, webhook ledger, email log

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False),

        # Billing state
        sa.Column('tier', sa.String(16), server_default='trial', nullable=False),
        sa.Column('trial_end', sa.DateTime(timezone=True)),
        sa.Column('trial_reminder_sent', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('last_upgrade_reminder', sa.DateTime(timezone=True)),

        # Newsletter preferences
        sa.Column('perspective', sa.String(16), server_default='calm', nullable=False),
        sa.Column('locale', sa.String(16), server_default='en-US', nullable=False),
        sa.Column('focus_areas', sa.JSON, nullable=False),
        sa.Column('sun_sign', sa.String(16)),
        sa.Column('rising_sign', sa.String(16)),
        sa.Column('birth_location', sa.String(255), server_default='Unknown', nullable=False),
        sa.Column('timezone', sa.String(64), server_default='UTC', nullable=False),
        sa.Column('email_status', sa.String(16), server_default='active', nullable=False),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_tier', 'users', ['tier'])
    op.create_index('ix_users_trial_end', 'users', ['trial_end'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),

        # Stripe IDs
        sa.Column('stripe_customer_id', sa.String(255)),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),

        sa.Column('status', sa.String(16), server_default='active', nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default=sa.false(), nullable=False),

        # Stripe event.created of the newest event applied to this row
        sa.Column('last_event_created', sa.BigInteger),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])
    op.create_index(
        'ix_subscriptions_stripe_subscription_id',
        'subscriptions',
        ['stripe_subscription_id'],
        unique=True,
    )

    op.create_table(
        'webhook_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    # Index for cleanup queries (delete events older than X days)
    op.create_index('ix_webhook_events_processed_at', 'webhook_events', ['processed_at'])

    op.create_table(
        'email_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('template', sa.String(64), nullable=False),
        sa.Column('status', sa.String(16), server_default='pending', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_email_logs_user_id', 'email_logs', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_email_logs_user_id', table_name='email_logs')
    op.drop_table('email_logs')
    op.drop_index('ix_webhook_events_processed_at', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_subscriptions_stripe_subscription_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_stripe_customer_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_trial_end', table_name='users')
    op.drop_index('ix_users_tier', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
