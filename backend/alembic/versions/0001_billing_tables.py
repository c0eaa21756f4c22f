"""Create subscriptions and webhook_events tables

Revision ID: 0001_billing_tables
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_billing_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the subscription state and webhook dedup tables."""

    op.create_table(
        'subscriptions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),

        # Subscription state
        sa.Column('status', sa.String(20), server_default='active', nullable=False),
        sa.Column('plan', sa.String(20), server_default='Free', nullable=False),
        sa.Column('scheduled_plan', sa.String(20)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),

        # Provider references
        sa.Column('payment_provider', sa.String(20)),
        sa.Column('payment_authorization_token', sa.String(255)),
        sa.Column('provider_customer_ref', sa.String(255)),
        sa.Column('provider_subscription_ref', sa.String(255)),

        # Contact details for notifications
        sa.Column('email', sa.String(255)),
        sa.Column('name', sa.String(100)),

        sa.Column('session_version', sa.Integer, server_default='1', nullable=False),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'], unique=True)
    op.create_index('ix_subscriptions_provider_customer_ref', 'subscriptions', ['provider_customer_ref'])
    op.create_index('ix_subscriptions_provider_subscription_ref', 'subscriptions', ['provider_subscription_ref'])

    # Partial index for the billing sweep query
    op.create_index(
        'ix_subscriptions_billing_due',
        'subscriptions',
        ['current_period_end'],
        postgresql_where=sa.text("plan <> 'Free' AND current_period_end IS NOT NULL"),
    )

    op.create_table(
        'webhook_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('event_type', sa.String(100)),
        sa.Column(
            'processed_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.UniqueConstraint('event_id', 'provider', name='uq_webhook_events_event_provider'),
    )
    # Index for cleanup queries (delete events older than the retention window)
    op.create_index(
        'ix_webhook_events_processed_at',
        'webhook_events',
        ['processed_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_webhook_events_processed_at', table_name='webhook_events')
    op.drop_table('webhook_events')
    op.drop_index('ix_subscriptions_billing_due', table_name='subscriptions')
    op.drop_index('ix_subscriptions_provider_subscription_ref', table_name='subscriptions')
    op.drop_index('ix_subscriptions_provider_customer_ref', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_id', table_name='subscriptions')
    op.drop_table('subscriptions')
