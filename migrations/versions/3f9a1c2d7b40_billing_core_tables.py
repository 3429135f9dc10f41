"""billing core: accounts, subscriptions, webhook ledger, payments, lead claims

Revision ID: 3f9a1c2d7b40
Revises:
Create Date: 2026-10-17 09:12:31.518204

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '3f9a1c2d7b40'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade():
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('billing_email', sa.String(length=320), nullable=True),
        sa.Column('tier', sa.String(length=20), server_default='free', nullable=False),
        sa.Column('tier_expires_at', sa.DateTime(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=True),
        sa.Column('credits_used', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('credits_reset_at', sa.DateTime(), nullable=False),
        sa.Column('failed_count', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('grace_period_end', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("tier IN ('free','basic','pro','enterprise')", name='ck_accounts_tier_valid'),
        sa.CheckConstraint('credits_used >= 0', name='ck_accounts_credits_used_nonneg'),
        sa.CheckConstraint('failed_count >= 0', name='ck_accounts_failed_count_nonneg'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('accounts', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_accounts_stripe_customer_id'), ['stripe_customer_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_accounts_stripe_subscription_id'), ['stripe_subscription_id'], unique=False)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(length=64), nullable=False),
        sa.Column('tier', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=32), server_default=sa.text("'active'"), nullable=False),
        sa.Column('monthly_price_cents', sa.Integer(), nullable=True),
        sa.Column('cancel_at', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("status IN ('active','past_due','canceled')", name='ck_subscriptions_status_valid'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_subscriptions_account_id'), ['account_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_stripe_subscription_id'), ['stripe_subscription_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_subscriptions_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_subscriptions_current_period_end'), ['current_period_end'], unique=False)

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('payload', _json(), nullable=False),
        sa.Column('status', sa.String(length=16), server_default=sa.text("'pending'"), nullable=False),
        sa.Column('customer_ref', sa.String(length=64), nullable=True),
        sa.Column('subscription_ref', sa.String(length=64), nullable=True),
        sa.Column('invoice_ref', sa.String(length=64), nullable=True),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('1'), nullable=False),
        sa.Column('error_message', sa.String(length=500), nullable=True),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processing_started_at', sa.DateTime(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending','processing','processed','failed')",
            name='ck_webhook_events_status_valid',
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_webhook_events_event_id'), ['event_id'], unique=True)
        batch_op.create_index(batch_op.f('ix_webhook_events_type'), ['type'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_customer_ref'), ['customer_ref'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_subscription_ref'), ['subscription_ref'], unique=False)
        batch_op.create_index(batch_op.f('ix_webhook_events_invoice_ref'), ['invoice_ref'], unique=False)

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=24), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=3), server_default=sa.text("'usd'"), nullable=False),
        sa.Column('status', sa.String(length=16), server_default=sa.text("'pending'"), nullable=False),
        sa.Column('stripe_payment_intent_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=64), nullable=True),
        sa.Column('stripe_refund_id', sa.String(length=64), nullable=True),
        sa.Column('refund_of_id', sa.Integer(), nullable=True),
        sa.Column('source_event_id', sa.String(length=255), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('meta', _json(), nullable=False),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('pending','succeeded','failed')", name='ck_payments_status_valid'),
        sa.CheckConstraint('amount_cents >= 0', name='ck_payments_amount_nonneg'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['refund_of_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_event_id'),
    )
    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_payments_account_id'), ['account_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_kind'), ['kind'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_status'), ['status'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_stripe_payment_intent_id'), ['stripe_payment_intent_id'], unique=False)
        batch_op.create_index(batch_op.f('ix_payments_stripe_invoice_id'), ['stripe_invoice_id'], unique=False)

    op.create_table(
        'lead_claims',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('account_id', sa.Integer(), nullable=False),
        sa.Column('lead_id', sa.String(length=64), nullable=False),
        sa.Column('payment_required', sa.Boolean(), nullable=False),
        sa.Column('credit_source', sa.String(length=8), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('charge_reference', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint("credit_source IN ('quota','paid')", name='ck_lead_claims_source_valid'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'lead_id', name='uq_lead_claims_account_lead'),
    )
    with op.batch_alter_table('lead_claims', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_lead_claims_account_id'), ['account_id'], unique=False)


def downgrade():
    with op.batch_alter_table('lead_claims', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_lead_claims_account_id'))
    op.drop_table('lead_claims')

    with op.batch_alter_table('payments', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_payments_stripe_invoice_id'))
        batch_op.drop_index(batch_op.f('ix_payments_stripe_payment_intent_id'))
        batch_op.drop_index(batch_op.f('ix_payments_status'))
        batch_op.drop_index(batch_op.f('ix_payments_kind'))
        batch_op.drop_index(batch_op.f('ix_payments_account_id'))
    op.drop_table('payments')

    with op.batch_alter_table('webhook_events', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_webhook_events_invoice_ref'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_subscription_ref'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_customer_ref'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_status'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_type'))
        batch_op.drop_index(batch_op.f('ix_webhook_events_event_id'))
    op.drop_table('webhook_events')

    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_subscriptions_current_period_end'))
        batch_op.drop_index(batch_op.f('ix_subscriptions_status'))
        batch_op.drop_index(batch_op.f('ix_subscriptions_stripe_subscription_id'))
        batch_op.drop_index(batch_op.f('ix_subscriptions_account_id'))
    op.drop_table('subscriptions')

    with op.batch_alter_table('accounts', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_accounts_stripe_subscription_id'))
        batch_op.drop_index(batch_op.f('ix_accounts_stripe_customer_id'))
    op.drop_table('accounts')
