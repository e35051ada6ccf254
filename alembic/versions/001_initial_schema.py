"""Initial schema - marketplace, orders, ledger

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

OPEN_OFFERS = sa.text("status IN ('pending', 'countered')")


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('username', sa.String(100)),
        sa.Column('role', sa.String(32), nullable=False),
        sa.Column('user_type', sa.String(32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('is_hype_mode', sa.Boolean(), nullable=False),
        sa.Column('payout_account_id', sa.String(255)),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
        sa.Column('deactivated_at', sa.DateTime()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    # Listings table
    op.create_table(
        'listings',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('price', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('listing_type', sa.String(32), nullable=False),
        sa.Column('availability', sa.String(32), nullable=False),
        sa.Column('max_revisions', sa.Integer(), nullable=False),
        sa.Column('sold_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_listings_owner_id', 'listings', ['owner_id'])

    # Offers table
    op.create_table(
        'offers',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('listing_id', sa.Uuid(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('buyer_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('message', sa.Text()),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('counter_amount', sa.BigInteger()),
        sa.Column('counter_message', sa.Text()),
        sa.Column('countered_at', sa.DateTime()),
        sa.Column('responded_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_offers_listing_id', 'offers', ['listing_id'])
    op.create_index('ix_offers_buyer_id', 'offers', ['buyer_id'])
    op.create_index('ix_offers_status', 'offers', ['status'])
    op.create_index('ix_offers_expires_at', 'offers', ['expires_at'])
    op.create_index(
        'uq_offers_open_buyer_listing', 'offers', ['listing_id', 'buyer_id'],
        unique=True, postgresql_where=OPEN_OFFERS, sqlite_where=OPEN_OFFERS,
    )

    # Orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('listing_id', sa.Uuid(), sa.ForeignKey('listings.id'), nullable=False),
        sa.Column('buyer_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('origin_offer_id', sa.Uuid(), sa.ForeignKey('offers.id'), unique=True),
        sa.Column('order_type', sa.String(32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('platform_fee', sa.BigInteger(), nullable=False),
        sa.Column('seller_amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('payment_ref', sa.String(255), unique=True),
        sa.Column('revisions', sa.Integer(), nullable=False),
        sa.Column('max_revisions', sa.Integer(), nullable=False),
        sa.Column('revision_notes', sa.Text()),
        sa.Column('delivery_message', sa.Text()),
        sa.Column('delivery_files', sa.JSON(), nullable=False),
        sa.Column('dispute_reason', sa.Text()),
        sa.Column('disputed_from', sa.String(32)),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
        sa.Column('paid_at', sa.DateTime()),
        sa.Column('started_at', sa.DateTime()),
        sa.Column('delivered_at', sa.DateTime()),
        sa.Column('completed_at', sa.DateTime()),
        sa.Column('cancelled_at', sa.DateTime()),
        sa.Column('refunded_at', sa.DateTime()),
    )
    op.create_index('ix_orders_listing_id', 'orders', ['listing_id'])
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
    op.create_index('ix_orders_seller_id', 'orders', ['seller_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])

    # Status transition audit trail
    op.create_table(
        'status_transitions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('entity_type', sa.String(32), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('from_status', sa.String(32)),
        sa.Column('to_status', sa.String(32), nullable=False),
        sa.Column('actor_id', sa.Uuid()),
        sa.Column('note', sa.String(500)),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_status_transitions_entity_id', 'status_transitions', ['entity_id'])

    # Seller ledger
    op.create_table(
        'ledger_accounts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False, unique=True),
        sa.Column('available_balance', sa.BigInteger(), nullable=False),
        sa.Column('pending_balance', sa.BigInteger(), nullable=False),
        sa.Column('total_withdrawn', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime()),
        sa.CheckConstraint('available_balance >= 0', name='ck_ledger_available_non_negative'),
        sa.CheckConstraint('pending_balance >= 0', name='ck_ledger_pending_non_negative'),
        sa.CheckConstraint('total_withdrawn >= 0', name='ck_ledger_withdrawn_non_negative'),
    )

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id'), nullable=False, unique=True),
        sa.Column('gross_amount', sa.BigInteger(), nullable=False),
        sa.Column('fee_amount', sa.BigInteger(), nullable=False),
        sa.Column('net_amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('clears_at', sa.DateTime(), nullable=False),
        sa.Column('cleared_at', sa.DateTime()),
        sa.Column('reversed_at', sa.DateTime()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_ledger_entries_seller_id', 'ledger_entries', ['seller_id'])
    op.create_index('ix_ledger_entries_status', 'ledger_entries', ['status'])

    op.create_table(
        'withdrawal_requests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('transfer_id', sa.String(255)),
        sa.Column('failure_reason', sa.String(500)),
        sa.Column('requested_at', sa.DateTime(), nullable=False),
        sa.Column('settled_at', sa.DateTime()),
        sa.Column('updated_at', sa.DateTime()),
    )
    op.create_index('ix_withdrawal_requests_seller_id', 'withdrawal_requests', ['seller_id'])
    op.create_index('ix_withdrawal_requests_status', 'withdrawal_requests', ['status'])

    op.create_table(
        'reconciliation_issues',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id')),
        sa.Column('withdrawal_id', sa.Uuid(), sa.ForeignKey('withdrawal_requests.id')),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('reason', sa.String(500), nullable=False),
        sa.Column('resolved', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reconciliation_issues_seller_id', 'reconciliation_issues', ['seller_id'])

    # Notifications table
    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('event', sa.String(64), nullable=False),
        sa.Column('payload', sa.JSON()),
        sa.Column('is_read', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade() -> None:
    op.drop_table('notifications')
    op.drop_table('reconciliation_issues')
    op.drop_table('withdrawal_requests')
    op.drop_table('ledger_entries')
    op.drop_table('ledger_accounts')
    op.drop_table('status_transitions')
    op.drop_table('orders')
    op.drop_index('uq_offers_open_buyer_listing', table_name='offers')
    op.drop_table('offers')
    op.drop_table('listings')
    op.drop_table('users')
