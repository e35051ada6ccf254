"""Add order delivery history

Revision ID: 002_order_deliveries
Revises: 001_initial
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '002_order_deliveries'
down_revision = '001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'order_deliveries',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id'), nullable=False),
        sa.Column('seller_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('buyer_id', sa.Uuid(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('revision_number', sa.Integer(), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('files', sa.JSON(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('order_id', 'revision_number', name='uq_order_deliveries_revision'),
    )
    op.create_index('ix_order_deliveries_order_id', 'order_deliveries', ['order_id'])


def downgrade() -> None:
    op.drop_index('ix_order_deliveries_order_id', table_name='order_deliveries')
    op.drop_table('order_deliveries')
