"""create_marketplace_tables

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    # 订单
    op.create_table(
        'orders',
        sa.Column('id', sa.String(length=64), nullable=False, comment='内部订单ID'),
        sa.Column('listing_id', sa.String(length=64), nullable=False),
        sa.Column('buyer_id', sa.String(length=64), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('offer_id', sa.String(length=64), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, comment='订单状态'),
        sa.Column('payment_method', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('platform_fee', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('seller_amount', sa.Numeric(precision=15, scale=2), nullable=False),
        sa.Column('platform_fee_percent', sa.Numeric(precision=6, scale=4), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('seller_stripe_account_id', sa.String(length=255), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dispute_deadline_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('admin_hold', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('admin_hold_reason', sa.Text(), nullable=True),
        sa.Column('payout_hold_reason', sa.String(length=32), nullable=False, server_default='none'),
        sa.Column('chargeback_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('compliance_violation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('compliance_violation_reason', sa.Text(), nullable=True),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('transfer_permit_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('transfer_permit_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('refund_id', sa.String(length=255), nullable=True),
        sa.Column('listing_title', sa.String(length=500), nullable=True),
        sa.Column('listing_snapshot', sa.JSON(), nullable=True),
        sa.Column('seller_snapshot', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('checkout_session_id'),
        comment='订单表，状态只经由状态机推进',
    )
    op.create_index('ix_orders_listing_id', 'orders', ['listing_id'])
    op.create_index('ix_orders_buyer_id', 'orders', ['buyer_id'])
    op.create_index('ix_orders_seller_id', 'orders', ['seller_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_intent_id', 'orders', ['payment_intent_id'])
    op.create_index('ix_orders_needs_manual_review', 'orders', ['needs_manual_review'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_timeline_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('entry_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=64), nullable=False),
        sa.Column('label', sa.String(length=255), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=False, server_default='system'),
        sa.Column('visibility', sa.String(length=32), nullable=False, server_default='buyer_seller'),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'entry_id', name='uq_order_timeline_entry'),
    )
    op.create_index('ix_order_timeline_events_order_id', 'order_timeline_events', ['order_id'])

    # Listing / Offer
    op.create_table(
        'listings',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('seller_id', sa.String(length=64), nullable=False),
        sa.Column('seller_display_name', sa.String(length=255), nullable=True),
        sa.Column('cover_photo_url', sa.String(length=1024), nullable=True),
        sa.Column('location_label', sa.String(length=255), nullable=True),
        sa.Column('purchase_reserved_by_order_id', sa.String(length=64), nullable=True),
        sa.Column('purchase_reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('purchase_reserved_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('offer_reserved_by_offer_id', sa.String(length=64), nullable=True),
        sa.Column('offer_reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sold_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sold_price_cents', sa.Integer(), nullable=True),
        sa.Column('sale_type', sa.String(length=16), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_reason', sa.String(length=32), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_listings_category', 'listings', ['category'])
    op.create_index('ix_listings_status', 'listings', ['status'])
    op.create_index('ix_listings_seller_id', 'listings', ['seller_id'])
    op.create_index('ix_listings_reserved_until', 'listings', ['purchase_reserved_until'])

    op.create_table(
        'offers',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('listing_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_offers_listing_id', 'offers', ['listing_id'])

    # 拒付
    op.create_table(
        'disputes',
        sa.Column('id', sa.String(length=255), nullable=False, comment='渠道 dispute ID'),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('provider_status', sa.String(length=64), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='usd'),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('funds_withdrawn_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('funds_reinstated_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_disputes_payment_intent_id', 'disputes', ['payment_intent_id'])
    op.create_index('ix_disputes_order_id', 'disputes', ['order_id'])

    # 幂等账本
    op.create_table(
        'webhook_events',
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='渠道事件ID'),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='stripe'),
        sa.Column('event_type', sa.String(length=128), nullable=False),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('dispute_id', sa.String(length=255), nullable=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='recorded'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_checkout_session_id', 'webhook_events', ['checkout_session_id'])
    op.create_index('ix_webhook_events_payment_intent_id', 'webhook_events', ['payment_intent_id'])
    op.create_index('ix_webhook_events_created_at', 'webhook_events', ['created_at'])

    # 副作用 outbox 与下游落点
    op.create_table(
        'side_effect_outbox',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('dedupe_key', sa.String(length=512), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key'),
    )
    op.create_index('ix_outbox_status_id', 'side_effect_outbox', ['status', 'id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('action_type', sa.String(length=64), nullable=False),
        sa.Column('actor_uid', sa.String(length=64), nullable=False),
        sa.Column('actor_role', sa.String(length=32), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('listing_id', sa.String(length=64), nullable=True),
        sa.Column('dispute_id', sa.String(length=255), nullable=True),
        sa.Column('before_state', sa.JSON(), nullable=True),
        sa.Column('after_state', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action_type', 'audit_logs', ['action_type'])
    op.create_index('ix_audit_logs_order_id', 'audit_logs', ['order_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('target_user_id', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('dedupe_key', sa.String(length=512), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key', name='uq_notifications_dedupe'),
    )
    op.create_index('ix_notifications_target_user_id', 'notifications', ['target_user_id'])


def downgrade() -> None:
    for table in (
        'notifications',
        'audit_logs',
        'side_effect_outbox',
        'webhook_events',
        'disputes',
        'offers',
        'listings',
        'order_timeline_events',
        'orders',
    ):
        op.drop_table(table)
