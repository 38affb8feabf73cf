"""Initial DM-to-Buy schema.

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 09:00:00.000000

WHAT:
    Creates every table of the DM pipeline:
    - shops, settings, brand_voice, meta_auth, post_product_map (tenant config)
    - messages, links_sent, followups, clicks, attribution (event ledger)
    - outbound_dm_queue, dm_rate_limit (delivery)

WHY:
    The unique constraints created here are the system's only concurrency
    control: messages(shop_id, external_id), links_sent(link_id),
    followups(shop_id, message_id, link_id), dm_rate_limit(shop_id, window_start).
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261018_000001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # TENANTS
    # =========================================================================
    op.create_table(
        'shops',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('shopify_domain', sa.String(), nullable=False),
        sa.Column('plan', sa.String(), nullable=False, server_default='FREE'),
        sa.Column('monthly_cap', sa.Integer(), nullable=False, server_default='25'),
        sa.Column('priority_support', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('usage_month', sa.DateTime(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_shops_shopify_domain', 'shops', ['shopify_domain'], unique=True)

    op.create_table(
        'settings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False, unique=True),
        sa.Column('dm_automation_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('comment_automation_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('followup_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('channel_preference', sa.String(), nullable=False, server_default='dm'),
        sa.Column('enabled_post_ids', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'brand_voice',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False, unique=True),
        sa.Column('tone', sa.String(), nullable=False, server_default='friendly'),
        sa.Column('custom_instruction', sa.Text(), nullable=True),
    )

    op.create_table(
        'meta_auth',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False, unique=True),
        sa.Column('ig_business_id', sa.String(), nullable=True),
        sa.Column('page_id', sa.String(), nullable=True),
        sa.Column('access_token_enc', sa.Text(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_meta_auth_ig_business_id', 'meta_auth', ['ig_business_id'])
    op.create_index('ix_meta_auth_page_id', 'meta_auth', ['page_id'])

    op.create_table(
        'post_product_map',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('ig_media_id', sa.String(), nullable=False),
        sa.Column('product_id', sa.String(), nullable=False),
        sa.Column('variant_id', sa.String(), nullable=True),
        sa.Column('product_name', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('shop_id', 'ig_media_id', name='uq_post_product_map_media'),
    )

    # =========================================================================
    # EVENT LEDGER
    # =========================================================================
    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('channel', sa.String(length=7), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('from_user_id', sa.String(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('ai_intent', sa.String(), nullable=True),
        sa.Column('ai_confidence', sa.Float(), nullable=True),
        sa.Column('sentiment', sa.String(), nullable=True),
        sa.Column('last_user_message_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('shop_id', 'external_id', name='uq_messages_shop_external'),
    )
    op.create_index('ix_messages_followup_window', 'messages', ['shop_id', 'channel', 'last_user_message_at'])

    op.create_table(
        'links_sent',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=True),
        sa.Column('link_id', sa.String(), nullable=False),
        sa.Column('url', sa.Text(), nullable=True),
        sa.Column('reply_text', sa.Text(), nullable=True),
        sa.Column('product_id', sa.String(), nullable=True),
        sa.Column('variant_id', sa.String(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('link_id', name='uq_links_sent_link_id'),
    )
    op.create_index('ix_links_sent_shop_message', 'links_sent', ['shop_id', 'message_id'])

    op.create_table(
        'followups',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('message_id', sa.Integer(), sa.ForeignKey('messages.id'), nullable=False),
        sa.Column('link_id', sa.String(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('shop_id', 'message_id', 'link_id', name='uq_followups_shop_message_link'),
    )

    op.create_table(
        'clicks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('link_id', sa.String(), nullable=False),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('ip', sa.String(), nullable=True),
        sa.Column('clicked_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_clicks_link_id', 'clicks', ['link_id'])

    op.create_table(
        'attribution',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('link_id', sa.String(), nullable=True),
        sa.Column('channel', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_attribution_shop_id', 'attribution', ['shop_id'])
    op.create_index('ix_attribution_order_id', 'attribution', ['order_id'])
    op.create_index('ix_attribution_link_id', 'attribution', ['link_id'])

    # =========================================================================
    # DELIVERY
    # =========================================================================
    op.create_table(
        'outbound_dm_queue',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('ig_user_id', sa.String(), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=10), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('not_before', sa.DateTime(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processing_since', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_outbound_dm_queue_due', 'outbound_dm_queue', ['status', 'not_before'])
    op.create_index('ix_outbound_dm_queue_shop_created', 'outbound_dm_queue', ['shop_id', 'created_at'])

    op.create_table(
        'dm_rate_limit',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('shop_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('shops.id'), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('count', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('shop_id', 'window_start', name='uq_dm_rate_limit_window'),
    )


def downgrade() -> None:
    op.drop_table('dm_rate_limit')
    op.drop_index('ix_outbound_dm_queue_shop_created', table_name='outbound_dm_queue')
    op.drop_index('ix_outbound_dm_queue_due', table_name='outbound_dm_queue')
    op.drop_table('outbound_dm_queue')
    op.drop_index('ix_attribution_link_id', table_name='attribution')
    op.drop_index('ix_attribution_order_id', table_name='attribution')
    op.drop_index('ix_attribution_shop_id', table_name='attribution')
    op.drop_table('attribution')
    op.drop_index('ix_clicks_link_id', table_name='clicks')
    op.drop_table('clicks')
    op.drop_table('followups')
    op.drop_index('ix_links_sent_shop_message', table_name='links_sent')
    op.drop_table('links_sent')
    op.drop_index('ix_messages_followup_window', table_name='messages')
    op.drop_table('messages')
    op.drop_table('post_product_map')
    op.drop_index('ix_meta_auth_page_id', table_name='meta_auth')
    op.drop_index('ix_meta_auth_ig_business_id', table_name='meta_auth')
    op.drop_table('meta_auth')
    op.drop_table('brand_voice')
    op.drop_table('settings')
    op.drop_index('ix_shops_shopify_domain', table_name='shops')
    op.drop_table('shops')
