"""SQLAlchemy ORM models and enums.

This module defines the shared relational schema. Tenants (shops) use UUID
primary keys; event tables use integer keys because ordering by id matters
(e.g. "most recent link sent per message" is the highest `links_sent.id`).

The unique constraints on `messages`, `links_sent`, `followups` and
`dm_rate_limit` are the concurrency control of the whole system. Do not drop
or widen them.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class PlanEnum(str, enum.Enum):
    free = "FREE"
    growth = "GROWTH"
    pro = "PRO"


class ChannelEnum(str, enum.Enum):
    dm = "dm"
    comment = "comment"


class ChannelPreferenceEnum(str, enum.Enum):
    dm = "dm"
    comment = "comment"
    both = "both"


class ToneEnum(str, enum.Enum):
    friendly = "friendly"
    expert = "expert"
    casual = "casual"


class QueueStatusEnum(str, enum.Enum):
    """Outbound queue item lifecycle.

    pending -> processing -> sent | failed
    `sent` and `failed` are terminal; rows are kept for the overview API.
    """
    pending = "pending"
    processing = "processing"
    sent = "sent"
    failed = "failed"


# Tenant models --------------------------------------------------

class Shop(Base):
    """Shopify store that installed the app (the tenant).

    WHAT: Plan tier, monthly usage counter and install state
    WHY: Every other row is scoped by shop_id; usage caps and feature gates
         are read from here on each automation decision
    """
    __tablename__ = "shops"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shopify_domain = Column(String, nullable=False, unique=True, index=True)  # e.g. "mystore.myshopify.com"

    plan = Column(String, nullable=False, default=PlanEnum.free.value)
    monthly_cap = Column(Integer, nullable=False, default=25)
    priority_support = Column(Boolean, nullable=False, default=False)

    # Lazily rolled over to the current month on first read (read-repair)
    usage_count = Column(Integer, nullable=False, default=0)
    usage_month = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Reinstall flips this back to True; shops are never recreated
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    settings = relationship("ShopSettings", back_populates="shop", uselist=False, cascade="all, delete-orphan")
    brand_voice = relationship("BrandVoice", back_populates="shop", uselist=False, cascade="all, delete-orphan")
    meta_auth = relationship("MetaAuth", back_populates="shop", uselist=False, cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.shopify_domain} ({self.plan})"


class ShopSettings(Base):
    """Per-shop automation toggles.

    Plan gating is applied by `shop_service.get_settings` / `update_settings`,
    not here: stored values may be stale after a downgrade and are corrected
    on read.
    """
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False, unique=True)

    dm_automation_enabled = Column(Boolean, nullable=False, default=True)
    comment_automation_enabled = Column(Boolean, nullable=False, default=False)
    followup_enabled = Column(Boolean, nullable=False, default=False)
    channel_preference = Column(String, nullable=False, default=ChannelPreferenceEnum.dm.value)
    # Instagram media ids that comment automation is limited to (null = all posts)
    enabled_post_ids = Column(JSON, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shop = relationship("Shop", back_populates="settings")


class BrandVoice(Base):
    __tablename__ = "brand_voice"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False, unique=True)
    tone = Column(String, nullable=False, default=ToneEnum.friendly.value)
    custom_instruction = Column(Text, nullable=True)

    shop = relationship("Shop", back_populates="brand_voice")


class MetaAuth(Base):
    """Instagram credentials for sending DMs.

    Tokens are stored Fernet-encrypted (see `dmtobuy.security`). Issuing and
    refreshing them belongs to the OAuth flow, which lives outside this service.
    """
    __tablename__ = "meta_auth"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False, unique=True)
    ig_business_id = Column(String, nullable=True, index=True)
    page_id = Column(String, nullable=True, index=True)
    access_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shop = relationship("Shop", back_populates="meta_auth")


# Event models ---------------------------------------------------

class Message(Base):
    """One inbound event (DM or comment).

    WHAT: The provider's message/comment plus classifier output
    WHY: Duplicate webhook deliveries must land on the same row, so
         (shop_id, external_id) is unique and inserts resolve conflicts by
         returning the existing row
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("shop_id", "external_id", name="uq_messages_shop_external"),
        Index("ix_messages_followup_window", "shop_id", "channel", "last_user_message_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    channel = Column(Enum(ChannelEnum, values_callable=_enum_values, native_enum=False), nullable=False)
    external_id = Column(String, nullable=False)  # Instagram mid / comment id
    from_user_id = Column(String, nullable=True)  # IGSID of the sender
    text = Column(Text, nullable=True)

    # Filled after classification (the only post-hoc update allowed)
    ai_intent = Column(String, nullable=True)
    ai_confidence = Column(Float, nullable=True)
    sentiment = Column(String, nullable=True)

    last_user_message_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    links = relationship("LinkSent", back_populates="message")

    def __str__(self):
        return f"{self.channel} {self.external_id}"


class LinkSent(Base):
    """Claim record: the durable decision to send one automated reply.

    `link_id` is derived from the triggering external id (see
    `claim_ledger.derive_claim_key`), never random. Inserting a duplicate
    `link_id` fails on the unique constraint; that failure means "someone
    already claimed this event".
    """
    __tablename__ = "links_sent"
    __table_args__ = (
        UniqueConstraint("link_id", name="uq_links_sent_link_id"),
        Index("ix_links_sent_shop_message", "shop_id", "message_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=True)
    link_id = Column(String, nullable=False)
    url = Column(Text, nullable=True)  # NULL = replied without a checkout link
    reply_text = Column(Text, nullable=True)
    product_id = Column(String, nullable=True)
    variant_id = Column(String, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow)

    message = relationship("Message", back_populates="links")

    def __str__(self):
        return self.link_id


class Followup(Base):
    __tablename__ = "followups"
    __table_args__ = (
        # Inserted before the send: this constraint is the follow-up guard
        UniqueConstraint("shop_id", "message_id", "link_id", name="uq_followups_shop_message_link"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False)
    link_id = Column(String, nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow)


class Click(Base):
    """Append-only click event. Multiple clicks per link are valid signal."""
    __tablename__ = "clicks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(String, nullable=False, index=True)
    user_agent = Column(Text, nullable=True)
    ip = Column(String, nullable=True)
    clicked_at = Column(DateTime, default=datetime.utcnow)


class Attribution(Base):
    """Purchase attributed (or not) to a link.

    Append-only. Order-id idempotency is the webhook sender's concern.
    """
    __tablename__ = "attribution"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False, index=True)
    order_id = Column(String, nullable=False, index=True)
    link_id = Column(String, nullable=True, index=True)
    channel = Column(String, nullable=True)  # dm, comment or NULL when unknown
    amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String, nullable=False, default="USD")
    created_at = Column(DateTime, default=datetime.utcnow)


# Delivery models ------------------------------------------------

class OutboundQueueItem(Base):
    """Durable unit of DM delivery work.

    Mutated only by the queue worker (and the immediate-delivery attempt in
    `outbound_queue.dispatch_dm`). Status changes go through status-guarded
    UPDATEs so two workers never own the same row.
    """
    __tablename__ = "outbound_dm_queue"
    __table_args__ = (
        Index("ix_outbound_dm_queue_due", "status", "not_before"),
        Index("ix_outbound_dm_queue_shop_created", "shop_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    ig_user_id = Column(String, nullable=False)  # recipient
    text = Column(Text, nullable=False)
    status = Column(
        Enum(QueueStatusEnum, values_callable=_enum_values, native_enum=False),
        nullable=False,
        default=QueueStatusEnum.pending,
    )
    attempts = Column(Integer, nullable=False, default=0)
    not_before = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_error = Column(Text, nullable=True)
    processing_since = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    def __str__(self):
        return f"DM {self.id} -> {self.ig_user_id} ({self.status})"


class DmRateLimit(Base):
    """Per-shop send counter for one minute window.

    Incremented with insert-or-increment so concurrent senders share the
    budget without any in-process state.
    """
    __tablename__ = "dm_rate_limit"
    __table_args__ = (
        UniqueConstraint("shop_id", "window_start", name="uq_dm_rate_limit_window"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    window_start = Column(DateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)


class PostProductMap(Base):
    """Which product an Instagram post sells.

    Comment automation uses it to pick the product for the checkout link.
    Posts without a mapping get a homepage link.
    """
    __tablename__ = "post_product_map"
    __table_args__ = (
        UniqueConstraint("shop_id", "ig_media_id", name="uq_post_product_map_media"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    shop_id = Column(UUID(as_uuid=True), ForeignKey("shops.id"), nullable=False)
    ig_media_id = Column(String, nullable=False)
    product_id = Column(String, nullable=False)  # gid://shopify/Product/123 or 123
    variant_id = Column(String, nullable=True)   # gid://shopify/ProductVariant/456 or 456
    product_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
