"""Inbound message and click persistence.

`log_message` is idempotent on (shop_id, external_id): a duplicate webhook
delivery gets the original row back instead of a second insert.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dmtobuy.models import ChannelEnum, Click, LinkSent, Message

logger = logging.getLogger(__name__)


def log_message(
    db: Session,
    shop_id: UUID,
    channel: ChannelEnum | str,
    external_id: str,
    from_user_id: Optional[str] = None,
    text: Optional[str] = None,
    last_user_message_at: Optional[datetime] = None,
) -> Message:
    """Insert an inbound message, or return the existing row for the same event."""
    message = Message(
        shop_id=shop_id,
        channel=ChannelEnum(channel),
        external_id=external_id,
        from_user_id=from_user_id,
        text=text,
        last_user_message_at=last_user_message_at,
    )
    db.add(message)
    try:
        db.commit()
        return message
    except IntegrityError:
        db.rollback()

    existing = (
        db.query(Message)
        .filter(Message.shop_id == shop_id, Message.external_id == external_id)
        .one()
    )
    logger.info(
        "[MESSAGES] Duplicate delivery resolved to existing message",
        extra={"shop_id": str(shop_id), "external_id": external_id, "message_id": existing.id},
    )
    return existing


def update_message_ai(
    db: Session,
    message_id: int,
    ai_intent: Optional[str],
    ai_confidence: Optional[float],
    sentiment: Optional[str],
) -> None:
    """Store classifier output. The only post-insert update a message gets."""
    message = db.get(Message, message_id)
    if message is None:
        raise LookupError(f"Message {message_id} not found")
    message.ai_intent = ai_intent
    message.ai_confidence = ai_confidence
    message.sentiment = sentiment
    db.commit()


def get_link_destination(db: Session, link_id: str) -> Optional[str]:
    row = db.query(LinkSent.url).filter(LinkSent.link_id == link_id).first()
    return row.url if row else None


def log_click(db: Session, link_id: str, user_agent: Optional[str] = None, ip: Optional[str] = None) -> Click:
    click = Click(link_id=link_id, user_agent=user_agent, ip=ip)
    db.add(click)
    db.commit()
    return click
