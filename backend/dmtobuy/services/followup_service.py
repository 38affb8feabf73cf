"""Follow-up scheduler: one nudge per replied DM that was never clicked.

WHAT:
    Hourly batch. For every PRO shop with follow-ups enabled, finds DM
    conversations whose last user message is 23-24 hours old, picks the most
    recent link sent for each, and sends one follow-up if nobody clicked it.

WHY:
    Instagram only allows business-initiated messages inside the 24h window
    after the user's last message, so the follow-up must fire just before it
    closes. Hourly runs with a one-hour window see each message once.

EXACTLY ONCE:
    The `followups` row (unique shop/message/link) is inserted BEFORE the
    send. A second run, or an overlapping one, hits the constraint and skips.
    If the send fails afterwards the row stays; the follow-up is not retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dmtobuy.models import ChannelEnum, Click, Followup, LinkSent, Message, Shop
from dmtobuy.plans import plans_with_followups
from dmtobuy.services.instagram_client import DmSender
from dmtobuy.services.outbound_queue import dispatch_dm
from dmtobuy.services.reply_templates import generate_followup_message
from dmtobuy.services.shop_service import get_brand_voice, get_settings
from dmtobuy.telemetry import capture_exception

logger = logging.getLogger(__name__)

WINDOW_START = timedelta(hours=24)
WINDOW_END = timedelta(hours=23)


@dataclass
class FollowupRunResult:
    shops_checked: int = 0
    candidates: int = 0
    sent: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "shops_checked": self.shops_checked,
            "candidates": self.candidates,
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": len(self.errors),
        }


def eligible_shops(db: Session) -> List[Shop]:
    """Active shops on a follow-up plan with the toggle on."""
    shops = (
        db.query(Shop)
        .filter(Shop.plan.in_(plans_with_followups()), Shop.active.is_(True))
        .all()
    )
    return [shop for shop in shops if get_settings(db, shop.id).followup_enabled]


def find_candidates(db: Session, shop_id, now: datetime) -> List[tuple[Message, str]]:
    """(message, link_id) pairs in the 23-24h window, newest link per message.

    Window is half-open: now-24h <= last_user_message_at < now-23h, so
    consecutive hourly runs never both see the same message.
    """
    latest_link = (
        db.query(LinkSent.message_id, func.max(LinkSent.id).label("max_id"))
        .filter(LinkSent.shop_id == shop_id, LinkSent.message_id.isnot(None))
        .group_by(LinkSent.message_id)
        .subquery()
    )

    rows = (
        db.query(Message, LinkSent.link_id)
        .join(latest_link, latest_link.c.message_id == Message.id)
        .join(LinkSent, LinkSent.id == latest_link.c.max_id)
        .filter(
            Message.shop_id == shop_id,
            Message.channel == ChannelEnum.dm,
            Message.last_user_message_at.isnot(None),
            Message.last_user_message_at >= now - WINDOW_START,
            Message.last_user_message_at < now - WINDOW_END,
        )
        .order_by(Message.id)
        .all()
    )
    return [(message, link_id) for message, link_id in rows]


def _followup_exists(db: Session, shop_id, message_id: int, link_id: str) -> bool:
    return (
        db.query(Followup.id)
        .filter(Followup.shop_id == shop_id, Followup.message_id == message_id, Followup.link_id == link_id)
        .first()
        is not None
    )


def _link_clicked(db: Session, link_id: str) -> bool:
    return db.query(Click.id).filter(Click.link_id == link_id).first() is not None


def _claim_followup(db: Session, shop_id, message_id: int, link_id: str) -> bool:
    db.add(Followup(shop_id=shop_id, message_id=message_id, link_id=link_id))
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()
        return False


def process_shop_followups(
    db: Session,
    shop: Shop,
    client: Optional[DmSender],
    now: datetime,
    result: FollowupRunResult,
) -> None:
    brand_voice = get_brand_voice(db, shop.id)
    shop_id = shop.id

    for message, link_id in find_candidates(db, shop_id, now):
        result.candidates += 1
        message_id = message.id
        try:
            if not message.from_user_id:
                result.skipped += 1
                continue
            if _followup_exists(db, shop_id, message_id, link_id):
                result.skipped += 1
                continue
            if _link_clicked(db, link_id):
                result.skipped += 1
                continue
            if not _claim_followup(db, shop_id, message_id, link_id):
                logger.info(
                    "[FOLLOWUP] Already claimed by another run",
                    extra={"shop_id": str(shop_id), "message_id": message_id},
                )
                result.skipped += 1
                continue

            text = generate_followup_message(brand_voice)
            dispatch_dm(db, shop_id, message.from_user_id, text, client, now=now)
            result.sent += 1
            logger.info(
                "[FOLLOWUP] Follow-up sent",
                extra={"shop_id": str(shop_id), "message_id": message_id, "link_id": link_id},
            )
        except Exception as e:
            db.rollback()
            result.errors.append(f"{shop_id}/{message_id}: {e}")
            logger.exception(
                f"[FOLLOWUP] Failed for message {message_id}: {e}",
                extra={"shop_id": str(shop_id), "message_id": message_id},
            )
            capture_exception(e, extra={
                "operation": "process_followups.message",
                "shop_id": str(shop_id),
                "message_id": message_id,
            })


def process_followups(
    db: Session,
    client: Optional[DmSender] = None,
    now: Optional[datetime] = None,
) -> FollowupRunResult:
    """Batch entry point (cron / ARQ job)."""
    now = now or datetime.utcnow()
    result = FollowupRunResult()
    logger.info("[FOLLOWUP] Starting follow-up processing")

    for shop in eligible_shops(db):
        result.shops_checked += 1
        shop_id = shop.id
        try:
            process_shop_followups(db, shop, client, now, result)
        except Exception as e:
            db.rollback()
            result.errors.append(f"{shop_id}: {e}")
            logger.exception(f"[FOLLOWUP] Failed for shop {shop_id}: {e}")
            capture_exception(e, extra={"operation": "process_followups.shop", "shop_id": str(shop_id)})

    logger.info(f"[FOLLOWUP] Completed: {result.to_dict()}")
    return result
