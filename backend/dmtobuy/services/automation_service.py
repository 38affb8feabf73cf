"""Inbound DM/comment automation.

WHAT:
    Turns one parsed Instagram event into at most one automated DM reply:
    a tracked checkout link, a clarifying question (PRO, DM with no known
    product) or a store answer (general store question, no link).

WHY:
    This is the write path that feeds every other component: the claim row
    it creates is what follow-ups, clicks, attribution and analytics hang off.

FLOW:
    log_message (idempotent)
      -> advisory "already replied?" checks
      -> plan / settings / channel / post / usage / thread gates
      -> classify, store AI fields
      -> intent + confidence gate (short replies inferred when a product is known)
      -> build reply: store answer | clarifying question | checkout link
      -> ClaimLedger.claim()   (the only decision point)
      -> dispatch_dm (queue first, immediate attempt) -> increment_usage

    Every early exit returns an AutomationResult with a reason; nothing here
    raises for an expected skip.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol
from urllib.parse import urlencode

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from dmtobuy.deps import get_settings as get_app_settings
from dmtobuy.models import ChannelEnum, ChannelPreferenceEnum, LinkSent, Message, PostProductMap, Shop
from dmtobuy.plans import get_plan_config
from dmtobuy.services.claim_ledger import ClaimError, ClaimKind, ClaimLedger, ClaimResult, derive_claim_key
from dmtobuy.services.instagram_client import DmSender
from dmtobuy.services.message_service import log_message, update_message_ai
from dmtobuy.services.outbound_queue import dispatch_dm
from dmtobuy.services.reply_templates import (
    generate_clarifying_question,
    generate_reply_message,
    generate_store_answer,
)
from dmtobuy.services.shop_service import get_brand_voice, get_settings, get_shop_plan_and_usage, increment_usage
from dmtobuy.telemetry import capture_exception

logger = logging.getLogger(__name__)

PRODUCT_INTENTS = {"purchase", "product_question", "variant_inquiry", "price_request"}
STORE_QUESTION_INTENT = "store_question"
CONFIDENCE_THRESHOLD = 0.7
COMMENT_MAX_AGE = timedelta(days=7)
THREAD_WINDOW = timedelta(hours=24)
CLARIFYING_LIMIT = 2                 # per sender per THREAD_WINDOW
UTM_CAMPAIGN = "dm_to_buy"


# =============================================================================
# TYPES
# =============================================================================

@dataclass
class InboundEvent:
    """One parsed webhook event."""
    channel: str                      # "dm" | "comment"
    external_id: str                  # message mid / comment id
    from_user_id: Optional[str] = None
    text: Optional[str] = None
    timestamp: Optional[datetime] = None
    media_id: Optional[str] = None    # comments only


@dataclass
class Classification:
    intent: Optional[str]
    confidence: Optional[float]
    sentiment: Optional[str] = None


class Classifier(Protocol):
    """AI intent/sentiment classification (external collaborator)."""

    def classify(self, text: str, channel: str) -> Classification:
        ...


@dataclass
class AutomationResult:
    sent: bool
    reason: Optional[str] = None
    message_id: Optional[int] = None
    link_id: Optional[str] = None
    queue_id: Optional[int] = None
    reply_kind: Optional[str] = None   # "checkout_link" | "clarifying_question" | "store_answer"


@dataclass
class ProductContext:
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    product_name: Optional[str] = None


# =============================================================================
# LINKS
# =============================================================================

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def _numeric_id(value: Optional[str]) -> Optional[str]:
    """'gid://shopify/ProductVariant/123' or '123' -> '123'."""
    if value is None:
        return None
    match = _TRAILING_DIGITS.search(str(value).strip())
    return match.group(1) if match else None


def _shop_host(shopify_domain: str) -> str:
    host = shopify_domain.strip()
    host = re.sub(r"^https?://", "", host)
    return host.rstrip("/")


def tracking_params(link_id: str, channel: str) -> dict:
    return {
        "ref": f"link_{link_id}",
        "utm_source": "instagram",
        "utm_medium": "ig_comment" if channel == ChannelEnum.comment.value else "ig_dm",
        "utm_campaign": UTM_CAMPAIGN,
    }


def build_checkout_url(
    shopify_domain: str,
    link_id: str,
    channel: str,
    product: Optional[ProductContext] = None,
) -> str:
    """Cart permalink for the product, or the homepage when there is none.

    Examples:
        >>> build_checkout_url("s.myshopify.com", "dm_reply_1", "dm", ProductContext("gid://shopify/Product/9", "gid://shopify/ProductVariant/42"))
        'https://s.myshopify.com/cart/42:1?ref=link_dm_reply_1&utm_source=instagram&utm_medium=ig_dm&utm_campaign=dm_to_buy'
    """
    host = _shop_host(shopify_domain)
    query = urlencode(tracking_params(link_id, channel))

    variant = _numeric_id(product.variant_id) if product else None
    product_numeric = _numeric_id(product.product_id) if product else None

    if variant:
        return f"https://{host}/cart/{variant}:1?{query}"
    if product_numeric:
        return f"https://{host}/cart/add?id={product_numeric}&quantity=1&{query}"
    return f"https://{host}/?{query}"


def tracking_url(link_id: str) -> str:
    return f"{get_app_settings().APP_URL.rstrip('/')}/c/{link_id}"


# =============================================================================
# GATES
# =============================================================================

def channel_allowed(preference: Optional[str], channel: str) -> bool:
    if not preference or preference == ChannelPreferenceEnum.both.value:
        return True
    return preference == channel


def _product_for_comment(db: Session, shop_id, media_id: Optional[str]) -> Optional[ProductContext]:
    if not media_id:
        return None
    mapping = (
        db.query(PostProductMap)
        .filter(PostProductMap.shop_id == shop_id, PostProductMap.ig_media_id == media_id)
        .first()
    )
    if mapping is None:
        return None
    return ProductContext(mapping.product_id, mapping.variant_id, mapping.product_name)


def _product_for_dm(db: Session, shop_id, from_user_id: Optional[str]) -> Optional[ProductContext]:
    """Most recent product already sent to this sender (e.g. from a comment)."""
    if not from_user_id:
        return None
    link = (
        db.query(LinkSent)
        .join(Message, Message.id == LinkSent.message_id)
        .filter(
            LinkSent.shop_id == shop_id,
            Message.from_user_id == from_user_id,
            LinkSent.product_id.isnot(None),
        )
        .order_by(LinkSent.id.desc())
        .first()
    )
    if link is None:
        return None
    return ProductContext(link.product_id, link.variant_id)


_SHORT_PRICE = re.compile(r"(how much|price|\$)")
_SHORT_VARIANT = re.compile(r"(size|sizes|color|colours|variant|variants|options)")
_SHORT_PURCHASE = re.compile(r"(buy|purchase|checkout|add to cart|take it|i'll take|ill take|send the link|link\??)")
AFFIRMATIVE_REPLIES = {"yes", "yeah", "yep", "ok", "okay", "sure", "please", "pls"}


def infer_intent_from_text(text: Optional[str]) -> Optional[str]:
    """Intent of a short reply ("yes", "link?") in a thread that already has a product.

    Only consulted when the classifier's intent is not actionable and the
    sender was already sent a product link.
    """
    t = (text or "").strip().lower()
    if not t:
        return None
    if _SHORT_PRICE.search(t):
        return "price_request"
    if _SHORT_VARIANT.search(t):
        return "variant_inquiry"
    if _SHORT_PURCHASE.search(t) or t in AFFIRMATIVE_REPLIES:
        return "purchase"
    return None


def _replied_to_sender_since(db: Session, shop_id, from_user_id: str, since: datetime) -> bool:
    return (
        db.query(LinkSent.id)
        .join(Message, Message.id == LinkSent.message_id)
        .filter(
            LinkSent.shop_id == shop_id,
            Message.from_user_id == from_user_id,
            LinkSent.sent_at >= since,
        )
        .first()
        is not None
    )


def clarifying_questions_sent(db: Session, shop_id, from_user_id: str, since: datetime) -> int:
    """Claims without a URL or product, excluding store answers."""
    return (
        db.query(func.count(LinkSent.id))
        .join(Message, Message.id == LinkSent.message_id)
        .filter(
            LinkSent.shop_id == shop_id,
            Message.from_user_id == from_user_id,
            LinkSent.url.is_(None),
            LinkSent.product_id.is_(None),
            LinkSent.reply_text.isnot(None),
            LinkSent.sent_at >= since,
            or_(Message.ai_intent.is_(None), Message.ai_intent != STORE_QUESTION_INTENT),
        )
        .scalar()
    )


def _skip(reason: str, message: Optional[Message] = None, shop: Optional[Shop] = None) -> AutomationResult:
    logger.info(
        f"[AUTOMATION] Skipped: {reason}",
        extra={
            "shop_id": str(shop.id) if shop else None,
            "message_id": message.id if message else None,
        },
    )
    return AutomationResult(sent=False, reason=reason, message_id=message.id if message else None)


# =============================================================================
# ENTRY POINT
# =============================================================================

def handle_inbound_event(
    db: Session,
    shop: Shop,
    event: InboundEvent,
    classifier: Classifier,
    client: Optional[DmSender] = None,
    now: Optional[datetime] = None,
) -> AutomationResult:
    """Process one inbound DM or comment end to end."""
    now = now or datetime.utcnow()
    channel = ChannelEnum(event.channel).value
    kind = ClaimKind.comment if channel == ChannelEnum.comment.value else ClaimKind.message
    shop_id = shop.id

    # 1. Log (duplicate deliveries land on the same row)
    message = log_message(
        db,
        shop_id=shop_id,
        channel=channel,
        external_id=event.external_id,
        from_user_id=event.from_user_id,
        text=event.text,
        last_user_message_at=(event.timestamp or now) if channel == ChannelEnum.dm.value else None,
    )
    message_id = message.id

    # 2. Advisory pre-checks; the claim below is the real guard
    ledger = ClaimLedger(db)
    if ledger.has_replied_to_external(shop_id, event.external_id, kind) or ledger.has_replied_to_message(message_id):
        return _skip("already_replied", message, shop)

    if not event.from_user_id:
        return _skip("no_recipient", message, shop)

    # 3. Plan and settings gates
    if not shop.active:
        return _skip("shop_inactive", message, shop)

    plan = get_plan_config(shop.plan)
    settings = get_settings(db, shop_id)

    if channel == ChannelEnum.dm.value:
        if not plan.dm or not settings.dm_automation_enabled:
            return _skip("dm_automation_disabled", message, shop)
    else:
        if not plan.comments:
            return _skip("comments_not_in_plan", message, shop)
        if not settings.comment_automation_enabled:
            return _skip("comment_automation_disabled", message, shop)
        if settings.enabled_post_ids and event.media_id not in settings.enabled_post_ids:
            return _skip("post_not_enabled", message, shop)
        if event.timestamp and now - event.timestamp > COMMENT_MAX_AGE:
            return _skip("comment_too_old", message, shop)

    if not channel_allowed(settings.channel_preference, channel):
        return _skip("channel_not_preferred", message, shop)

    # 4. Usage cap, and single-reply threads on plans without conversations
    usage = get_shop_plan_and_usage(db, shop_id, now=now)
    if usage.over_cap:
        return _skip("usage_cap_exceeded", message, shop)
    if (
        channel == ChannelEnum.dm.value
        and not plan.conversations
        and _replied_to_sender_since(db, shop_id, event.from_user_id, now - THREAD_WINDOW)
    ):
        return _skip("thread_reply_not_in_plan", message, shop)

    # 5. Classification
    if not event.text:
        return _skip("no_text", message, shop)
    try:
        classification = classifier.classify(event.text, channel)
    except Exception as e:
        logger.error(f"[AUTOMATION] Classification failed: {e}", extra={"shop_id": str(shop_id), "message_id": message_id})
        capture_exception(e, extra={"operation": "classify", "shop_id": str(shop_id), "message_id": message_id})
        return _skip("classification_failed", message, shop)

    update_message_ai(
        db,
        message_id,
        ai_intent=classification.intent,
        ai_confidence=classification.confidence,
        sentiment=classification.sentiment,
    )

    # 6. Intent gate. Store questions are answered in DMs only; short replies
    # in a DM thread that already has a product count as buying signals.
    if channel == ChannelEnum.comment.value:
        product = _product_for_comment(db, shop_id, event.media_id)
        eligible = PRODUCT_INTENTS
    else:
        product = _product_for_dm(db, shop_id, event.from_user_id)
        eligible = PRODUCT_INTENTS | {STORE_QUESTION_INTENT}

    intent = classification.intent
    inferred = False
    if intent not in eligible and product is not None and channel == ChannelEnum.dm.value:
        guess = infer_intent_from_text(event.text)
        if guess:
            intent, inferred = guess, True
            logger.info(
                f"[AUTOMATION] Inferred intent {guess} from short reply",
                extra={"shop_id": str(shop_id), "message_id": message_id},
            )

    if intent not in eligible:
        return _skip(f"intent_not_eligible:{classification.intent}", message, shop)
    if not inferred and (classification.confidence is None or classification.confidence < CONFIDENCE_THRESHOLD):
        return _skip("low_confidence", message, shop)

    # 7. Reply: store answer, clarifying question, or checkout link
    brand_voice = get_brand_voice(db, shop_id)
    link_id = derive_claim_key(kind, event.external_id)
    destination = None

    if intent == STORE_QUESTION_INTENT:
        reply_kind = "store_answer"
        product = None
        reply_text = generate_store_answer(brand_voice, f"https://{_shop_host(shop.shopify_domain)}")
    elif product is None and channel == ChannelEnum.dm.value and plan.followup and settings.followup_enabled:
        asked = clarifying_questions_sent(db, shop_id, event.from_user_id, now - THREAD_WINDOW)
        if asked >= CLARIFYING_LIMIT:
            return _skip("clarifying_limit_reached", message, shop)
        reply_kind = "clarifying_question"
        reply_text = generate_clarifying_question(brand_voice)
    else:
        reply_kind = "checkout_link"
        destination = build_checkout_url(shop.shopify_domain, link_id, channel, product)
        reply_text = generate_reply_message(
            brand_voice,
            tracking_url(link_id),
            product.product_name if product else None,
        )

    # 8. Claim (url stays NULL for replies without a checkout link)
    try:
        claimed = ledger.claim(
            shop_id,
            event.external_id,
            reply_text,
            message_id,
            kind=kind,
            url=destination,
            product_id=product.product_id if product else None,
            variant_id=product.variant_id if product else None,
            sent_at=now,
        )
    except ClaimError as e:
        capture_exception(e, extra={"operation": "claim", "shop_id": str(shop_id), "message_id": message_id})
        return _skip("claim_failed", message, shop)

    if claimed is ClaimResult.already_claimed:
        return _skip("already_claimed", message, shop)

    # 9. Send and count
    try:
        item = dispatch_dm(db, shop_id, event.from_user_id, reply_text, client, now=now)
        increment_usage(db, shop_id, now=now)
    except Exception as e:
        db.rollback()
        logger.exception(
            f"[AUTOMATION] Claimed reply could not be queued: {e}",
            extra={"shop_id": str(shop_id), "message_id": message_id, "link_id": link_id},
        )
        capture_exception(e, extra={
            "operation": "dispatch_reply",
            "shop_id": str(shop_id),
            "message_id": message_id,
            "link_id": link_id,
        })
        return AutomationResult(
            sent=False, reason="dispatch_failed", message_id=message_id, link_id=link_id, reply_kind=reply_kind,
        )

    logger.info(
        f"[AUTOMATION] Reply dispatched ({reply_kind})",
        extra={"shop_id": str(shop_id), "message_id": message_id, "link_id": link_id, "queue_id": item.id},
    )
    return AutomationResult(
        sent=True, message_id=message_id, link_id=link_id, queue_id=item.id, reply_kind=reply_kind,
    )
