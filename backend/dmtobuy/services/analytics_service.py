"""Analytics aggregator: read-only rollups over the ledger.

WHAT:
    Base metrics (every plan): messagesSent, linksSent, clicks, ctr,
    topTriggerPhrases, channelPerformance.
    Pro metrics: customerSegments, sentimentAnalysis, revenueAttribution,
    followupPerformance.

WHY:
    Merchants need to see whether replies turn into clicks and revenue.
    Everything is derived from `messages`, `links_sent`, `clicks`,
    `followups` and `attribution`; nothing here writes.

FORMULAS:
    linksSent = LinkSent rows in range
    clicks    = Click rows whose link_id was sent in range
    ctr       = clicks / linksSent * 100   (0 when linksSent == 0)

    channelPerformance[c].sent/responded count messages received in range;
    channelPerformance[c].clicks counts clicks on links sent in range whose
    triggering message came in on channel c, even if that message is older.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from dmtobuy.models import Attribution, ChannelEnum, Click, Followup, LinkSent, Message

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30
TOP_TRIGGER_LIMIT = 5


def resolve_range(start: Optional[datetime], end: Optional[datetime]) -> Tuple[datetime, datetime]:
    """Default range is the last 30 days ending now."""
    end = end or datetime.utcnow()
    start = start or end - timedelta(days=DEFAULT_RANGE_DAYS)
    return start, end


def calculate_ctr(clicks: int, links_sent: int) -> float:
    if not links_sent:
        return 0.0
    return clicks / links_sent * 100


def _messages(db: Session, shop_id: UUID, start: datetime, end: datetime) -> List[Message]:
    return (
        db.query(Message)
        .filter(Message.shop_id == shop_id, Message.created_at >= start, Message.created_at <= end)
        .all()
    )


def _links(db: Session, shop_id: UUID, start: datetime, end: datetime) -> List[LinkSent]:
    return (
        db.query(LinkSent)
        .filter(LinkSent.shop_id == shop_id, LinkSent.sent_at >= start, LinkSent.sent_at <= end)
        .all()
    )


def _click_counts(db: Session, link_ids: Iterable[str]) -> Counter:
    link_ids = list(set(link_ids))
    if not link_ids:
        return Counter()
    rows = db.query(Click.link_id).filter(Click.link_id.in_(link_ids)).all()
    return Counter(row.link_id for row in rows)


def _revenue_by_link(db: Session, shop_id: UUID, link_ids: Iterable[str]) -> Dict[str, Decimal]:
    link_ids = list(set(link_ids))
    if not link_ids:
        return {}
    totals: Dict[str, Decimal] = defaultdict(Decimal)
    rows = (
        db.query(Attribution.link_id, Attribution.amount)
        .filter(Attribution.shop_id == shop_id, Attribution.link_id.in_(link_ids))
        .all()
    )
    for link_id, amount in rows:
        totals[link_id] += Decimal(amount or 0)
    return totals


def _channel_value(channel) -> str:
    return channel.value if isinstance(channel, ChannelEnum) else str(channel)


def _channels_by_message(db: Session, message_ids: Iterable[int]) -> Dict[int, str]:
    """Channel of each message, regardless of when it was received."""
    message_ids = list(set(message_ids))
    if not message_ids:
        return {}
    rows = db.query(Message.id, Message.channel).filter(Message.id.in_(message_ids)).all()
    return {message_id: _channel_value(channel) for message_id, channel in rows}


# =============================================================================
# BASE ANALYTICS
# =============================================================================

def get_analytics(
    db: Session,
    shop_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    start, end = resolve_range(start, end)
    messages = _messages(db, shop_id, start, end)
    links = _links(db, shop_id, start, end)
    clicks_by_link = _click_counts(db, (link.link_id for link in links))

    links_sent = len(links)
    clicks = sum(clicks_by_link.values())

    intents = Counter(m.ai_intent for m in messages if m.ai_intent)
    top_trigger_phrases = [
        {"intent": intent, "count": count}
        for intent, count in intents.most_common(TOP_TRIGGER_LIMIT)
    ]

    # Links grouped by the message that triggered them
    links_by_message: Dict[int, List[str]] = defaultdict(list)
    for link in links:
        if link.message_id is not None:
            links_by_message[link.message_id].append(link.link_id)

    channel_performance = {c.value: {"sent": 0, "responded": 0, "clicks": 0} for c in ChannelEnum}
    for message in messages:
        bucket = channel_performance.setdefault(
            _channel_value(message.channel), {"sent": 0, "responded": 0, "clicks": 0}
        )
        bucket["sent"] += 1
        if links_by_message.get(message.id):
            bucket["responded"] += 1

    # Clicks follow the link's own message, which may predate the range
    channels = _channels_by_message(db, links_by_message.keys())
    for message_id, message_links in links_by_message.items():
        channel = channels.get(message_id)
        if channel is None:
            continue
        bucket = channel_performance.setdefault(channel, {"sent": 0, "responded": 0, "clicks": 0})
        bucket["clicks"] += sum(clicks_by_link[link_id] for link_id in message_links)

    for bucket in channel_performance.values():
        bucket["ctr"] = calculate_ctr(bucket["clicks"], bucket["responded"])

    return {
        "messagesSent": len(messages),
        "linksSent": links_sent,
        "clicks": clicks,
        "ctr": calculate_ctr(clicks, links_sent),
        "topTriggerPhrases": top_trigger_phrases,
        "channelPerformance": channel_performance,
        "range": {"start": start.isoformat(), "end": end.isoformat()},
    }


# =============================================================================
# PRO ANALYTICS
# =============================================================================

def sentiment_bucket(sentiment: Optional[str]) -> str:
    value = (sentiment or "").lower()
    if "positive" in value:
        return "positive"
    if "negative" in value:
        return "negative"
    return "neutral"


def _customer_segments(messages: List[Message]) -> Dict[str, int]:
    per_sender = Counter(m.from_user_id for m in messages if m.from_user_id)
    first_time = sum(1 for count in per_sender.values() if count == 1)
    repeat = sum(1 for count in per_sender.values() if count > 1)
    return {"total": len(per_sender), "firstTime": first_time, "repeat": repeat}


def _sentiment_analysis(messages: List[Message]) -> Dict[str, int]:
    buckets = {"positive": 0, "neutral": 0, "negative": 0}
    analyzed = [m for m in messages if m.sentiment]
    for message in analyzed:
        buckets[sentiment_bucket(message.sentiment)] += 1
    return {"total": len(analyzed), **buckets}


def _partition_stats(
    message_ids: List[int],
    links_by_message: Dict[int, List[str]],
    clicks_by_link: Counter,
    revenue_by_link: Dict[str, Decimal],
) -> Dict[str, Any]:
    link_ids = [link_id for mid in message_ids for link_id in links_by_message.get(mid, [])]
    clicks = sum(clicks_by_link[link_id] for link_id in link_ids)
    revenue = sum((revenue_by_link.get(link_id, Decimal("0")) for link_id in link_ids), Decimal("0"))
    return {
        "messages": len(message_ids),
        "linksSent": len(link_ids),
        "clicks": clicks,
        "ctr": calculate_ctr(clicks, len(link_ids)),
        "revenue": float(revenue),
    }


def get_pro_analytics(
    db: Session,
    shop_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    start, end = resolve_range(start, end)
    messages = _messages(db, shop_id, start, end)
    message_ids = {m.id for m in messages}

    links_by_message: Dict[int, List[str]] = defaultdict(list)
    if message_ids:
        for message_id, link_id in (
            db.query(LinkSent.message_id, LinkSent.link_id)
            .filter(LinkSent.shop_id == shop_id, LinkSent.message_id.in_(message_ids))
            .all()
        ):
            links_by_message[message_id].append(link_id)

    all_link_ids = [link_id for ids in links_by_message.values() for link_id in ids]
    clicks_by_link = _click_counts(db, all_link_ids)
    revenue_by_link = _revenue_by_link(db, shop_id, all_link_ids)

    followed_up = set()
    if message_ids:
        followed_up = {
            row.message_id
            for row in db.query(Followup.message_id)
            .filter(Followup.shop_id == shop_id, Followup.message_id.in_(message_ids))
            .all()
        }

    responded = sorted(mid for mid in message_ids if links_by_message.get(mid))
    with_followup = [mid for mid in responded if mid in followed_up]
    without_followup = [mid for mid in responded if mid not in followed_up]

    # Revenue over all attribution rows in range, not only matched links
    attributions = (
        db.query(Attribution)
        .filter(Attribution.shop_id == shop_id, Attribution.created_at >= start, Attribution.created_at <= end)
        .all()
    )
    by_channel = {c.value: Decimal("0") for c in ChannelEnum}
    by_channel["unknown"] = Decimal("0")
    currency = "USD"
    for row in attributions:
        amount = Decimal(row.amount or 0)
        by_channel[row.channel if row.channel in by_channel else "unknown"] += amount
        currency = row.currency or currency

    return {
        "customerSegments": _customer_segments(messages),
        "sentimentAnalysis": _sentiment_analysis(messages),
        "revenueAttribution": {
            "total": float(sum(by_channel.values(), Decimal("0"))),
            "orders": len(attributions),
            "byChannel": {channel: float(amount) for channel, amount in by_channel.items()},
            "currency": currency,
        },
        "followupPerformance": {
            "withFollowup": _partition_stats(with_followup, links_by_message, clicks_by_link, revenue_by_link),
            "withoutFollowup": _partition_stats(without_followup, links_by_message, clicks_by_link, revenue_by_link),
        },
    }
