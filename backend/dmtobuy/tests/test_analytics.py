"""Analytics rollups over messages, links, clicks, follow-ups and attribution."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from dmtobuy.models import Attribution, Click, Followup, LinkSent, Message
from dmtobuy.services.analytics_service import (
    calculate_ctr,
    get_analytics,
    get_pro_analytics,
    sentiment_bucket,
)

NOW = datetime(2026, 3, 10, 12, 0, 0)
START = NOW - timedelta(days=7)


def _message(db, shop, external_id, channel="dm", sender="u1", intent=None, sentiment=None, created_at=None):
    message = Message(
        shop_id=shop.id,
        channel=channel,
        external_id=external_id,
        from_user_id=sender,
        ai_intent=intent,
        sentiment=sentiment,
        created_at=created_at or NOW - timedelta(days=1),
    )
    db.add(message)
    db.commit()
    return message


def _link(db, shop, message, link_id, sent_at=None):
    db.add(LinkSent(shop_id=shop.id, message_id=message.id if message else None, link_id=link_id,
                    sent_at=sent_at or NOW - timedelta(days=1)))
    db.commit()


def _clicks(db, link_id, n):
    db.add_all([Click(link_id=link_id, user_agent="Mozilla/5.0") for _ in range(n)])
    db.commit()


def test_ctr_is_zero_without_links():
    assert calculate_ctr(0, 0) == 0.0
    assert calculate_ctr(5, 0) == 0.0


def test_ctr_percentage():
    assert calculate_ctr(3, 10) == pytest.approx(30.0)


def test_empty_shop(test_db_session, make_shop):
    shop = make_shop("FREE")

    result = get_analytics(test_db_session, shop.id, START, NOW)

    assert result["messagesSent"] == 0
    assert result["linksSent"] == 0
    assert result["clicks"] == 0
    assert result["ctr"] == 0.0
    assert result["topTriggerPhrases"] == []


def test_ten_links_three_clicks(test_db_session, make_shop):
    shop = make_shop("GROWTH")
    for i in range(10):
        message = _message(test_db_session, shop, f"mid.{i}", intent="purchase" if i < 6 else "price_request")
        _link(test_db_session, shop, message, f"dm_reply_mid.{i}")
    _clicks(test_db_session, "dm_reply_mid.0", 2)
    _clicks(test_db_session, "dm_reply_mid.1", 1)

    result = get_analytics(test_db_session, shop.id, START, NOW)

    assert result["messagesSent"] == 10
    assert result["linksSent"] == 10
    assert result["clicks"] == 3
    assert result["ctr"] == pytest.approx(30.0)
    assert result["topTriggerPhrases"] == [
        {"intent": "purchase", "count": 6},
        {"intent": "price_request", "count": 4},
    ]


def test_range_excludes_old_rows(test_db_session, make_shop):
    shop = make_shop("PRO")
    old = _message(test_db_session, shop, "mid.old", created_at=NOW - timedelta(days=40))
    _link(test_db_session, shop, old, "dm_reply_mid.old", sent_at=NOW - timedelta(days=40))
    _clicks(test_db_session, "dm_reply_mid.old", 4)

    result = get_analytics(test_db_session, shop.id, START, NOW)

    assert (result["messagesSent"], result["linksSent"], result["clicks"]) == (0, 0, 0)


def test_channel_performance(test_db_session, make_shop):
    shop = make_shop("PRO")
    dm = _message(test_db_session, shop, "mid.1", channel="dm")
    _message(test_db_session, shop, "mid.2", channel="dm")
    comment = _message(test_db_session, shop, "c.1", channel="comment")
    _link(test_db_session, shop, dm, "dm_reply_mid.1")
    _link(test_db_session, shop, comment, "dm_reply_comment_c.1")
    _clicks(test_db_session, "dm_reply_comment_c.1", 1)

    perf = get_analytics(test_db_session, shop.id, START, NOW)["channelPerformance"]

    assert perf["dm"] == {"sent": 2, "responded": 1, "clicks": 0, "ctr": 0.0}
    assert perf["comment"] == {"sent": 1, "responded": 1, "clicks": 1, "ctr": pytest.approx(100.0)}


def test_channel_clicks_include_links_to_older_messages(test_db_session, make_shop):
    shop = make_shop("GROWTH")
    # comment came in before the range, the reply went out inside it
    old_comment = _message(test_db_session, shop, "c.old", channel="comment", created_at=START - timedelta(hours=2))
    _link(test_db_session, shop, old_comment, "dm_reply_comment_c.old", sent_at=START + timedelta(minutes=5))
    _clicks(test_db_session, "dm_reply_comment_c.old", 2)

    result = get_analytics(test_db_session, shop.id, START, NOW)
    perf = result["channelPerformance"]

    assert result["clicks"] == 2
    assert perf["comment"]["sent"] == 0
    assert perf["comment"]["clicks"] == 2
    assert perf["dm"]["clicks"] == 0
    assert sum(bucket["clicks"] for bucket in perf.values()) == result["clicks"]


@pytest.mark.parametrize(
    "value,bucket",
    [("positive", "positive"), ("very_positive", "positive"), ("NEGATIVE", "negative"),
     ("neutral", "neutral"), ("mixed", "neutral"), (None, "neutral")],
)
def test_sentiment_bucket(value, bucket):
    assert sentiment_bucket(value) == bucket


def test_pro_segments_and_sentiment(test_db_session, make_shop):
    shop = make_shop("PRO")
    _message(test_db_session, shop, "m1", sender="alice", sentiment="positive")
    _message(test_db_session, shop, "m2", sender="alice", sentiment="negative")
    _message(test_db_session, shop, "m3", sender="bob", sentiment="neutral")
    _message(test_db_session, shop, "m4", sender="carol")

    result = get_pro_analytics(test_db_session, shop.id, START, NOW)

    assert result["customerSegments"] == {"total": 3, "firstTime": 2, "repeat": 1}
    assert result["sentimentAnalysis"] == {"total": 3, "positive": 1, "neutral": 1, "negative": 1}


def test_pro_revenue_and_followup_performance(test_db_session, make_shop):
    shop = make_shop("PRO")
    followed = _message(test_db_session, shop, "m1")
    plain = _message(test_db_session, shop, "m2", sender="u2")
    _link(test_db_session, shop, followed, "dm_reply_m1")
    _link(test_db_session, shop, plain, "dm_reply_m2")
    _clicks(test_db_session, "dm_reply_m1", 1)
    test_db_session.add(Followup(shop_id=shop.id, message_id=followed.id, link_id="dm_reply_m1"))
    test_db_session.add_all([
        Attribution(shop_id=shop.id, order_id="o1", link_id="dm_reply_m1", channel="dm",
                    amount=Decimal("50.00"), created_at=NOW - timedelta(hours=2)),
        Attribution(shop_id=shop.id, order_id="o2", link_id="dm_reply_comment_x", channel="comment",
                    amount=Decimal("20.00"), created_at=NOW - timedelta(hours=2)),
        Attribution(shop_id=shop.id, order_id="o3", link_id="somewhere", channel=None,
                    amount=Decimal("5.00"), created_at=NOW - timedelta(hours=2)),
    ])
    test_db_session.commit()

    result = get_pro_analytics(test_db_session, shop.id, START, NOW)

    revenue = result["revenueAttribution"]
    assert revenue["total"] == pytest.approx(75.0)
    assert revenue["orders"] == 3
    assert revenue["byChannel"] == {"dm": 50.0, "comment": 20.0, "unknown": 5.0}

    with_followup = result["followupPerformance"]["withFollowup"]
    without_followup = result["followupPerformance"]["withoutFollowup"]
    assert with_followup == {"messages": 1, "linksSent": 1, "clicks": 1, "ctr": pytest.approx(100.0), "revenue": 50.0}
    assert without_followup == {"messages": 1, "linksSent": 1, "clicks": 0, "ctr": 0.0, "revenue": 0.0}


@pytest.mark.parametrize("plan,has_channels,has_pro", [("FREE", False, False), ("GROWTH", True, False), ("PRO", True, True)])
def test_analytics_endpoint_is_plan_gated(client, admin_headers, make_shop, plan, has_channels, has_pro):
    shop = make_shop(plan)

    response = client.get(f"/admin/shops/{shop.id}/analytics", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["plan"] == plan
    assert (body["analytics"]["channelPerformance"] is not None) is has_channels
    assert (body["proAnalytics"] is not None) is has_pro
