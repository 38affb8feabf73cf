"""Attribution: URL parsing, channel inference and the orders/create webhook."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from dmtobuy.models import Attribution, Shop
from dmtobuy.services import attribution_service
from dmtobuy.services.attribution_service import (
    infer_channel,
    parse_attribution_url,
    record_attribution,
    resolve_order_attribution,
)
from dmtobuy.tests.conftest import json_body, shopify_signature


# ============================================================================
# URL parsing
# ============================================================================

def test_parse_full_checkout_url():
    params = parse_attribution_url(
        "https://store.myshopify.com/cart/42:1?ref=link_dm_reply_mid.1"
        "&utm_source=instagram&utm_medium=ig_dm&utm_campaign=dm_to_buy"
    )
    assert params.link_id == "dm_reply_mid.1"
    assert params.utm_source == "instagram"
    assert params.utm_medium == "ig_dm"
    assert params.utm_campaign == "dm_to_buy"


def test_parse_relative_landing_site():
    params = parse_attribution_url("/cart/42:1?ref=link_abc&utm_medium=ig_comment")
    assert params.link_id == "abc"


@pytest.mark.parametrize("url", ["https://store.com/", "https://store.com/?ref=other_abc", "https://store.com/?ref=link_"])
def test_urls_without_link_ref_have_no_link_id(url):
    assert parse_attribution_url(url).link_id is None


@pytest.mark.parametrize("url", [None, "", "   ", "not a url", "ftp://store.com/?ref=link_x", 42])
def test_malformed_urls_return_none(url):
    assert parse_attribution_url(url) is None


@pytest.mark.parametrize(
    "medium,source,expected",
    [
        ("ig_dm", "instagram", "dm"),
        ("IG_DM", None, "dm"),
        ("ig_comment", "instagram", "comment"),
        ("dm_comment", "instagram", None),
        (None, "instagram", "dm"),
        (None, "facebook", None),
        ("email", "instagram", None),
        (None, None, None),
    ],
)
def test_infer_channel(medium, source, expected):
    assert infer_channel(medium, source) == expected


# ============================================================================
# Order payloads
# ============================================================================

def test_landing_site_wins_over_referring_site():
    result = resolve_order_attribution({
        "id": 1001,
        "total_price": "59.90",
        "currency": "EUR",
        "landing_site": "/cart/1:1?ref=link_first&utm_medium=ig_dm",
        "referring_site": "https://store.com/?ref=link_second&utm_medium=ig_comment",
    })
    assert result.order_id == "1001"
    assert result.amount == Decimal("59.90")
    assert result.currency == "EUR"
    assert (result.link_id, result.channel) == ("first", "dm")


def test_referring_site_used_when_landing_site_has_no_link():
    result = resolve_order_attribution({
        "order_number": 7,
        "landing_site": "/products/shirt",
        "referring_site": "https://store.com/?ref=link_second&utm_medium=ig_comment",
    })
    assert result.order_id == "7"
    assert result.amount == Decimal("0")
    assert result.currency == "USD"
    assert (result.link_id, result.channel) == ("second", "comment")


def test_unparseable_total_is_none():
    assert resolve_order_attribution({"id": 1, "total_price": "abc"}).amount is None


def test_record_attribution_appends(test_db_session, make_shop):
    shop = make_shop("PRO")
    for _ in range(2):
        record_attribution(test_db_session, shop.id, "1001", "dm_reply_m1", "dm", Decimal("10.00"))
    assert test_db_session.query(Attribution).count() == 2


def test_record_attribution_store_failure_returns_none(test_db_session, make_shop, monkeypatch):
    shop = make_shop("PRO")

    def locked():
        raise OperationalError("INSERT INTO attribution", {}, Exception("database is locked"))

    monkeypatch.setattr(test_db_session, "commit", locked)

    assert record_attribution(test_db_session, shop.id, "1001", "dm_reply_m1", "dm", Decimal("10.00")) is None
    monkeypatch.undo()
    assert test_db_session.query(Attribution).count() == 0


# ============================================================================
# Webhook
# ============================================================================

def _post_order(client, settings, payload, shop_domain):
    body = json_body(payload)
    return client.post(
        "/webhooks/shopify/orders/create",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Shopify-Hmac-SHA256": shopify_signature(body, settings.SHOPIFY_API_SECRET),
            "X-Shopify-Shop-Domain": shop_domain,
        },
    )


def test_order_webhook_records_attribution(client, settings, make_shop, test_db_session):
    shop = make_shop("PRO")
    payload = {
        "id": 5001,
        "total_price": "120.00",
        "currency": "USD",
        "landing_site": "/cart/42:1?ref=link_dm_reply_mid.7&utm_source=instagram&utm_medium=ig_dm",
    }

    response = _post_order(client, settings, payload, shop.shopify_domain)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    test_db_session.expire_all()
    row = test_db_session.query(Attribution).one()
    assert row.order_id == "5001"
    assert row.link_id == "dm_reply_mid.7"
    assert row.channel == "dm"
    assert Decimal(row.amount) == Decimal("120.00")


def test_order_webhook_unknown_shop_is_acknowledged(client, settings, test_db_session):
    response = _post_order(client, settings, {"id": 1, "landing_site": "/?ref=link_x"}, "nobody.myshopify.com")
    assert response.status_code == 200
    assert test_db_session.query(Attribution).count() == 0


def test_order_webhook_acknowledges_when_recording_fails(client, settings, make_shop, test_db_session, monkeypatch):
    shop = make_shop("PRO")

    def broken(*args, **kwargs):
        raise RuntimeError("attribution table missing")

    monkeypatch.setattr(attribution_service, "record_attribution", broken)

    response = _post_order(client, settings, {"id": 77, "landing_site": "/?ref=link_dm_reply_m9"}, shop.shopify_domain)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    test_db_session.expire_all()
    assert test_db_session.query(Attribution).count() == 0


def test_order_without_link_is_not_attributed(client, settings, make_shop, test_db_session):
    shop = make_shop("PRO")
    response = _post_order(client, settings, {"id": 2, "landing_site": "/products/a"}, shop.shopify_domain)
    assert response.status_code == 200
    assert test_db_session.query(Attribution).count() == 0


def test_order_webhook_rejects_bad_hmac(client, make_shop):
    shop = make_shop("PRO")
    response = client.post(
        "/webhooks/shopify/orders/create",
        content=b'{"id": 1}',
        headers={"X-Shopify-Hmac-SHA256": "bogus", "X-Shopify-Shop-Domain": shop.shopify_domain},
    )
    assert response.status_code == 401


def test_order_webhook_rejects_bad_json(client, settings):
    body = b"{not json"
    response = client.post(
        "/webhooks/shopify/orders/create",
        content=body,
        headers={"X-Shopify-Hmac-SHA256": shopify_signature(body, settings.SHOPIFY_API_SECRET)},
    )
    assert response.status_code == 400


def test_uninstall_deactivates_shop(client, settings, make_shop, test_db_session):
    shop = make_shop("GROWTH")
    body = json_body({"myshopify_domain": shop.shopify_domain})
    response = client.post(
        "/webhooks/shopify/app/uninstalled",
        content=body,
        headers={
            "X-Shopify-Hmac-SHA256": shopify_signature(body, settings.SHOPIFY_API_SECRET),
            "X-Shopify-Shop-Domain": shop.shopify_domain,
        },
    )
    assert response.status_code == 200
    test_db_session.expire_all()
    assert test_db_session.get(Shop, shop.id).active is False
