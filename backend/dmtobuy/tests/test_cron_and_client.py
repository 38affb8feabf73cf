"""Cron triggers, the Instagram client and webhook signature helpers."""

import json
from datetime import datetime, timedelta

import httpx
import pytest

from dmtobuy.models import OutboundQueueItem, QueueStatusEnum
from dmtobuy.security import verify_meta_signature, verify_shopify_hmac
from dmtobuy.services.instagram_client import InstagramClient, NotConnectedError, ProviderError
from dmtobuy.services.outbound_queue import enqueue
from dmtobuy.tests.conftest import meta_signature, shopify_signature


# ============================================================================
# Cron
# ============================================================================

def test_cron_requires_secret(client):
    assert client.get("/cron/dm-queue").status_code == 401
    assert client.get("/cron/followups", params={"secret": "wrong"}).status_code == 401


def test_cron_dm_queue_delivers_due_rows(client, settings, make_shop, fake_sender, test_db_session):
    shop = make_shop("PRO")
    enqueue(test_db_session, shop.id, "u1", "hello", now=datetime.utcnow() - timedelta(minutes=1))

    response = client.get("/cron/dm-queue", params={"secret": settings.CRON_SECRET})

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["result"]["sent"] == 1
    assert body["result"]["released"] == 0
    test_db_session.expire_all()
    assert test_db_session.query(OutboundQueueItem).one().status == QueueStatusEnum.sent


def test_cron_followups_runs(client, settings, pro_shop):
    response = client.get("/cron/followups", params={"secret": settings.CRON_SECRET})

    assert response.status_code == 200
    assert response.json()["result"]["shops_checked"] == 1


# ============================================================================
# Instagram client
# ============================================================================

def _client(handler):
    return InstagramClient(
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        api_base="https://graph.test",
        api_version="v21.0",
    )


def test_send_dm_posts_to_business_account(test_db_session, pro_shop):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"recipient_id": "u1", "message_id": "mid.out.1"})

    message_id = _client(handler).send_dm(test_db_session, pro_shop.id, "u1", "hello")

    assert message_id == "mid.out.1"
    assert seen["url"] == "https://graph.test/v21.0/17841400000000001/messages"
    assert seen["auth"] == "Bearer test-access-token"
    assert seen["body"] == {"recipient": {"id": "u1"}, "message": {"text": "hello"}}


def test_send_dm_provider_error(test_db_session, pro_shop):
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "User not reachable", "code": 551}})

    with pytest.raises(ProviderError) as exc_info:
        _client(handler).send_dm(test_db_session, pro_shop.id, "u1", "hello")

    assert exc_info.value.status_code == 400
    assert exc_info.value.error_code == 551
    assert "User not reachable" in str(exc_info.value)


def test_send_dm_network_error(test_db_session, pro_shop):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError):
        _client(handler).send_dm(test_db_session, pro_shop.id, "u1", "hello")


def test_send_dm_without_credentials(test_db_session, make_shop):
    shop = make_shop("PRO")
    with pytest.raises(NotConnectedError):
        _client(lambda request: httpx.Response(200, json={})).send_dm(test_db_session, shop.id, "u1", "hi")


# ============================================================================
# Signatures
# ============================================================================

def test_shopify_hmac():
    body = b'{"id": 1}'
    assert verify_shopify_hmac(body, shopify_signature(body, "s3cret"), "s3cret")
    assert not verify_shopify_hmac(body, shopify_signature(body, "other"), "s3cret")
    assert not verify_shopify_hmac(body, None, "s3cret")
    assert not verify_shopify_hmac(body, shopify_signature(body, "s3cret"), None)


def test_meta_signature():
    body = b'{"entry": []}'
    assert verify_meta_signature(body, meta_signature(body, "app-secret"), "app-secret")
    assert not verify_meta_signature(body, meta_signature(body, "app-secret")[7:], "app-secret")
    assert not verify_meta_signature(body + b" ", meta_signature(body, "app-secret"), "app-secret")
