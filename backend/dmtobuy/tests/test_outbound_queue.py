"""Outbound DM queue: claiming, retry/backoff, rate limiting, stuck rows."""

from datetime import datetime, timedelta

from dmtobuy.models import DmRateLimit, OutboundQueueItem, QueueStatusEnum
from dmtobuy.services import outbound_queue
from dmtobuy.services.outbound_queue import (
    MAX_ATTEMPTS,
    backoff_delay,
    check_rate_limit,
    claim_batch,
    dispatch_dm,
    enqueue,
    process_queue,
    reset_stuck_processing,
)

NOW = datetime(2026, 3, 10, 12, 0, 30)


def _reload(db, item):
    db.expire_all()
    return db.get(OutboundQueueItem, item.id)


def test_backoff_doubles_from_thirty_seconds():
    assert [backoff_delay(n).total_seconds() for n in (1, 2, 3)] == [30, 60, 120]


def test_process_queue_sends_due_rows(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")
    due = enqueue(test_db_session, shop.id, "u1", "hello", now=NOW - timedelta(minutes=1))
    later = enqueue(test_db_session, shop.id, "u2", "later", now=NOW + timedelta(minutes=5))

    result = process_queue(test_db_session, fake_sender, now=NOW)

    assert (result.processed, result.sent) == (1, 1)
    assert _reload(test_db_session, due).status == QueueStatusEnum.sent
    assert _reload(test_db_session, due).attempts == 1
    assert _reload(test_db_session, later).status == QueueStatusEnum.pending
    assert [s["recipient_id"] for s in fake_sender.sent] == ["u1"]


def test_failures_back_off_then_fail_after_three_attempts(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")
    fake_sender.fail = True
    item = enqueue(test_db_session, shop.id, "u1", "hello", now=NOW)

    now = NOW
    for attempt in range(1, MAX_ATTEMPTS):
        result = process_queue(test_db_session, fake_sender, now=now)
        row = _reload(test_db_session, item)
        assert result.retrying == 1
        assert row.status == QueueStatusEnum.pending
        assert row.attempts == attempt
        assert row.not_before == now + backoff_delay(attempt)
        assert "temporarily unavailable" in row.last_error

        # Not due yet
        assert process_queue(test_db_session, fake_sender, now=now + timedelta(seconds=1)).processed == 0
        now = row.not_before

    result = process_queue(test_db_session, fake_sender, now=now)
    row = _reload(test_db_session, item)
    assert result.failed == 1
    assert row.status == QueueStatusEnum.failed
    assert row.attempts == MAX_ATTEMPTS
    assert fake_sender.calls == MAX_ATTEMPTS

    # Terminal: never picked up again
    assert process_queue(test_db_session, fake_sender, now=now + timedelta(hours=1)).processed == 0


def test_claimed_rows_are_not_claimed_twice(test_db_session, make_shop):
    shop = make_shop("PRO")
    enqueue(test_db_session, shop.id, "u1", "a", now=NOW)
    enqueue(test_db_session, shop.id, "u2", "b", now=NOW)

    first = claim_batch(test_db_session, now=NOW)
    second = claim_batch(test_db_session, now=NOW)

    assert len(first) == 2
    assert all(item.status == QueueStatusEnum.processing for item in first)
    assert second == []


def test_rate_limit_defers_without_consuming_attempts(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")
    items = [enqueue(test_db_session, shop.id, f"u{i}", "hi", now=NOW) for i in range(3)]

    result = process_queue(test_db_session, fake_sender, now=NOW, rate_limit=2)

    assert (result.sent, result.deferred) == (2, 1)
    deferred = [_reload(test_db_session, item) for item in items if _reload(test_db_session, item).status == QueueStatusEnum.pending]
    assert len(deferred) == 1
    assert deferred[0].attempts == 0
    assert deferred[0].not_before == NOW + timedelta(minutes=1)

    # Next minute the budget is fresh
    result = process_queue(test_db_session, fake_sender, now=NOW + timedelta(minutes=1), rate_limit=2)
    assert result.sent == 1


def test_rate_limit_window_is_per_shop_and_minute(test_db_session, make_shop):
    a = make_shop("PRO")
    b = make_shop("PRO")

    assert check_rate_limit(test_db_session, a.id, now=NOW, limit=1)
    assert not check_rate_limit(test_db_session, a.id, now=NOW + timedelta(seconds=20), limit=1)
    assert check_rate_limit(test_db_session, b.id, now=NOW, limit=1)
    assert check_rate_limit(test_db_session, a.id, now=NOW + timedelta(minutes=1), limit=1)

    rows = test_db_session.query(DmRateLimit).filter(DmRateLimit.shop_id == a.id).all()
    assert sorted(r.window_start for r in rows) == [
        NOW.replace(second=0),
        NOW.replace(second=0) + timedelta(minutes=1),
    ]


def test_stuck_processing_rows_are_released(test_db_session, make_shop):
    shop = make_shop("PRO")
    stuck = enqueue(test_db_session, shop.id, "u1", "a", now=NOW - timedelta(minutes=10))
    fresh = enqueue(test_db_session, shop.id, "u2", "b", now=NOW - timedelta(minutes=2))
    claim_batch(test_db_session, now=NOW - timedelta(minutes=10))
    claim_batch(test_db_session, now=NOW - timedelta(minutes=1))

    released = reset_stuck_processing(test_db_session, now=NOW)

    assert released == 1
    assert _reload(test_db_session, stuck).status == QueueStatusEnum.pending
    assert _reload(test_db_session, fresh).status == QueueStatusEnum.processing


def test_dispatch_delivers_immediately(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")

    item = dispatch_dm(test_db_session, shop.id, "u1", "hello", fake_sender, now=NOW)

    assert _reload(test_db_session, item).status == QueueStatusEnum.sent
    assert len(fake_sender.sent) == 1


def test_dispatch_without_client_leaves_row_for_worker(test_db_session, make_shop):
    shop = make_shop("PRO")

    item = dispatch_dm(test_db_session, shop.id, "u1", "hello", None, now=NOW)

    row = _reload(test_db_session, item)
    assert (row.status, row.attempts) == (QueueStatusEnum.pending, 0)


def test_dispatch_failure_stays_queued(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")
    fake_sender.fail = True

    item = dispatch_dm(test_db_session, shop.id, "u1", "hello", fake_sender, now=NOW)

    row = _reload(test_db_session, item)
    assert row.status == QueueStatusEnum.pending
    assert row.attempts == 1
    assert row.not_before == NOW + timedelta(seconds=30)


def test_overview_counts_every_status(test_db_session, make_shop, fake_sender):
    shop = make_shop("PRO")
    enqueue(test_db_session, shop.id, "u1", "a", now=NOW)
    dispatch_dm(test_db_session, shop.id, "u2", "b", fake_sender, now=NOW)

    result = outbound_queue.overview(test_db_session, shop_id=shop.id)

    assert result.counts == {"pending": 1, "processing": 0, "sent": 1, "failed": 0}
    assert result.total == 2
    assert result.last_updated_at == NOW

    only_sent = outbound_queue.overview(test_db_session, shop_id=shop.id, status="sent")
    assert only_sent.total == 1


def test_list_items_newest_first_and_clamped(test_db_session, make_shop):
    shop = make_shop("PRO")
    for i in range(5):
        enqueue(test_db_session, shop.id, f"u{i}", "x", now=NOW + timedelta(seconds=i))

    items = outbound_queue.list_items(test_db_session, shop_id=shop.id, limit=3)
    assert [item.ig_user_id for item in items] == ["u4", "u3", "u2"]
    assert len(outbound_queue.list_items(test_db_session, shop_id=shop.id, limit=0)) == 1
    assert len(outbound_queue.list_items(test_db_session, shop_id=shop.id, limit=10_000)) == 5


def test_queue_admin_endpoints(client, admin_headers, make_shop, test_db_session):
    shop = make_shop("PRO")
    enqueue(test_db_session, shop.id, "u1", "a", now=NOW)

    overview = client.get("/admin/queue/overview", params={"shop_id": str(shop.id)}, headers=admin_headers)
    items = client.get("/admin/queue/items", params={"status": "pending", "limit": 500}, headers=admin_headers)

    assert overview.status_code == 200
    assert overview.json()["counts"]["pending"] == 1
    assert items.status_code == 200
    assert items.json()["count"] == 1
    assert items.json()["items"][0]["ig_user_id"] == "u1"
    assert client.get("/admin/queue/overview").status_code == 401
    assert client.get("/admin/queue/items", params={"status": "bogus"}, headers=admin_headers).status_code == 422
