"""ARQ jobs: sync services run in a worker thread, never on the event loop."""

import asyncio
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta

import pytest

from dmtobuy.models import OutboundQueueItem, QueueStatusEnum
from dmtobuy.services.followup_service import FollowupRunResult
from dmtobuy.services.outbound_queue import enqueue
from dmtobuy.workers import arq_worker


@pytest.fixture
def worker_sessions(monkeypatch, session_factory):
    """Point the jobs at the test database."""

    @contextmanager
    def _session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    monkeypatch.setattr(arq_worker, "get_sync_session", _session)


def _run_with_heartbeat(job):
    """Run a job next to a 10ms ticker; return (job result, ticks seen)."""

    async def run():
        ticks = 0
        task = asyncio.create_task(job)
        while not task.done():
            ticks += 1
            await asyncio.sleep(0.01)
        return await task, ticks

    return asyncio.run(run())


def test_followup_job_leaves_event_loop_free(worker_sessions, monkeypatch, fake_sender):
    seen = {}

    def slow_followups(db, sender):
        seen["thread"] = threading.get_ident()
        time.sleep(0.3)
        return FollowupRunResult(shops_checked=1)

    monkeypatch.setattr(arq_worker, "process_followups", slow_followups)

    result, ticks = _run_with_heartbeat(arq_worker.scheduled_followups({"dm_sender": fake_sender}))

    assert result["shops_checked"] == 1
    assert seen["thread"] != threading.get_ident()
    # a blocking call would have let the ticker run once or twice
    assert ticks >= 10


def test_dm_queue_job_delivers_in_worker_thread(worker_sessions, make_shop, fake_sender, test_db_session):
    shop = make_shop("PRO")
    item_id = enqueue(test_db_session, shop.id, "u1", "hello", now=datetime.utcnow() - timedelta(minutes=1)).id

    result, _ = _run_with_heartbeat(arq_worker.scheduled_dm_queue({"dm_sender": fake_sender}))

    assert result["sent"] == 1
    assert fake_sender.sent[0]["recipient_id"] == "u1"
    test_db_session.expire_all()
    assert test_db_session.get(OutboundQueueItem, item_id).status == QueueStatusEnum.sent


def test_reset_stuck_job_runs_in_worker_thread(worker_sessions, monkeypatch):
    seen = {}

    def reset(db):
        seen["thread"] = threading.get_ident()
        return 2

    monkeypatch.setattr(arq_worker, "reset_stuck_processing", reset)

    assert asyncio.run(arq_worker.scheduled_reset_stuck({})) == {"released": 2}
    assert seen["thread"] != threading.get_ident()


def test_failed_job_is_reported_and_reraised(worker_sessions, monkeypatch, fake_sender):
    captured = []

    def broken(db, sender):
        raise RuntimeError("graph api down")

    monkeypatch.setattr(arq_worker, "process_followups", broken)
    monkeypatch.setattr(arq_worker, "capture_exception", lambda e, extra=None: captured.append(extra))

    with pytest.raises(RuntimeError):
        asyncio.run(arq_worker.scheduled_followups({"dm_sender": fake_sender}))
    assert captured == [{"job": "scheduled_followups"}]
