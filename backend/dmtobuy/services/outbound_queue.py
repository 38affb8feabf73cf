"""Outbound DM queue: durable delivery with retry, backoff and rate limiting.

WHAT:
    Every automated DM is written to `outbound_dm_queue` before any send is
    attempted. A worker claims due rows, delivers them through the provider
    client and records the outcome.

WHY:
    A webhook must be acknowledged quickly and a provider hiccup must not lose
    the reply. The queue table is the only coordination point between the
    webhook's immediate attempt and overlapping worker runs.

STATE MACHINE:
    pending ──claim──► processing ──ok──► sent
       ▲                   │
       │   attempts < 3    │ error
       └───(backoff)───────┤
                           └── attempts >= 3 ──► failed

    - Claims are status-guarded UPDATEs: a row is owned only if the UPDATE hit it.
    - Rows over the shop's per-minute budget go back to pending for one minute
      without consuming an attempt.
    - Rows stuck in processing (crashed worker) are released after 5 minutes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from dmtobuy.deps import get_settings
from dmtobuy.models import DmRateLimit, OutboundQueueItem, QueueStatusEnum
from dmtobuy.services.instagram_client import DmSender, ProviderError
from dmtobuy.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BASE_BACKOFF_SECONDS = 30
RATE_LIMIT_DEFER = timedelta(minutes=1)
STUCK_TIMEOUT_MINUTES = 5
LIST_LIMIT_MAX = 200


@dataclass
class QueueOverview:
    total: int
    counts: Dict[str, int]
    last_updated_at: Optional[datetime]


@dataclass
class QueueRunResult:
    processed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    deferred: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "retrying": self.retrying,
            "failed": self.failed,
            "deferred": self.deferred,
        }


def backoff_delay(attempts: int) -> timedelta:
    """30s, 60s, 120s, ... for attempts 1, 2, 3, ..."""
    return timedelta(seconds=BASE_BACKOFF_SECONDS * (2 ** max(attempts - 1, 0)))


# =============================================================================
# ENQUEUE / INTROSPECTION
# =============================================================================

def enqueue(
    db: Session,
    shop_id: UUID,
    recipient_id: str,
    text: str,
    now: Optional[datetime] = None,
) -> OutboundQueueItem:
    now = now or datetime.utcnow()
    item = OutboundQueueItem(
        shop_id=shop_id,
        ig_user_id=recipient_id,
        text=text,
        status=QueueStatusEnum.pending,
        attempts=0,
        not_before=now,
        created_at=now,
        updated_at=now,
    )
    db.add(item)
    db.commit()
    logger.info("[QUEUE] Enqueued DM", extra={"shop_id": str(shop_id), "queue_id": item.id})
    return item


def _filtered(query, shop_id: Optional[UUID], status: Optional[str]):
    if shop_id is not None:
        query = query.filter(OutboundQueueItem.shop_id == shop_id)
    if status:
        query = query.filter(OutboundQueueItem.status == QueueStatusEnum(status))
    return query


def overview(db: Session, shop_id: Optional[UUID] = None, status: Optional[str] = None) -> QueueOverview:
    """Counts per status (all statuses present, zero-filled) plus last update time."""
    counts = {s.value: 0 for s in QueueStatusEnum}
    rows = _filtered(
        db.query(OutboundQueueItem.status, func.count(OutboundQueueItem.id)),
        shop_id,
        status,
    ).group_by(OutboundQueueItem.status).all()
    for row_status, count in rows:
        counts[QueueStatusEnum(row_status).value] = count

    last_updated_at = _filtered(
        db.query(func.max(OutboundQueueItem.updated_at)), shop_id, status
    ).scalar()

    return QueueOverview(total=sum(counts.values()), counts=counts, last_updated_at=last_updated_at)


def list_items(
    db: Session,
    shop_id: Optional[UUID] = None,
    status: Optional[str] = None,
    limit: int = 50,
) -> List[OutboundQueueItem]:
    """Newest first. `limit` is clamped to 1..200."""
    limit = max(1, min(int(limit), LIST_LIMIT_MAX))
    return (
        _filtered(db.query(OutboundQueueItem), shop_id, status)
        .order_by(OutboundQueueItem.created_at.desc(), OutboundQueueItem.id.desc())
        .limit(limit)
        .all()
    )


# =============================================================================
# CLAIMING
# =============================================================================

def _claim_row(db: Session, item_id: int, now: datetime) -> bool:
    result = db.execute(
        update(OutboundQueueItem)
        .where(OutboundQueueItem.id == item_id, OutboundQueueItem.status == QueueStatusEnum.pending)
        .values(status=QueueStatusEnum.processing, processing_since=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def claim_batch(db: Session, limit: int = 200, now: Optional[datetime] = None) -> List[OutboundQueueItem]:
    """Move up to `limit` due pending rows to processing and return them."""
    now = now or datetime.utcnow()
    due_ids = [
        row.id
        for row in db.query(OutboundQueueItem.id)
        .filter(
            OutboundQueueItem.status == QueueStatusEnum.pending,
            OutboundQueueItem.not_before <= now,
        )
        .order_by(OutboundQueueItem.not_before, OutboundQueueItem.id)
        .limit(limit)
        .all()
    ]

    claimed = [item_id for item_id in due_ids if _claim_row(db, item_id, now)]
    db.commit()

    if not claimed:
        return []
    return (
        db.query(OutboundQueueItem)
        .filter(OutboundQueueItem.id.in_(claimed))
        .order_by(OutboundQueueItem.not_before, OutboundQueueItem.id)
        .all()
    )


def _finish(db: Session, item: OutboundQueueItem, **values) -> bool:
    """Status-guarded transition out of processing."""
    result = db.execute(
        update(OutboundQueueItem)
        .where(OutboundQueueItem.id == item.id, OutboundQueueItem.status == QueueStatusEnum.processing)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(item)
    return result.rowcount == 1


def _defer(db: Session, item: OutboundQueueItem, now: datetime) -> None:
    _finish(
        db,
        item,
        status=QueueStatusEnum.pending,
        not_before=now + RATE_LIMIT_DEFER,
        processing_since=None,
        updated_at=now,
    )


def reset_stuck_processing(
    db: Session,
    timeout_minutes: int = STUCK_TIMEOUT_MINUTES,
    now: Optional[datetime] = None,
) -> int:
    """Release rows whose worker died mid-delivery. Returns the number released."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=timeout_minutes)
    result = db.execute(
        update(OutboundQueueItem)
        .where(
            OutboundQueueItem.status == QueueStatusEnum.processing,
            OutboundQueueItem.processing_since < cutoff,
        )
        .values(status=QueueStatusEnum.pending, processing_since=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.warning(f"[QUEUE] Released {result.rowcount} stuck processing rows")
    return result.rowcount


# =============================================================================
# RATE LIMIT
# =============================================================================

def check_rate_limit(
    db: Session,
    shop_id: UUID,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> bool:
    """Take one send from the shop's budget for the current minute.

    Returns False (budget untouched) when the minute is already used up.
    """
    now = now or datetime.utcnow()
    limit = limit if limit is not None else get_settings().DM_RATE_LIMIT_PER_MINUTE
    window_start = now.replace(second=0, microsecond=0)

    def _increment() -> bool:
        result = db.execute(
            update(DmRateLimit)
            .where(
                DmRateLimit.shop_id == shop_id,
                DmRateLimit.window_start == window_start,
                DmRateLimit.count < limit,
            )
            .values(count=DmRateLimit.count + 1)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    if _increment():
        return True

    exists = (
        db.query(DmRateLimit.id)
        .filter(DmRateLimit.shop_id == shop_id, DmRateLimit.window_start == window_start)
        .first()
    )
    if exists is not None:
        return False

    if limit < 1:
        return False

    db.add(DmRateLimit(shop_id=shop_id, window_start=window_start, count=1))
    try:
        db.commit()
        return True
    except IntegrityError:
        # Another sender opened the window first
        db.rollback()
        return _increment()


# =============================================================================
# DELIVERY
# =============================================================================

def deliver(db: Session, item: OutboundQueueItem, client: DmSender, now: Optional[datetime] = None) -> QueueStatusEnum:
    """Send a claimed (processing) row and record the outcome.

    Returns the row's new status.
    """
    now = now or datetime.utcnow()
    try:
        client.send_dm(db, item.shop_id, item.ig_user_id, item.text)
    except Exception as e:
        db.rollback()
        attempts = (item.attempts or 0) + 1
        if not isinstance(e, ProviderError):
            capture_exception(e, extra={
                "operation": "deliver_dm",
                "shop_id": str(item.shop_id),
                "queue_id": item.id,
            })

        if attempts >= MAX_ATTEMPTS:
            _finish(
                db, item,
                status=QueueStatusEnum.failed,
                attempts=attempts,
                last_error=str(e)[:1000],
                processing_since=None,
                updated_at=now,
            )
            logger.error(
                f"[QUEUE] DM {item.id} failed permanently after {attempts} attempts: {e}",
                extra={"shop_id": str(item.shop_id), "queue_id": item.id},
            )
            capture_message(
                f"DM delivery failed permanently after {attempts} attempts",
                level="warning",
                extra={"shop_id": str(item.shop_id), "queue_id": item.id, "last_error": str(e)[:1000]},
            )
            return QueueStatusEnum.failed

        _finish(
            db, item,
            status=QueueStatusEnum.pending,
            attempts=attempts,
            last_error=str(e)[:1000],
            not_before=now + backoff_delay(attempts),
            processing_since=None,
            updated_at=now,
        )
        logger.warning(
            f"[QUEUE] DM {item.id} attempt {attempts} failed, retrying: {e}",
            extra={"shop_id": str(item.shop_id), "queue_id": item.id},
        )
        return QueueStatusEnum.pending

    _finish(
        db, item,
        status=QueueStatusEnum.sent,
        attempts=(item.attempts or 0) + 1,
        last_error=None,
        processing_since=None,
        updated_at=now,
    )
    logger.info("[QUEUE] DM sent", extra={"shop_id": str(item.shop_id), "queue_id": item.id})
    return QueueStatusEnum.sent


def process_queue(
    db: Session,
    client: DmSender,
    limit: int = 200,
    now: Optional[datetime] = None,
    rate_limit: Optional[int] = None,
) -> QueueRunResult:
    """One worker pass over due rows."""
    now = now or datetime.utcnow()
    result = QueueRunResult()

    for item in claim_batch(db, limit=limit, now=now):
        result.processed += 1
        try:
            if not check_rate_limit(db, item.shop_id, now=now, limit=rate_limit):
                _defer(db, item, now)
                result.deferred += 1
                continue

            status = deliver(db, item, client, now=now)
            if status is QueueStatusEnum.sent:
                result.sent += 1
            elif status is QueueStatusEnum.failed:
                result.failed += 1
            else:
                result.retrying += 1
        except SQLAlchemyError as e:
            db.rollback()
            result.errors.append(f"{item.id}: {e}")
            logger.exception(f"[QUEUE] Store error while processing DM {item.id}: {e}")
            capture_exception(e, extra={"operation": "process_queue", "queue_id": item.id})

    if result.processed:
        logger.info(f"[QUEUE] Run complete: {result.to_dict()}")
    return result


def dispatch_dm(
    db: Session,
    shop_id: UUID,
    recipient_id: str,
    text: str,
    client: Optional[DmSender] = None,
    now: Optional[datetime] = None,
) -> OutboundQueueItem:
    """Durably enqueue a DM, then try to deliver it right away.

    Without a client, or when the shop's budget is spent, the row is left for
    the worker. Provider failures stay queued with backoff.
    """
    now = now or datetime.utcnow()
    item = enqueue(db, shop_id, recipient_id, text, now=now)
    if client is None:
        return item

    if not _claim_row(db, item.id, now):
        db.commit()
        return item
    db.commit()
    db.refresh(item)

    if not check_rate_limit(db, shop_id, now=now):
        _defer(db, item, now)
        logger.info("[QUEUE] Rate limited, left for worker", extra={"shop_id": str(shop_id), "queue_id": item.id})
        return item

    deliver(db, item, client, now=now)
    return item
