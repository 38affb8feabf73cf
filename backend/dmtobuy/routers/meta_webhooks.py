"""Instagram (Meta) webhooks: DMs and comments in, automated replies out.

WHAT:
    - GET  /webhooks/meta  subscription handshake (hub.challenge echo)
    - POST /webhooks/meta  signed event batches (DMs, standby DMs, comments)

WHY:
    Meta expects a fast 200 and retries otherwise, often delivering the same
    event more than once. The handler verifies, parses and acknowledges; the
    automation runs as a background task with its own session. Duplicate
    deliveries are absorbed by the message and claim constraints.

REFERENCES:
    - https://developers.facebook.com/docs/graph-api/webhooks/getting-started
    - https://developers.facebook.com/docs/instagram-platform/webhooks
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from dmtobuy.database import get_db, get_session_factory
from dmtobuy.deps import Settings, get_settings
from dmtobuy.models import MetaAuth, Shop
from dmtobuy.schemas import WebhookAck
from dmtobuy.security import verify_meta_signature
from dmtobuy.services.automation_service import Classifier, InboundEvent, handle_inbound_event
from dmtobuy.services.classifier import KeywordClassifier
from dmtobuy.services.instagram_client import DmSender, get_dm_sender
from dmtobuy.telemetry import capture_exception, set_shop_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/meta", tags=["Meta Webhooks"])


def get_classifier() -> Classifier:
    """Classifier dependency. Override to plug in the AI service."""
    return KeywordClassifier()


# =============================================================================
# PARSING
# =============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds, epoch millis or ISO-8601 -> naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        seconds = value if value < 10_000_000_000 else value / 1000
        return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"[META_WEBHOOK] Unparseable timestamp: {value!r}")
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_message_event(event: dict) -> Optional[InboundEvent]:
    """One `messaging`/`standby` item -> InboundEvent. Echoes are dropped."""
    message = event.get("message") or {}
    edit = event.get("message_edit") or {}
    if event.get("is_echo") or message.get("is_echo"):
        return None

    mid = edit.get("mid") or message.get("mid") or event.get("mid")
    if not mid:
        return None

    sender = event.get("sender") or event.get("from") or {}
    return InboundEvent(
        channel="dm",
        external_id=str(mid),
        from_user_id=str(sender["id"]) if sender.get("id") else None,
        text=edit.get("text") or message.get("text"),
        timestamp=parse_timestamp(event.get("timestamp")),
    )


def parse_comment_event(value: dict) -> Optional[InboundEvent]:
    """A `changes[field=comments].value` -> InboundEvent."""
    comment_id = value.get("id") or value.get("comment_id")
    if not comment_id:
        return None
    media = value.get("media") or {}
    sender = value.get("from") or {}
    return InboundEvent(
        channel="comment",
        external_id=str(comment_id),
        from_user_id=str(sender["id"]) if sender.get("id") else None,
        text=value.get("text") or value.get("message"),
        timestamp=parse_timestamp(value.get("timestamp") or value.get("created_time")),
        media_id=str(media.get("id") or value.get("media_id")) if (media.get("id") or value.get("media_id")) else None,
    )


def parse_entry(entry: dict) -> List[InboundEvent]:
    events: List[InboundEvent] = []
    raw_messages = list(entry.get("messaging") or []) + list(entry.get("standby") or [])

    for change in entry.get("changes") or []:
        value = change.get("value")
        if not isinstance(value, dict):
            continue
        if change.get("field") == "messages":
            raw_messages.append(value)
        elif change.get("field") == "comments":
            parsed = parse_comment_event(value)
            if parsed:
                events.append(parsed)

    for raw in raw_messages:
        parsed = parse_message_event(raw)
        if parsed:
            events.append(parsed)
    return events


def resolve_shop(db: Session, account_id: Optional[str]) -> Optional[Shop]:
    """Active shop whose Instagram business account (or page) received the event."""
    if not account_id:
        return None
    auth = (
        db.query(MetaAuth)
        .filter((MetaAuth.ig_business_id == account_id) | (MetaAuth.page_id == account_id))
        .first()
    )
    if auth is None:
        return None
    shop = db.get(Shop, auth.shop_id)
    if shop is None or not shop.active:
        return None
    return shop


# =============================================================================
# BACKGROUND PROCESSING
# =============================================================================

def process_events_task(
    session_factory: Callable[[], Session],
    shop_id: UUID,
    events: List[InboundEvent],
    classifier: Classifier,
    sender: DmSender,
) -> None:
    """Run automation for each event; one failure does not stop the rest."""
    db = session_factory()
    try:
        shop = db.get(Shop, shop_id)
        if shop is None:
            return
        set_shop_context(str(shop_id), shop.shopify_domain)
        for event in events:
            try:
                result = handle_inbound_event(db, shop, event, classifier, sender)
                logger.info(
                    f"[META_WEBHOOK] {event.channel} {event.external_id}: sent={result.sent} reason={result.reason}",
                    extra={"shop_id": str(shop_id)},
                )
            except Exception as e:
                db.rollback()
                logger.exception(f"[META_WEBHOOK] Automation failed for {event.external_id}: {e}")
                capture_exception(e, extra={
                    "operation": "handle_inbound_event",
                    "shop_id": str(shop_id),
                    "external_id": event.external_id,
                })
    finally:
        db.close()


# =============================================================================
# ROUTES
# =============================================================================

@router.get("", response_class=PlainTextResponse)
def verify_subscription(
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
):
    """Echo `hub.challenge` when the verify token matches."""
    if (
        hub_mode == "subscribe"
        and settings.META_WEBHOOK_VERIFY_TOKEN
        and hub_verify_token == settings.META_WEBHOOK_VERIFY_TOKEN
    ):
        logger.info("[META_WEBHOOK] Subscription verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("[META_WEBHOOK] Subscription verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("", response_model=WebhookAck)
async def receive_events(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    classifier: Classifier = Depends(get_classifier),
    sender: DmSender = Depends(get_dm_sender),
):
    """Verify, parse, acknowledge. Automation runs after the response."""
    body = await request.body()
    if not verify_meta_signature(body, request.headers.get("X-Hub-Signature-256"), settings.META_APP_SECRET):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error(f"[META_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    entries = (payload.get("entry") or []) if isinstance(payload, dict) else []
    scheduled = 0
    for entry in entries:
        account_id = str(entry.get("id")) if entry.get("id") is not None else None
        events = parse_entry(entry)
        if not events:
            continue

        shop = resolve_shop(db, account_id)
        if shop is None:
            logger.info(f"[META_WEBHOOK] No active shop for account {account_id}, {len(events)} event(s) ignored")
            continue

        background_tasks.add_task(process_events_task, session_factory, shop.id, events, classifier, sender)
        scheduled += len(events)

    logger.info(f"[META_WEBHOOK] Accepted {len(entries)} entries, {scheduled} event(s) scheduled")
    return {"received": True}
