"""Shopify webhooks for attribution and app lifecycle.

WHAT:
    1. orders/create   - purchase event, triggers link attribution
    2. app/uninstalled - marks the shop inactive (data kept for reinstall)

WHY:
    Checkout links carry `ref=link_<id>`; the order's landing site brings it
    back, which is how a DM reply is credited with revenue.

RULES:
    - HMAC failure -> 401, unparseable body -> 400. Nothing else is an error.
    - Unknown shop -> 200 (a non-2xx only makes Shopify retry forever).
    - Attribution is written by a background task after the 200 is sent;
      its failure is logged and reported, never returned.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks
    - dmtobuy/services/attribution_service.py
"""

import json
import logging
from typing import Callable

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from dmtobuy.database import get_db, get_session_factory
from dmtobuy.deps import Settings, get_settings
from dmtobuy.schemas import WebhookAck
from dmtobuy.security import verify_shopify_hmac
from dmtobuy.services.attribution_service import record_attribution_task, resolve_order_attribution
from dmtobuy.services.shop_service import deactivate_shop, get_shop_by_domain

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


async def get_verified_webhook_body(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> dict:
    """Dependency that verifies the HMAC and returns the parsed body.

    Raises:
        HTTPException: 401 if HMAC verification fails, 400 on bad JSON
    """
    body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-SHA256")

    if not verify_shopify_hmac(body, hmac_header, settings.SHOPIFY_API_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )

    try:
        payload = json.loads(body)
    except ValueError as e:
        logger.error(f"[SHOPIFY_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    return payload


@router.post("/orders/create", response_model=WebhookAck)
def handle_orders_create(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """Handle orders/create - attribute the order to a sent link.

    FLOW:
        1. Verify HMAC (dependency)
        2. Find shop by X-Shopify-Shop-Domain
        3. Resolve link id + channel from landing/referring site
        4. Schedule the attribution insert; acknowledge
    """
    shop_domain = request.headers.get("X-Shopify-Shop-Domain")
    attribution = resolve_order_attribution(payload)

    logger.info(
        "[SHOPIFY_WEBHOOK] orders/create received",
        extra={
            "shop_domain": shop_domain,
            "order_id": attribution.order_id,
            "link_id": attribution.link_id,
            "channel": attribution.channel,
        },
    )

    shop = get_shop_by_domain(db, shop_domain) if shop_domain else None
    if shop is None:
        logger.warning(f"[SHOPIFY_WEBHOOK] Shop not found: {shop_domain}")
        return {"received": True}

    if not attribution.order_id:
        logger.warning(f"[SHOPIFY_WEBHOOK] Order without id for {shop_domain}, skipping attribution")
        return {"received": True}

    if not attribution.link_id:
        logger.info(f"[SHOPIFY_WEBHOOK] Order {attribution.order_id} has no link ref, not attributed")
        return {"received": True}

    background_tasks.add_task(record_attribution_task, session_factory, shop.id, attribution)
    return {"received": True}


@router.post("/app/uninstalled", response_model=WebhookAck)
def handle_app_uninstalled(
    request: Request,
    payload: dict = Depends(get_verified_webhook_body),
    db: Session = Depends(get_db),
):
    """Deactivate the shop. Rows are never deleted; reinstall reactivates."""
    shop_domain = request.headers.get("X-Shopify-Shop-Domain") or payload.get("myshopify_domain") or payload.get("domain")
    if not shop_domain or not deactivate_shop(db, shop_domain):
        logger.warning(f"[SHOPIFY_WEBHOOK] app/uninstalled for unknown shop: {shop_domain}")
    return {"received": True}
