"""Internal admin API (X-Admin-Key).

WHAT:
    - Shop install / plan changes (called by the Shopify OAuth + billing layer)
    - Automation settings (plan-gated)
    - Outbound queue introspection
    - Analytics rollups

WHY:
    Operator authentication and the embedded UI live outside this service.
    They reach it through these routes with the shared admin key.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from dmtobuy import schemas
from dmtobuy.database import get_db
from dmtobuy.deps import require_admin_key
from dmtobuy.models import PlanEnum, QueueStatusEnum, Shop
from dmtobuy.plans import get_plan_config
from dmtobuy.services import analytics_service, outbound_queue, shop_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin_key)])


def _get_shop_or_404(db: Session, shop_id: UUID) -> Shop:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shop not found")
    return shop


# =============================================================================
# SHOPS
# =============================================================================

@router.post("/shops", response_model=schemas.ShopOut)
def install_shop(payload: schemas.ShopInstall, db: Session = Depends(get_db)):
    """Create the shop, or reactivate it (usage reset) on reinstall."""
    return shop_service.create_or_update_shop(db, payload.shopify_domain, payload.plan)


@router.put("/shops/{shop_id}/plan", response_model=schemas.ShopOut)
def change_plan(shop_id: UUID, payload: schemas.PlanUpdate, db: Session = Depends(get_db)):
    _get_shop_or_404(db, shop_id)
    shop = shop_service.update_shop_plan(db, shop_id, payload.plan)
    logger.info(f"[ADMIN] Shop {shop_id} moved to plan {shop.plan}")
    return shop


# =============================================================================
# SETTINGS
# =============================================================================

@router.get("/shops/{shop_id}/settings", response_model=schemas.SettingsOut)
def read_settings(shop_id: UUID, db: Session = Depends(get_db)):
    _get_shop_or_404(db, shop_id)
    return shop_service.get_settings(db, shop_id)


@router.put("/shops/{shop_id}/settings", response_model=schemas.SettingsOut)
def write_settings(shop_id: UUID, payload: schemas.SettingsUpdate, db: Session = Depends(get_db)):
    _get_shop_or_404(db, shop_id)
    return shop_service.update_settings(db, shop_id, payload.model_dump(exclude_unset=True))


# =============================================================================
# QUEUE
# =============================================================================

@router.get("/queue/overview", response_model=schemas.QueueOverviewResponse)
def queue_overview(
    shop_id: Optional[UUID] = None,
    status_filter: Optional[QueueStatusEnum] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
):
    result = outbound_queue.overview(
        db, shop_id=shop_id, status=status_filter.value if status_filter else None
    )
    return schemas.QueueOverviewResponse(
        total=result.total,
        counts=result.counts,
        last_updated_at=result.last_updated_at,
    )


@router.get("/queue/items", response_model=schemas.QueueItemsResponse)
def queue_items(
    shop_id: Optional[UUID] = None,
    status_filter: Optional[QueueStatusEnum] = Query(default=None, alias="status"),
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """Newest first; `limit` is clamped to 1..200."""
    items = outbound_queue.list_items(
        db,
        shop_id=shop_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
    )
    return schemas.QueueItemsResponse(
        items=[schemas.QueueItemOut.model_validate(item) for item in items],
        count=len(items),
    )


# =============================================================================
# ANALYTICS
# =============================================================================

@router.get("/shops/{shop_id}/analytics")
def shop_analytics(
    shop_id: UUID,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Base analytics for every plan; channel breakdown from GROWTH; Pro rollups on PRO."""
    shop = _get_shop_or_404(db, shop_id)
    plan = get_plan_config(shop.plan)

    analytics = analytics_service.get_analytics(db, shop_id, start=start, end=end)
    if plan.name == PlanEnum.free.value:
        analytics["channelPerformance"] = None

    pro_analytics = None
    if plan.name == PlanEnum.pro.value:
        pro_analytics = analytics_service.get_pro_analytics(db, shop_id, start=start, end=end)

    return {
        "plan": plan.name,
        "analytics": analytics,
        "proAnalytics": pro_analytics,
    }
