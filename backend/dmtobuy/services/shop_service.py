"""Shop lifecycle, usage counters and plan-gated settings.

WHAT:
    - Install / reinstall / uninstall of a shop (upsert by domain, never recreate)
    - Monthly usage counter with lazy month rollover (read-repair)
    - Automation settings with plan restrictions applied on read and write

WHY:
    Every automation decision reads the tenant's plan, usage and toggles.
    Rolling the usage month over on read avoids a monthly reset job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dmtobuy.models import BrandVoice, ChannelPreferenceEnum, PlanEnum, Shop, ShopSettings
from dmtobuy.plans import PlanConfig, get_plan_config

logger = logging.getLogger(__name__)


@dataclass
class UsageSnapshot:
    plan: PlanConfig
    usage: int
    cap: int

    @property
    def over_cap(self) -> bool:
        return self.usage >= self.cap


@dataclass
class EffectiveSettings:
    """Settings after plan restrictions were applied."""
    shop_id: UUID
    dm_automation_enabled: bool
    comment_automation_enabled: bool
    followup_enabled: bool
    channel_preference: str
    enabled_post_ids: Optional[list[str]] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def current_usage_month(now: Optional[datetime] = None) -> datetime:
    """First instant of the current UTC calendar month."""
    now = now or datetime.utcnow()
    return datetime(now.year, now.month, 1)


# =============================================================================
# SHOP LIFECYCLE
# =============================================================================

def get_shop_by_domain(db: Session, shopify_domain: str) -> Optional[Shop]:
    return db.query(Shop).filter(Shop.shopify_domain == shopify_domain).first()


def create_or_update_shop(db: Session, shopify_domain: str, plan: Optional[str] = None) -> Shop:
    """Install or reinstall a shop.

    Reinstall reactivates the existing row and resets usage to 0; it never
    creates a second shop for the same domain. A concurrent install that
    loses the insert race falls through to the update path.
    """
    shop = get_shop_by_domain(db, shopify_domain)
    if shop is None:
        config = get_plan_config(plan or PlanEnum.free.value)
        shop = Shop(
            shopify_domain=shopify_domain,
            plan=config.name,
            monthly_cap=config.cap,
            priority_support=config.priority_support,
            usage_count=0,
            usage_month=current_usage_month(),
            active=True,
        )
        db.add(shop)
        try:
            db.commit()
            logger.info("[SHOP] Installed %s", shopify_domain)
            return shop
        except IntegrityError:
            db.rollback()
            shop = get_shop_by_domain(db, shopify_domain)
            if shop is None:
                raise

    shop.active = True
    shop.usage_count = 0
    shop.usage_month = current_usage_month()
    if plan:
        _apply_plan(shop, plan)
    db.commit()
    logger.info("[SHOP] Reactivated %s", shopify_domain)
    return shop


def deactivate_shop(db: Session, shopify_domain: str) -> bool:
    """Mark a shop inactive on uninstall. Data is kept for reinstall."""
    shop = get_shop_by_domain(db, shopify_domain)
    if shop is None:
        return False
    shop.active = False
    db.commit()
    logger.info("[SHOP] Deactivated %s", shopify_domain)
    return True


def _apply_plan(shop: Shop, plan: str) -> None:
    config = get_plan_config(plan)
    shop.plan = config.name
    shop.monthly_cap = config.cap
    shop.priority_support = config.priority_support


def update_shop_plan(db: Session, shop_id: UUID, plan: str) -> Shop:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise LookupError(f"Shop {shop_id} not found")
    _apply_plan(shop, plan)
    db.commit()
    # Stored toggles may now exceed the plan; rewrite them
    get_settings(db, shop_id)
    return shop


# =============================================================================
# USAGE
# =============================================================================

def _rollover_if_needed(db: Session, shop: Shop, now: Optional[datetime] = None) -> None:
    month = current_usage_month(now)
    stored = shop.usage_month
    if stored is None or (stored.year, stored.month) != (month.year, month.month):
        # Conditional on the old month so two readers roll over only once
        db.execute(
            update(Shop)
            .where(Shop.id == shop.id, Shop.usage_month == stored)
            .values(usage_month=month, usage_count=0)
        )
        db.commit()
        db.refresh(shop)
        logger.info("[SHOP] Usage month rolled over for %s", shop.shopify_domain)


def get_shop_plan_and_usage(db: Session, shop_id: UUID, now: Optional[datetime] = None) -> UsageSnapshot:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise LookupError(f"Shop {shop_id} not found")
    _rollover_if_needed(db, shop, now)
    return UsageSnapshot(plan=get_plan_config(shop.plan), usage=shop.usage_count, cap=shop.monthly_cap)


def increment_usage(db: Session, shop_id: UUID, delta: int = 1, now: Optional[datetime] = None) -> None:
    """Add `delta` to the monthly counter, rolling the month over first."""
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise LookupError(f"Shop {shop_id} not found")
    _rollover_if_needed(db, shop, now)
    db.execute(
        update(Shop)
        .where(Shop.id == shop_id)
        .values(usage_count=Shop.usage_count + delta)
    )
    db.commit()


# =============================================================================
# SETTINGS
# =============================================================================

def default_channel_preference(plan: str) -> str:
    if get_plan_config(plan).name == PlanEnum.free.value:
        return ChannelPreferenceEnum.dm.value
    return ChannelPreferenceEnum.both.value


def apply_plan_restrictions(plan: str, values: dict[str, Any]) -> dict[str, Any]:
    """Force plan-locked toggles off.

    FREE: DMs only (no comments, no follow-ups, preference locked to "dm").
    GROWTH: comments + DMs, preference locked to "both", no follow-ups.
    PRO: full control.
    """
    config = get_plan_config(plan)
    result = dict(values)
    result.setdefault("dm_automation_enabled", True)
    result.setdefault("comment_automation_enabled", config.comments)
    result.setdefault("followup_enabled", False)
    result.setdefault("channel_preference", default_channel_preference(config.name))
    result.setdefault("enabled_post_ids", None)

    if result["dm_automation_enabled"] is None:
        result["dm_automation_enabled"] = True
    if result["comment_automation_enabled"] is None:
        result["comment_automation_enabled"] = config.comments
    if result["followup_enabled"] is None:
        result["followup_enabled"] = False

    if not config.comments:
        result["comment_automation_enabled"] = False
    if not config.followup:
        result["followup_enabled"] = False

    if config.name == PlanEnum.free.value:
        result["channel_preference"] = ChannelPreferenceEnum.dm.value
    elif config.name == PlanEnum.growth.value:
        result["channel_preference"] = ChannelPreferenceEnum.both.value
    elif result["channel_preference"] not in {c.value for c in ChannelPreferenceEnum}:
        result["channel_preference"] = ChannelPreferenceEnum.both.value

    return result


_SETTING_FIELDS = (
    "dm_automation_enabled",
    "comment_automation_enabled",
    "followup_enabled",
    "channel_preference",
    "enabled_post_ids",
)


def _row_values(row: ShopSettings) -> dict[str, Any]:
    return {field: getattr(row, field) for field in _SETTING_FIELDS}


def get_settings(db: Session, shop_id: UUID) -> EffectiveSettings:
    """Return plan-gated settings, correcting the stored row if it drifted."""
    shop = db.get(Shop, shop_id)
    plan = shop.plan if shop else PlanEnum.free.value

    row = db.query(ShopSettings).filter(ShopSettings.shop_id == shop_id).first()
    if row is None:
        return EffectiveSettings(shop_id=shop_id, **apply_plan_restrictions(plan, {}))

    stored = _row_values(row)
    gated = apply_plan_restrictions(plan, stored)
    if gated != stored:
        for field, value in gated.items():
            setattr(row, field, value)
        db.commit()
        logger.info("[SETTINGS] Corrected settings for shop %s to match plan %s", shop_id, plan)

    return EffectiveSettings(shop_id=shop_id, **gated)


def update_settings(db: Session, shop_id: UUID, values: dict[str, Any]) -> EffectiveSettings:
    shop = db.get(Shop, shop_id)
    if shop is None:
        raise LookupError(f"Shop {shop_id} not found")

    requested = {k: v for k, v in values.items() if k in _SETTING_FIELDS}
    row = db.query(ShopSettings).filter(ShopSettings.shop_id == shop_id).first()
    current = _row_values(row) if row else {}
    gated = apply_plan_restrictions(shop.plan, {**current, **requested})

    if row is None:
        row = ShopSettings(shop_id=shop_id, **gated)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent first write; update the row that won
            db.rollback()
            row = db.query(ShopSettings).filter(ShopSettings.shop_id == shop_id).one()
            for field, value in gated.items():
                setattr(row, field, value)
            db.commit()
    else:
        for field, value in gated.items():
            setattr(row, field, value)
        db.commit()

    return EffectiveSettings(shop_id=shop_id, **gated)


def get_brand_voice(db: Session, shop_id: UUID) -> Optional[BrandVoice]:
    return db.query(BrandVoice).filter(BrandVoice.shop_id == shop_id).first()
