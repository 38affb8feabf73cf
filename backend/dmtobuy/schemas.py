"""Pydantic schemas for request/response payloads."""

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .models import QueueStatusEnum


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"],
    )

    model_config = {
        "json_schema_extra": {
            "example": {"status": "ok"}
        }
    }


class WebhookAck(BaseModel):
    """Acknowledgment returned to webhook senders."""

    received: bool = True


# =============================================================================
# QUEUE
# =============================================================================

class QueueOverviewResponse(BaseModel):
    total: int = Field(description="Rows matching the filter")
    counts: Dict[str, int] = Field(
        description="Rows per status (every status present)",
        examples=[{"pending": 2, "processing": 0, "sent": 40, "failed": 1}],
    )
    last_updated_at: Optional[datetime] = None


class QueueItemOut(BaseModel):
    id: int
    shop_id: UUID
    ig_user_id: str
    text: str
    status: QueueStatusEnum
    attempts: int
    not_before: Optional[datetime] = None
    last_error: Optional[str] = None
    processing_since: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class QueueItemsResponse(BaseModel):
    items: List[QueueItemOut]
    count: int


# =============================================================================
# SETTINGS
# =============================================================================

class SettingsOut(BaseModel):
    """Settings after plan restrictions."""

    shop_id: UUID
    dm_automation_enabled: bool
    comment_automation_enabled: bool
    followup_enabled: bool
    channel_preference: Literal["dm", "comment", "both"]
    enabled_post_ids: Optional[List[str]] = None

    model_config = {"from_attributes": True}


class SettingsUpdate(BaseModel):
    """Partial update. Plan-locked fields are forced back on save."""

    dm_automation_enabled: Optional[bool] = None
    comment_automation_enabled: Optional[bool] = None
    followup_enabled: Optional[bool] = None
    channel_preference: Optional[Literal["dm", "comment", "both"]] = None
    enabled_post_ids: Optional[List[str]] = Field(
        default=None,
        description="Instagram media ids comment automation is limited to",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "comment_automation_enabled": True,
                "followup_enabled": True,
                "channel_preference": "both",
            }
        }
    }


# =============================================================================
# CRON
# =============================================================================

class CronRunResponse(BaseModel):
    ok: bool = True
    result: Dict[str, int]


# =============================================================================
# SHOPS
# =============================================================================

class ShopInstall(BaseModel):
    """Install or reinstall a shop (called by the Shopify OAuth layer)."""

    shopify_domain: str = Field(examples=["mystore.myshopify.com"])
    plan: Optional[Literal["FREE", "GROWTH", "PRO"]] = None


class PlanUpdate(BaseModel):
    plan: Literal["FREE", "GROWTH", "PRO"]


class ShopOut(BaseModel):
    id: UUID
    shopify_domain: str
    plan: str
    monthly_cap: int
    usage_count: int
    priority_support: bool
    active: bool

    model_config = {"from_attributes": True}
