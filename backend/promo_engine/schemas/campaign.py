from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from promo_engine.models.campaign import CampaignStatus, DiscountType
from promo_engine.schemas.common import PaginationMeta


class CampaignUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    condition: str = Field(default="true", min_length=1, max_length=4000)
    discount_type: DiscountType = DiscountType.percentage
    discount_value: Decimal = Field(default=Decimal("0"), ge=0)
    buy_quantity: int | None = Field(default=None, ge=1)
    get_quantity: int | None = Field(default=None, ge=1)
    max_discount: Decimal | None = Field(default=None, ge=0)
    target_category_ids: list[str] = Field(default_factory=list)
    priority: int | None = None
    exclusivity_group: str | None = Field(default=None, max_length=80)
    compounding: bool = False
    starts_at: datetime
    ends_at: datetime
    status: CampaignStatus = CampaignStatus.scheduled
    max_concurrent_applications: int | None = Field(default=None, ge=1)
    requires_coupon: bool = False
    coupon_pool_size: int | None = Field(default=None, ge=1, le=100_000)
    max_usage: int | None = Field(default=None, ge=1)
    max_usage_per_customer: int | None = Field(default=None, ge=1)
    budget: Decimal | None = Field(default=None, gt=0)


class CampaignRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None = None
    condition: str
    discount_type: DiscountType
    discount_value: Decimal
    buy_quantity: int | None = None
    get_quantity: int | None = None
    max_discount: Decimal | None = None
    target_category_ids: list[str] | None = None
    priority: int
    exclusivity_group: str | None = None
    compounding: bool
    starts_at: datetime
    ends_at: datetime
    status: CampaignStatus
    max_concurrent_applications: int
    requires_coupon: bool
    coupon_pool_size: int | None = None
    max_usage: int | None = None
    max_usage_per_customer: int | None = None
    budget: Decimal | None = None
    usage_count: int = 0
    spent_budget: Decimal = Decimal("0")
    created_at: datetime
    updated_at: datetime


class CampaignListResponse(BaseModel):
    items: list[CampaignRead]
    meta: PaginationMeta


class ActiveCampaignRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    priority: int
    exclusivity_group: str | None = None
    compounding: bool
    requires_coupon: bool
    starts_at: datetime
    ends_at: datetime


class ActiveCampaignsResponse(BaseModel):
    version: int
    stale: bool = False
    items: list[ActiveCampaignRead]


class CampaignStatsRead(BaseModel):
    campaign_id: UUID
    applications: int
    total_discount: Decimal
    unique_customers: int
    average_discount: Decimal
    rejections: dict[str, int] = Field(default_factory=dict)


class ConditionValidateRequest(BaseModel):
    condition: str = Field(min_length=1, max_length=4000)


class ConditionValidateResponse(BaseModel):
    valid: bool
    normalized: str | None = None
    size: int | None = None
    tree: dict[str, Any] | None = None
    detail: str | None = None
    position: int | None = None
