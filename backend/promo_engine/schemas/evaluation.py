from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from promo_engine.models.campaign import DiscountType
from promo_engine.schemas.coupon import ReservationRead


class LineItem(BaseModel):
    product_id: str = Field(min_length=1, max_length=120)
    category_id: str | None = Field(default=None, max_length=120)
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(ge=0)
    tags: list[str] = Field(default_factory=list)


class OrderContext(BaseModel):
    order_id: str = Field(min_length=1, max_length=120)
    customer_id: str | None = Field(default=None, max_length=120)
    holder_id: str | None = Field(default=None, max_length=120)
    segment: str | None = Field(default=None, max_length=80)
    city: str | None = Field(default=None, max_length=120)
    subtotal: Decimal | None = Field(default=None, ge=0)
    items: list[LineItem] = Field(default_factory=list)
    timestamp: datetime | None = None
    coupon_code: str | None = Field(default=None, max_length=40)
    first_order: bool = False
    order_count: int = Field(default=0, ge=0)
    campaign_uses: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_defaults(self) -> "OrderContext":
        if self.subtotal is None:
            self.subtotal = sum((item.unit_price * item.quantity for item in self.items), start=Decimal("0.00"))
        if not self.holder_id:
            self.holder_id = self.order_id
        if self.coupon_code is not None and not self.coupon_code.strip():
            self.coupon_code = None
        return self


class AppliedCampaignRead(BaseModel):
    campaign_id: UUID
    name: str
    priority: int
    exclusivity_group: str | None = None
    discount_type: DiscountType
    amount: Decimal
    base: Decimal
    truncated_by: str | None = None


class RejectedCampaignRead(BaseModel):
    campaign_id: UUID
    name: str | None = None
    reason: str


class CouponErrorRead(BaseModel):
    code: str
    detail: str


class ResolutionResultRead(BaseModel):
    order_id: str
    registry_version: int
    matched: list[UUID]
    applied: list[AppliedCampaignRead]
    rejected: list[RejectedCampaignRead]
    subtotal: Decimal
    total_discount: Decimal
    coupon_code: str | None = None
    reservation: ReservationRead | None = None
    coupon_error: CouponErrorRead | None = None
    audit_id: UUID | None = None
