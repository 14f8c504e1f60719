from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from promo_engine.models.coupon import ReservationStatus


class CouponReserveRequest(BaseModel):
    customer_id: str = Field(min_length=1, max_length=120)
    holder_id: str = Field(min_length=1, max_length=120)


class ReservationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    campaign_id: UUID
    customer_id: str
    holder_id: str
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    closed_at: datetime | None = None


class CouponPoolCreate(BaseModel):
    size: int | None = Field(default=None, ge=1, le=100_000)
    per_customer_limit: int | None = Field(default=None, ge=1)
    code_prefix: str | None = Field(default=None, max_length=16, pattern=r"^[A-Za-z0-9]*$")
    expires_at: datetime | None = None


class CouponPoolRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    campaign_id: UUID
    pool_id: UUID
    total: int
    available: int
    reserved: int
    redeemed: int
    expired: int
    per_customer_limit: int
    expires_at: datetime
    retired_at: datetime | None = None
