from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from promo_engine.models.audit import AuditKind
from promo_engine.schemas.common import PaginationMeta


class AuditRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: AuditKind
    order_id: str | None = None
    customer_id: str | None = None
    matched: list[str]
    applied: list[str]
    rejected: list[dict[str, Any]]
    total_discount: Decimal
    coupon_code: str | None = None
    reservation_id: UUID | None = None
    chain_hash: str | None = None
    created_at: datetime


class AuditListResponse(BaseModel):
    items: list[AuditRecordRead]
    meta: PaginationMeta
