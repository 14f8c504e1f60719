import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from promo_engine.core.clock import as_utc
from promo_engine.db.base import Base


class CampaignStatus(str, enum.Enum):
    scheduled = "scheduled"
    active = "active"
    paused = "paused"
    expired = "expired"


class DiscountType(str, enum.Enum):
    percentage = "percentage"
    fixed_amount = "fixed_amount"
    buy_x_get_y = "buy_x_get_y"


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition: Mapped[str] = mapped_column(Text, nullable=False, default="true")

    discount_type: Mapped[DiscountType] = mapped_column(
        Enum(DiscountType, native_enum=False),
        nullable=False,
        default=DiscountType.percentage,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    buy_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    get_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_discount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    target_category_ids: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    exclusivity_group: Mapped[str | None] = mapped_column(String(80), nullable=True, index=True)
    compounding: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[CampaignStatus] = mapped_column(
        Enum(CampaignStatus, native_enum=False),
        nullable=False,
        default=CampaignStatus.scheduled,
        index=True,
    )
    max_concurrent_applications: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    requires_coupon: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    coupon_pool_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    max_usage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_usage_per_customer: Mapped[int | None] = mapped_column(Integer, nullable=True)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_budget: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def is_evaluable(self, now: datetime) -> bool:
        return is_live(self.status, self.starts_at, self.ends_at, now)


def is_live(status: CampaignStatus, starts_at: datetime, ends_at: datetime, now: datetime) -> bool:
    """Active and inside the half-open window ``[starts_at, ends_at)``."""
    if status != CampaignStatus.active:
        return False
    return as_utc(starts_at) <= as_utc(now) < as_utc(ends_at)


class CampaignRegistryState(Base):
    """Single-row version counter bumped by every campaign write."""

    __tablename__ = "campaign_registry_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class CampaignCustomerUsage(Base):
    """Applications of one campaign to one customer's orders."""

    __tablename__ = "campaign_customer_usage"
    __table_args__ = (
        UniqueConstraint("campaign_id", "customer_id", name="uq_campaign_customer_usage_campaign_customer"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(120), nullable=False)
    applications: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
