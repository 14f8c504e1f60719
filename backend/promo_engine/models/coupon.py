import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from promo_engine.db.base import Base


class CouponCodeStatus(str, enum.Enum):
    available = "available"
    reserved = "reserved"
    redeemed = "redeemed"
    expired = "expired"


class ReservationStatus(str, enum.Enum):
    active = "active"
    confirmed = "confirmed"
    released = "released"
    expired = "expired"


class CouponPool(Base):
    __tablename__ = "coupon_pools"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id"), nullable=False, unique=True)
    total_size: Mapped[int] = mapped_column(Integer, nullable=False)
    per_customer_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    code_prefix: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    retired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CouponCode(Base):
    __tablename__ = "coupon_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pool_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("coupon_pools.id"), nullable=False, index=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    status: Mapped[CouponCodeStatus] = mapped_column(
        Enum(CouponCodeStatus, native_enum=False),
        nullable=False,
        default=CouponCodeStatus.available,
        index=True,
    )
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    holder_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    reserved_customer_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    reserved_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemed_by: Mapped[str | None] = mapped_column(String(120), nullable=True)
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CouponReservation(Base):
    __tablename__ = "coupon_reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("coupon_codes.id"), nullable=False, index=True)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(120), nullable=False)
    holder_id: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(ReservationStatus, native_enum=False),
        nullable=False,
        default=ReservationStatus.active,
    )
    reserved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CouponCustomerUsage(Base):
    """Live reservations plus redemptions of one customer within one campaign."""

    __tablename__ = "coupon_customer_usage"
    __table_args__ = (UniqueConstraint("campaign_id", "customer_id", name="uq_coupon_customer_usage_campaign_customer"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id"), nullable=False)
    customer_id: Mapped[str] = mapped_column(String(120), nullable=False)
    held: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
