import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Numeric, String, Uuid, event, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promo_engine.db.base import Base


class AuditKind(str, enum.Enum):
    evaluation = "evaluation"
    coupon_reserved = "coupon_reserved"
    coupon_confirmed = "coupon_confirmed"
    coupon_released = "coupon_released"
    coupon_reclaimed = "coupon_reclaimed"


class AuditRecord(Base):
    __tablename__ = "audit_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[AuditKind] = mapped_column(Enum(AuditKind, native_enum=False), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    customer_id: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    matched: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    applied: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    rejected: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    total_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=0)
    coupon_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    reservation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    chain_prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    chain_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    links: Mapped[list["AuditCampaignLink"]] = relationship(
        "AuditCampaignLink", cascade="all, delete-orphan", passive_deletes=True, lazy="selectin"
    )


class AuditCampaignLink(Base):
    __tablename__ = "audit_campaign_links"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("audit_records.id", ondelete="CASCADE"), nullable=False, index=True
    )
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)


class AuditChainState(Base):
    __tablename__ = "audit_chain_state"

    entity: Mapped[str] = mapped_column(String(32), primary_key=True)
    tail_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class AuditRecordImmutable(RuntimeError):
    pass


@event.listens_for(AuditRecord, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:  # type: ignore[no-untyped-def]
    raise AuditRecordImmutable(f"Audit record {target.id} is append-only")
