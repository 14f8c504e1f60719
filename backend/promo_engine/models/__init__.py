from promo_engine.db.base import Base  # noqa: F401
from promo_engine.models.campaign import (  # noqa: F401
    Campaign,
    CampaignCustomerUsage,
    CampaignRegistryState,
    CampaignStatus,
    DiscountType,
)
from promo_engine.models.coupon import (  # noqa: F401
    CouponCode,
    CouponCodeStatus,
    CouponCustomerUsage,
    CouponPool,
    CouponReservation,
    ReservationStatus,
)
from promo_engine.models.audit import AuditCampaignLink, AuditChainState, AuditKind, AuditRecord  # noqa: F401

__all__ = [
    "Base",
    "Campaign",
    "CampaignCustomerUsage",
    "CampaignRegistryState",
    "CampaignStatus",
    "DiscountType",
    "CouponCode",
    "CouponCodeStatus",
    "CouponCustomerUsage",
    "CouponPool",
    "CouponReservation",
    "ReservationStatus",
    "AuditCampaignLink",
    "AuditChainState",
    "AuditKind",
    "AuditRecord",
]
