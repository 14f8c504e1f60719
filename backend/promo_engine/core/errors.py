from __future__ import annotations

from typing import Any

from fastapi import status


class EngineError(Exception):
    """Base class for errors surfaced to API callers as ``ErrorResponse`` bodies."""

    code = "engine_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: Any = None) -> None:
        self.detail = detail if detail is not None else self.code.replace("_", " ").capitalize()
        super().__init__(str(self.detail))


class ValidationError(EngineError):
    code = "validation_error"
    status_code = 422


class ConditionSyntaxError(ValidationError):
    """Malformed condition expression, unknown field or operator misuse."""

    code = "syntax_error"

    def __init__(self, message: str, *, position: int | None = None) -> None:
        self.position = position
        detail = message if position is None else f"{message} (at position {position})"
        super().__init__(detail)


class CampaignNotFound(EngineError):
    code = "campaign_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class CouponError(EngineError):
    """Coupon failures: user-facing, terminal for the attempt."""


class CouponNotFound(CouponError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class PoolExhausted(CouponNotFound):
    code = "pool_exhausted"


class ReservationNotFound(CouponNotFound):
    code = "reservation_not_found"


class AlreadyRedeemed(CouponError):
    code = "already_redeemed"
    status_code = status.HTTP_409_CONFLICT


class AlreadyReservedByOther(CouponError):
    code = "already_reserved"
    status_code = status.HTTP_409_CONFLICT


class UsageLimitExceeded(CouponError):
    code = "usage_limit_exceeded"
    status_code = status.HTTP_409_CONFLICT


class CouponExpired(CouponError):
    code = "expired"
    status_code = status.HTTP_410_GONE


class ConflictResolutionFault(EngineError):
    """A single campaign's predicate failed at evaluation time; the campaign is skipped."""

    code = "evaluation_fault"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, campaign_id: Any, cause: BaseException) -> None:
        self.campaign_id = campaign_id
        self.cause = cause
        super().__init__(f"Campaign {campaign_id} failed to evaluate: {cause!r}")


class StoreUnavailable(EngineError):
    code = "store_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AuditWriteFailed(StoreUnavailable):
    code = "audit_write_failed"
