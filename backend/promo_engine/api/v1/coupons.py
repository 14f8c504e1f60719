from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.db.session import get_session
from promo_engine.schemas.coupon import CouponReserveRequest, ReservationRead
from promo_engine.services import coupon_pool

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/campaigns/{campaign_id}/reserve-next", response_model=ReservationRead)
async def reserve_next(
    campaign_id: UUID,
    payload: CouponReserveRequest,
    session: AsyncSession = Depends(get_session),
) -> ReservationRead:
    reservation = await coupon_pool.reserve_next(session, campaign_id, payload.customer_id, payload.holder_id)
    return ReservationRead.model_validate(reservation)


@router.post("/reservations/{reservation_id}/confirm", response_model=ReservationRead)
async def confirm_reservation(reservation_id: UUID, session: AsyncSession = Depends(get_session)) -> ReservationRead:
    reservation = await coupon_pool.confirm(session, reservation_id)
    return ReservationRead.model_validate(reservation)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationRead)
async def release_reservation(reservation_id: UUID, session: AsyncSession = Depends(get_session)) -> ReservationRead:
    reservation = await coupon_pool.release(session, reservation_id)
    return ReservationRead.model_validate(reservation)


@router.post("/{code}/reserve", response_model=ReservationRead)
async def reserve_code(
    code: str,
    payload: CouponReserveRequest,
    session: AsyncSession = Depends(get_session),
) -> ReservationRead:
    reservation = await coupon_pool.reserve(session, code, payload.customer_id, payload.holder_id)
    return ReservationRead.model_validate(reservation)
