from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.clock import as_utc, utcnow
from promo_engine.core.config import settings
from promo_engine.core.errors import (
    AlreadyRedeemed,
    AlreadyReservedByOther,
    CampaignNotFound,
    CouponExpired,
    CouponNotFound,
    PoolExhausted,
    ReservationNotFound,
    UsageLimitExceeded,
    ValidationError,
)
from promo_engine.db.session import store_guard
from promo_engine.models.audit import AuditKind
from promo_engine.models.campaign import Campaign, CampaignStatus
from promo_engine.models.coupon import (
    CouponCode,
    CouponCodeStatus,
    CouponCustomerUsage,
    CouponPool,
    CouponReservation,
    ReservationStatus,
)
from promo_engine.services import audit_trail, events

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BATCH_SIZE = 100
_rng = secrets.SystemRandom()


@dataclass(frozen=True)
class Reservation:
    id: uuid.UUID
    code: str
    campaign_id: uuid.UUID
    customer_id: str
    holder_id: str
    status: ReservationStatus
    reserved_at: datetime
    expires_at: datetime
    closed_at: datetime | None = None


@dataclass(frozen=True)
class PoolStats:
    campaign_id: uuid.UUID
    pool_id: uuid.UUID
    total: int
    available: int
    reserved: int
    redeemed: int
    expired: int
    per_customer_limit: int
    expires_at: datetime
    retired_at: datetime | None


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def generate_coupon_code(*, prefix: str, length: int = 8) -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(max(4, int(length))))
    return f"{prefix}-{suffix}".strip("-").upper()[:40]


def _reservation_view(res: CouponReservation, code: str) -> Reservation:
    return Reservation(
        id=res.id,
        code=code,
        campaign_id=res.campaign_id,
        customer_id=res.customer_id,
        holder_id=res.holder_id,
        status=res.status,
        reserved_at=as_utc(res.reserved_at),
        expires_at=as_utc(res.expires_at),
        closed_at=as_utc(res.closed_at),
    )


async def _get_pool(session: AsyncSession, campaign_id: uuid.UUID) -> CouponPool | None:
    stmt = select(CouponPool).where(CouponPool.campaign_id == campaign_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def build_pool(
    session: AsyncSession,
    campaign: Campaign,
    *,
    size: int,
    per_customer_limit: int | None = None,
    code_prefix: str | None = None,
    expires_at: datetime | None = None,
) -> CouponPool:
    """Generate a pool and its codes inside the caller's transaction."""
    if int(size) < 1:
        raise ValidationError("Coupon pool size must be at least 1")
    limit = int(per_customer_limit if per_customer_limit is not None else settings.coupon_per_customer_limit)
    if limit < 1:
        raise ValidationError("per_customer_limit must be at least 1")
    now = utcnow()
    prefix = (code_prefix if code_prefix is not None else settings.coupon_code_prefix).strip().upper()
    expiry = as_utc(expires_at) if expires_at else now + timedelta(days=int(settings.coupon_default_expiry_days))
    if expiry <= now:
        raise ValidationError("Coupon pool expiry must be in the future")

    pool = CouponPool(
        campaign_id=campaign.id,
        total_size=int(size),
        per_customer_limit=limit,
        code_prefix=prefix,
        expires_at=expiry,
    )
    session.add(pool)
    await session.flush()

    remaining = int(size)
    while remaining > 0:
        wanted = min(_BATCH_SIZE, remaining)
        batch: set[str] = set()
        while len(batch) < wanted:
            batch.add(generate_coupon_code(prefix=prefix, length=settings.coupon_code_length))
            if len(batch) == wanted:
                taken = (await session.execute(select(CouponCode.code).where(CouponCode.code.in_(batch)))).scalars().all()
                batch.difference_update(taken)
        session.add_all(
            [
                CouponCode(pool_id=pool.id, campaign_id=campaign.id, code=code, expires_at=expiry)
                for code in sorted(batch)
            ]
        )
        await session.flush()
        remaining -= wanted
    logger.info("coupon_pool_created", extra={"campaign_id": str(campaign.id), "size": int(size)})
    return pool


async def create_pool(
    session: AsyncSession,
    campaign_id: uuid.UUID,
    *,
    size: int | None = None,
    per_customer_limit: int | None = None,
    code_prefix: str | None = None,
    expires_at: datetime | None = None,
) -> PoolStats:
    async with store_guard("coupon_create_pool"):
        campaign = await session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found")
        if campaign.status == CampaignStatus.expired:
            raise ValidationError("Expired campaigns cannot receive a coupon pool")
        if await _get_pool(session, campaign_id) is not None:
            raise ValidationError("Campaign already has a coupon pool")
        pool_size = size if size is not None else campaign.coupon_pool_size
        if not pool_size:
            raise ValidationError("Coupon pool size is required")
        await build_pool(
            session,
            campaign,
            size=int(pool_size),
            per_customer_limit=per_customer_limit,
            code_prefix=code_prefix,
            expires_at=expires_at,
        )
        await session.commit()
        return await pool_stats(session, campaign_id)


async def _take_usage_slot(session: AsyncSession, *, campaign_id: uuid.UUID, customer_id: str, limit: int) -> bool:
    stmt = (
        update(CouponCustomerUsage)
        .where(
            CouponCustomerUsage.campaign_id == campaign_id,
            CouponCustomerUsage.customer_id == customer_id,
            CouponCustomerUsage.held < limit,
        )
        .values(held=CouponCustomerUsage.held + 1)
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount:
        return True
    existing = (
        await session.execute(
            select(CouponCustomerUsage.id).where(
                CouponCustomerUsage.campaign_id == campaign_id,
                CouponCustomerUsage.customer_id == customer_id,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        return False
    try:
        async with session.begin_nested():
            session.add(CouponCustomerUsage(campaign_id=campaign_id, customer_id=customer_id, held=0))
    except IntegrityError:
        # A concurrent first reservation created the row; the update below sees it.
        logger.debug("coupon_usage_row_race", extra={"campaign_id": str(campaign_id)})
    return bool((await session.execute(stmt)).rowcount)


async def _return_usage_slot(session: AsyncSession, *, campaign_id: uuid.UUID, customer_id: str | None) -> None:
    if not customer_id:
        return
    await session.execute(
        update(CouponCustomerUsage)
        .where(
            CouponCustomerUsage.campaign_id == campaign_id,
            CouponCustomerUsage.customer_id == customer_id,
        )
        .values(held=case((CouponCustomerUsage.held >= 1, CouponCustomerUsage.held - 1), else_=0))
        .execution_options(synchronize_session=False)
    )


async def _expire_hold(
    session: AsyncSession,
    *,
    reservation_id: uuid.UUID,
    code_id: uuid.UUID,
    code: str,
    campaign_id: uuid.UUID,
    customer_id: str | None,
    holder_id: str | None,
    now: datetime,
) -> bool:
    """Reclaim one lapsed reservation; returns False when another caller got there first."""
    claimed = await session.execute(
        update(CouponReservation)
        .where(
            CouponReservation.id == reservation_id,
            CouponReservation.status == ReservationStatus.active,
            CouponReservation.expires_at <= now,
        )
        .values(status=ReservationStatus.expired, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        return False
    await session.execute(
        update(CouponCode)
        .where(
            CouponCode.id == code_id,
            CouponCode.status == CouponCodeStatus.reserved,
            CouponCode.reservation_id == reservation_id,
        )
        .values(
            status=CouponCodeStatus.available,
            reservation_id=None,
            holder_id=None,
            reserved_customer_id=None,
            reserved_until=None,
            version=CouponCode.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await _return_usage_slot(session, campaign_id=campaign_id, customer_id=customer_id)
    await audit_trail.record_coupon_event(
        session,
        kind=AuditKind.coupon_reclaimed,
        campaign_id=campaign_id,
        code=code,
        reservation_id=reservation_id,
        customer_id=customer_id,
        holder_id=holder_id,
    )
    return True


async def _reclaim_customer_holds(session: AsyncSession, *, campaign_id: uuid.UUID, customer_id: str, now: datetime) -> int:
    rows = (
        await session.execute(
            select(CouponReservation.id, CouponReservation.code_id, CouponReservation.holder_id, CouponCode.code)
            .join(CouponCode, CouponCode.id == CouponReservation.code_id)
            .where(
                CouponReservation.campaign_id == campaign_id,
                CouponReservation.customer_id == customer_id,
                CouponReservation.status == ReservationStatus.active,
                CouponReservation.expires_at <= now,
            )
        )
    ).all()
    reclaimed = 0
    for res_id, code_id, holder_id, code in rows:
        if await _expire_hold(
            session,
            reservation_id=res_id,
            code_id=code_id,
            code=code,
            campaign_id=campaign_id,
            customer_id=customer_id,
            holder_id=holder_id,
            now=now,
        ):
            reclaimed += 1
    return reclaimed


async def _available_count(session: AsyncSession, pool_id: uuid.UUID, now: datetime) -> int:
    stmt = select(func.count()).where(
        CouponCode.pool_id == pool_id,
        or_(
            CouponCode.status == CouponCodeStatus.available,
            and_(CouponCode.status == CouponCodeStatus.reserved, CouponCode.reserved_until <= now),
        ),
    )
    return int((await session.execute(stmt)).scalar_one() or 0)


async def _publish_stock_level(session: AsyncSession, *, pool_id: uuid.UUID, campaign_id: uuid.UUID, now: datetime) -> None:
    try:
        available = await _available_count(session, pool_id, now)
    except SQLAlchemyError as exc:
        logger.warning("coupon_stock_check_failed", extra={"campaign_id": str(campaign_id), "error": str(exc)})
        return
    if available == 0:
        events.publish("campaign_exhausted", {"campaign_id": str(campaign_id), "pool_id": str(pool_id)})
    elif available < int(settings.coupon_low_stock_threshold):
        events.publish(
            "coupon_pool_low_stock",
            {"campaign_id": str(campaign_id), "pool_id": str(pool_id), "available": available},
        )


async def _classify_lost_race(session: AsyncSession, code_id: uuid.UUID, code: str) -> Exception:
    await session.rollback()
    status = (await session.execute(select(CouponCode.status).where(CouponCode.id == code_id))).scalar_one_or_none()
    if status == CouponCodeStatus.redeemed:
        return AlreadyRedeemed(f"Coupon {code} was already redeemed")
    if status == CouponCodeStatus.expired:
        return CouponExpired(f"Coupon {code} has expired")
    return AlreadyReservedByOther(f"Coupon {code} is reserved by another order")


async def reserve(
    session: AsyncSession,
    code: str,
    customer_id: str,
    holder_id: str,
    *,
    now: datetime | None = None,
) -> Reservation:
    """Place a time-limited hold on one coupon code.

    The code moves ``available -> reserved`` through a single conditional UPDATE and the
    customer's usage counter is taken in the same transaction, so two concurrent callers
    can never both hold the code and a customer can never exceed the pool's limit.
    Calling again with the same holder and customer returns the existing hold.
    """
    normalized = normalize_code(code)
    customer = (customer_id or "").strip()
    holder = (holder_id or "").strip()
    if not normalized:
        raise CouponNotFound("Coupon code is required")
    if not customer or not holder:
        raise ValidationError("customer_id and holder_id are required to reserve a coupon")
    now = now or utcnow()
    async with store_guard("coupon_reserve"):
        return await _reserve(session, normalized, customer, holder, now)


async def _reserve(session: AsyncSession, code: str, customer_id: str, holder_id: str, now: datetime) -> Reservation:
    row = (
        await session.execute(
            select(CouponCode, CouponPool, Campaign)
            .join(CouponPool, CouponPool.id == CouponCode.pool_id)
            .join(Campaign, Campaign.id == CouponCode.campaign_id)
            .where(CouponCode.code == code)
            .execution_options(populate_existing=True)
        )
    ).one_or_none()
    if row is None:
        raise CouponNotFound(f"Coupon {code} not found")
    coupon, pool, campaign = row
    code_id = coupon.id
    campaign_id = coupon.campaign_id
    pool_id = pool.id
    limit = int(pool.per_customer_limit or 1)

    if coupon.status == CouponCodeStatus.redeemed:
        raise AlreadyRedeemed(f"Coupon {code} was already redeemed")
    if (
        coupon.status == CouponCodeStatus.expired
        or pool.retired_at is not None
        or as_utc(coupon.expires_at) <= now
        or campaign.status == CampaignStatus.expired
        or as_utc(campaign.ends_at) <= now
    ):
        raise CouponExpired(f"Coupon {code} has expired")
    if not campaign.is_evaluable(now):
        raise CouponNotFound(f"Coupon {code} belongs to a campaign that is not active")

    if coupon.status == CouponCodeStatus.reserved:
        held_until = as_utc(coupon.reserved_until)
        if held_until is not None and held_until > now:
            if coupon.holder_id == holder_id and coupon.reserved_customer_id == customer_id and coupon.reservation_id:
                existing = await session.get(CouponReservation, coupon.reservation_id, populate_existing=True)
                if existing is not None and existing.status == ReservationStatus.active:
                    return _reservation_view(existing, code)
            raise AlreadyReservedByOther(f"Coupon {code} is reserved by another order")
        if coupon.reservation_id is not None:
            await _expire_hold(
                session,
                reservation_id=coupon.reservation_id,
                code_id=code_id,
                code=code,
                campaign_id=campaign_id,
                customer_id=coupon.reserved_customer_id,
                holder_id=coupon.holder_id,
                now=now,
            )

    await _reclaim_customer_holds(session, campaign_id=campaign_id, customer_id=customer_id, now=now)
    if not await _take_usage_slot(session, campaign_id=campaign_id, customer_id=customer_id, limit=limit):
        await session.rollback()
        raise UsageLimitExceeded(f"Customer already holds or used {limit} coupon(s) of this campaign")

    reservation_id = uuid.uuid4()
    expires_at = now + timedelta(minutes=int(settings.coupon_reservation_ttl_minutes))
    swapped = await session.execute(
        update(CouponCode)
        .where(CouponCode.id == code_id, CouponCode.status == CouponCodeStatus.available)
        .values(
            status=CouponCodeStatus.reserved,
            reservation_id=reservation_id,
            holder_id=holder_id,
            reserved_customer_id=customer_id,
            reserved_until=expires_at,
            version=CouponCode.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if swapped.rowcount != 1:
        raise await _classify_lost_race(session, code_id, code)

    reservation = CouponReservation(
        id=reservation_id,
        code_id=code_id,
        campaign_id=campaign_id,
        customer_id=customer_id,
        holder_id=holder_id,
        status=ReservationStatus.active,
        reserved_at=now,
        expires_at=expires_at,
    )
    session.add(reservation)
    await audit_trail.record_coupon_event(
        session,
        kind=AuditKind.coupon_reserved,
        campaign_id=campaign_id,
        code=code,
        reservation_id=reservation_id,
        customer_id=customer_id,
        holder_id=holder_id,
    )
    await session.commit()
    logger.info(
        "coupon_reserved",
        extra={"campaign_id": str(campaign_id), "reservation_id": str(reservation_id), "holder_id": holder_id},
    )
    await _publish_stock_level(session, pool_id=pool_id, campaign_id=campaign_id, now=now)
    return Reservation(
        id=reservation_id,
        code=code,
        campaign_id=campaign_id,
        customer_id=customer_id,
        holder_id=holder_id,
        status=ReservationStatus.active,
        reserved_at=now,
        expires_at=expires_at,
    )


async def reserve_next(
    session: AsyncSession,
    campaign_id: uuid.UUID,
    customer_id: str,
    holder_id: str,
    *,
    now: datetime | None = None,
) -> Reservation:
    """Reserve any free code of the campaign's pool."""
    now = now or utcnow()
    attempts = max(1, int(settings.coupon_reserve_next_attempts))
    async with store_guard("coupon_reserve_next"):
        pool = await _get_pool(session, campaign_id)
        if pool is None:
            raise CouponNotFound(f"Campaign {campaign_id} has no coupon pool")
        pool_id = pool.id
        candidates = list(
            (
                await session.execute(
                    select(CouponCode.code)
                    .where(
                        CouponCode.pool_id == pool_id,
                        or_(
                            CouponCode.status == CouponCodeStatus.available,
                            and_(CouponCode.status == CouponCodeStatus.reserved, CouponCode.reserved_until <= now),
                        ),
                    )
                    .limit(attempts * 4)
                )
            ).scalars()
        )
    if not candidates:
        raise PoolExhausted(f"Coupon pool of campaign {campaign_id} is exhausted")
    _rng.shuffle(candidates)
    for code in candidates[:attempts]:
        try:
            return await reserve(session, code, customer_id, holder_id, now=now)
        except (AlreadyReservedByOther, AlreadyRedeemed):
            continue
    async with store_guard("coupon_reserve_next"):
        remaining = await _available_count(session, pool_id, now)
    if remaining == 0:
        raise PoolExhausted(f"Coupon pool of campaign {campaign_id} is exhausted")
    raise AlreadyReservedByOther("Coupon pool is under contention; retry")


async def _load_reservation(session: AsyncSession, reservation_id: uuid.UUID) -> tuple[CouponReservation, str]:
    row = (
        await session.execute(
            select(CouponReservation, CouponCode.code)
            .join(CouponCode, CouponCode.id == CouponReservation.code_id)
            .where(CouponReservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
    ).one_or_none()
    if row is None:
        raise ReservationNotFound(f"Reservation {reservation_id} not found")
    return row[0], row[1]


async def confirm(session: AsyncSession, reservation_id: uuid.UUID, *, now: datetime | None = None) -> Reservation:
    """Redeem the reserved code. Confirming twice returns the confirmed reservation."""
    now = now or utcnow()
    async with store_guard("coupon_confirm"):
        res, code = await _load_reservation(session, reservation_id)
        view = _reservation_view(res, code)
        if view.status == ReservationStatus.confirmed:
            return view
        if view.status == ReservationStatus.released:
            raise ReservationNotFound(f"Reservation {reservation_id} was released")
        if view.status == ReservationStatus.expired:
            raise CouponExpired(f"Reservation {reservation_id} has expired")
        if view.expires_at <= now:
            await _expire_hold(
                session,
                reservation_id=view.id,
                code_id=res.code_id,
                code=code,
                campaign_id=view.campaign_id,
                customer_id=view.customer_id,
                holder_id=view.holder_id,
                now=now,
            )
            await session.commit()
            raise CouponExpired(f"Reservation {reservation_id} has expired")

        code_id = res.code_id
        claimed = await session.execute(
            update(CouponReservation)
            .where(
                CouponReservation.id == view.id,
                CouponReservation.status == ReservationStatus.active,
                CouponReservation.expires_at > now,
            )
            .values(status=ReservationStatus.confirmed, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        redeemed = None
        if claimed.rowcount:
            redeemed = await session.execute(
                update(CouponCode)
                .where(
                    CouponCode.id == code_id,
                    CouponCode.status == CouponCodeStatus.reserved,
                    CouponCode.reservation_id == view.id,
                )
                .values(
                    status=CouponCodeStatus.redeemed,
                    redeemed_by=view.customer_id,
                    redeemed_at=now,
                    reserved_until=None,
                    version=CouponCode.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
        if redeemed is None or redeemed.rowcount != 1:
            await session.rollback()
            res, code = await _load_reservation(session, reservation_id)
            if res.status == ReservationStatus.confirmed:
                return _reservation_view(res, code)
            raise CouponExpired(f"Reservation {reservation_id} is no longer active")

        await audit_trail.record_coupon_event(
            session,
            kind=AuditKind.coupon_confirmed,
            campaign_id=view.campaign_id,
            code=code,
            reservation_id=view.id,
            customer_id=view.customer_id,
            holder_id=view.holder_id,
        )
        await session.commit()
    logger.info("coupon_confirmed", extra={"campaign_id": str(view.campaign_id), "reservation_id": str(view.id)})
    return Reservation(
        id=view.id,
        code=code,
        campaign_id=view.campaign_id,
        customer_id=view.customer_id,
        holder_id=view.holder_id,
        status=ReservationStatus.confirmed,
        reserved_at=view.reserved_at,
        expires_at=view.expires_at,
        closed_at=now,
    )


async def release(session: AsyncSession, reservation_id: uuid.UUID, *, now: datetime | None = None) -> Reservation:
    """Return the code to the pool. Releasing an already closed hold is a no-op."""
    now = now or utcnow()
    async with store_guard("coupon_release"):
        res, code = await _load_reservation(session, reservation_id)
        view = _reservation_view(res, code)
        if view.status == ReservationStatus.confirmed:
            raise AlreadyRedeemed(f"Reservation {reservation_id} was already confirmed")
        if view.status in (ReservationStatus.released, ReservationStatus.expired):
            return view

        code_id = res.code_id
        claimed = await session.execute(
            update(CouponReservation)
            .where(CouponReservation.id == view.id, CouponReservation.status == ReservationStatus.active)
            .values(status=ReservationStatus.released, closed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not claimed.rowcount:
            await session.rollback()
            res, code = await _load_reservation(session, reservation_id)
            if res.status == ReservationStatus.confirmed:
                raise AlreadyRedeemed(f"Reservation {reservation_id} was already confirmed")
            return _reservation_view(res, code)

        await session.execute(
            update(CouponCode)
            .where(
                CouponCode.id == code_id,
                CouponCode.status == CouponCodeStatus.reserved,
                CouponCode.reservation_id == view.id,
            )
            .values(
                status=CouponCodeStatus.available,
                reservation_id=None,
                holder_id=None,
                reserved_customer_id=None,
                reserved_until=None,
                version=CouponCode.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await _return_usage_slot(session, campaign_id=view.campaign_id, customer_id=view.customer_id)
        await audit_trail.record_coupon_event(
            session,
            kind=AuditKind.coupon_released,
            campaign_id=view.campaign_id,
            code=code,
            reservation_id=view.id,
            customer_id=view.customer_id,
            holder_id=view.holder_id,
        )
        await session.commit()
    logger.info("coupon_released", extra={"campaign_id": str(view.campaign_id), "reservation_id": str(view.id)})
    return Reservation(
        id=view.id,
        code=code,
        campaign_id=view.campaign_id,
        customer_id=view.customer_id,
        holder_id=view.holder_id,
        status=ReservationStatus.released,
        reserved_at=view.reserved_at,
        expires_at=view.expires_at,
        closed_at=now,
    )


async def pool_stats(session: AsyncSession, campaign_id: uuid.UUID, *, now: datetime | None = None) -> PoolStats:
    now = now or utcnow()
    async with store_guard("coupon_pool_stats"):
        pool = await _get_pool(session, campaign_id)
        if pool is None:
            raise CouponNotFound(f"Campaign {campaign_id} has no coupon pool")
        counts = dict(
            (
                await session.execute(
                    select(CouponCode.status, func.count()).where(CouponCode.pool_id == pool.id).group_by(CouponCode.status)
                )
            ).all()
        )
        lapsed = int(
            (
                await session.execute(
                    select(func.count()).where(
                        CouponCode.pool_id == pool.id,
                        CouponCode.status == CouponCodeStatus.reserved,
                        CouponCode.reserved_until <= now,
                    )
                )
            ).scalar_one()
            or 0
        )
    reserved = int(counts.get(CouponCodeStatus.reserved, 0))
    return PoolStats(
        campaign_id=campaign_id,
        pool_id=pool.id,
        total=int(pool.total_size),
        available=int(counts.get(CouponCodeStatus.available, 0)) + lapsed,
        reserved=reserved - lapsed,
        redeemed=int(counts.get(CouponCodeStatus.redeemed, 0)),
        expired=int(counts.get(CouponCodeStatus.expired, 0)),
        per_customer_limit=int(pool.per_customer_limit),
        expires_at=as_utc(pool.expires_at),
        retired_at=as_utc(pool.retired_at),
    )


async def retire_pool(session: AsyncSession, campaign_id: uuid.UUID, *, now: datetime | None = None) -> int:
    """Expire every unredeemed code of the campaign. The caller commits."""
    now = now or utcnow()
    pool = await _get_pool(session, campaign_id)
    if pool is None:
        return 0
    await session.execute(
        update(CouponPool)
        .where(CouponPool.id == pool.id, CouponPool.retired_at.is_(None))
        .values(retired_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(CouponReservation)
        .where(CouponReservation.campaign_id == campaign_id, CouponReservation.status == ReservationStatus.active)
        .values(status=ReservationStatus.expired, closed_at=now)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        update(CouponCode)
        .where(
            CouponCode.pool_id == pool.id,
            CouponCode.status.in_([CouponCodeStatus.available, CouponCodeStatus.reserved]),
        )
        .values(status=CouponCodeStatus.expired, reserved_until=None, version=CouponCode.version + 1)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def reclaim_expired_reservations(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Sweep lapsed holds back into their pools. Reservation paths also reclaim lazily."""
    now = now or utcnow()
    batch = max(1, int(limit or settings.housekeeping_batch_limit))
    rows = (
        await session.execute(
            select(
                CouponReservation.id,
                CouponReservation.code_id,
                CouponReservation.campaign_id,
                CouponReservation.customer_id,
                CouponReservation.holder_id,
                CouponCode.code,
            )
            .join(CouponCode, CouponCode.id == CouponReservation.code_id)
            .where(CouponReservation.status == ReservationStatus.active, CouponReservation.expires_at <= now)
            .order_by(CouponReservation.expires_at.asc())
            .limit(batch)
        )
    ).all()
    reclaimed = 0
    for res_id, code_id, campaign_id, customer_id, holder_id, code in rows:
        if await _expire_hold(
            session,
            reservation_id=res_id,
            code_id=code_id,
            code=code,
            campaign_id=campaign_id,
            customer_id=customer_id,
            holder_id=holder_id,
            now=now,
        ):
            reclaimed += 1
    await session.commit()
    if reclaimed:
        logger.info("coupon_reservations_reclaimed", extra={"count": reclaimed})
    return reclaimed


async def campaign_for_code(session: AsyncSession, code: str) -> uuid.UUID | None:
    normalized = normalize_code(code)
    if not normalized:
        return None
    async with store_guard("coupon_lookup"):
        return (
            await session.execute(select(CouponCode.campaign_id).where(CouponCode.code == normalized))
        ).scalar_one_or_none()
