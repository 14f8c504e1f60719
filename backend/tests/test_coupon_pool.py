import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from promo_engine.core.config import settings
from promo_engine.core.errors import (
    AlreadyRedeemed,
    AlreadyReservedByOther,
    CouponExpired,
    CouponNotFound,
    PoolExhausted,
    ReservationNotFound,
    UsageLimitExceeded,
    ValidationError,
)
from promo_engine.models.audit import AuditKind
from promo_engine.models.campaign import CampaignStatus, DiscountType
from promo_engine.models.coupon import CouponCode, CouponCodeStatus, ReservationStatus
from promo_engine.schemas.campaign import CampaignUpsert
from promo_engine.services import audit_trail, coupon_pool
from promo_engine.services.registry import expire, upsert_campaign


def _payload(**overrides) -> CampaignUpsert:
    now = datetime.now(timezone.utc)
    data = {
        "name": "Coupon week",
        "discount_type": DiscountType.fixed_amount,
        "discount_value": Decimal("15"),
        "starts_at": now - timedelta(days=1),
        "ends_at": now + timedelta(days=7),
        "status": CampaignStatus.active,
    }
    data.update(overrides)
    return CampaignUpsert(**data)


async def _coupon_campaign(SessionLocal, *, size: int = 3, per_customer_limit: int | None = None) -> uuid.UUID:
    async with SessionLocal() as session:
        campaign = await upsert_campaign(session, _payload())
        await coupon_pool.create_pool(
            session, campaign.id, size=size, per_customer_limit=per_customer_limit, code_prefix="test"
        )
        return campaign.id


async def _codes(SessionLocal, campaign_id: uuid.UUID) -> list[str]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(CouponCode.code).where(CouponCode.campaign_id == campaign_id).order_by(CouponCode.code)
        )
        return list(result.scalars())


def _after_hold_lapses() -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=settings.coupon_reservation_ttl_minutes + 1)


@pytest.mark.anyio
async def test_create_pool_generates_prefixed_unique_codes(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal, size=150)
    codes = await _codes(SessionLocal, campaign_id)
    assert len(codes) == 150
    assert len(set(codes)) == 150
    assert all(code.startswith("TEST-") for code in codes)

    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id)
        assert stats.total == 150
        assert stats.available == 150
        assert stats.per_customer_limit == 1
        with pytest.raises(ValidationError, match="already has"):
            await coupon_pool.create_pool(session, campaign_id, size=5)


@pytest.mark.anyio
async def test_reserve_is_idempotent_for_the_same_holder(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]

    async with SessionLocal() as session:
        first = await coupon_pool.reserve(session, code.lower(), "cust-1", "order-1")
    assert first.status == ReservationStatus.active
    assert first.code == code
    assert first.campaign_id == campaign_id
    assert first.expires_at > first.reserved_at

    async with SessionLocal() as session:
        again = await coupon_pool.reserve(session, code, "cust-1", "order-1")
    assert again.id == first.id

    async with SessionLocal() as session:
        with pytest.raises(AlreadyReservedByOther):
            await coupon_pool.reserve(session, code, "cust-2", "order-2")

    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id)
    assert (stats.available, stats.reserved) == (2, 1)


@pytest.mark.anyio
async def test_confirm_redeems_once(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]

    async with SessionLocal() as session:
        held = await coupon_pool.reserve(session, code, "cust-1", "order-1")
    async with SessionLocal() as session:
        confirmed = await coupon_pool.confirm(session, held.id)
    assert confirmed.status == ReservationStatus.confirmed
    assert confirmed.closed_at is not None

    async with SessionLocal() as session:
        repeated = await coupon_pool.confirm(session, held.id)
    assert repeated.status == ReservationStatus.confirmed

    async with SessionLocal() as session:
        with pytest.raises(AlreadyRedeemed):
            await coupon_pool.reserve(session, code, "cust-2", "order-2")
    async with SessionLocal() as session:
        with pytest.raises(AlreadyRedeemed):
            await coupon_pool.release(session, held.id)
    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id)
        records, total = await audit_trail.query(
            session, audit_trail.AuditFilter(customer_id="cust-1", kind=AuditKind.coupon_confirmed)
        )
    assert stats.redeemed == 1
    assert total == 1
    assert records[0].coupon_code == code


@pytest.mark.anyio
async def test_release_returns_code_to_pool(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]

    async with SessionLocal() as session:
        held = await coupon_pool.reserve(session, code, "cust-1", "order-1")
    async with SessionLocal() as session:
        released = await coupon_pool.release(session, held.id)
    assert released.status == ReservationStatus.released
    async with SessionLocal() as session:
        assert (await coupon_pool.release(session, held.id)).status == ReservationStatus.released
    async with SessionLocal() as session:
        with pytest.raises(ReservationNotFound):
            await coupon_pool.confirm(session, held.id)

    async with SessionLocal() as session:
        other = await coupon_pool.reserve(session, code, "cust-2", "order-2")
    assert other.id != held.id
    async with SessionLocal() as session:
        with pytest.raises(ReservationNotFound):
            await coupon_pool.release(session, uuid.uuid4())


@pytest.mark.anyio
async def test_per_customer_limit(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal, size=4, per_customer_limit=2)
    codes = await _codes(SessionLocal, campaign_id)

    async with SessionLocal() as session:
        first = await coupon_pool.reserve(session, codes[0], "cust-1", "order-1")
    async with SessionLocal() as session:
        await coupon_pool.reserve(session, codes[1], "cust-1", "order-2")
    async with SessionLocal() as session:
        with pytest.raises(UsageLimitExceeded):
            await coupon_pool.reserve(session, codes[2], "cust-1", "order-3")

    async with SessionLocal() as session:
        await coupon_pool.release(session, first.id)
    async with SessionLocal() as session:
        third = await coupon_pool.reserve(session, codes[2], "cust-1", "order-3")
    assert third.code == codes[2]

    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id)
    assert (stats.available, stats.reserved) == (2, 2)


@pytest.mark.anyio
async def test_lapsed_hold_is_reclaimed_lazily(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]
    later = _after_hold_lapses()

    async with SessionLocal() as session:
        stale = await coupon_pool.reserve(session, code, "cust-1", "order-1")
    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id, now=later)
    assert (stats.available, stats.reserved) == (3, 0)

    async with SessionLocal() as session:
        fresh = await coupon_pool.reserve(session, code, "cust-2", "order-2", now=later)
    assert fresh.holder_id == "order-2"

    async with SessionLocal() as session:
        with pytest.raises(CouponExpired):
            await coupon_pool.confirm(session, stale.id, now=later)
    async with SessionLocal() as session:
        rows, _ = await audit_trail.query(session, audit_trail.AuditFilter(kind=AuditKind.coupon_reclaimed))
    assert [row.reservation_id for row in rows] == [stale.id]


@pytest.mark.anyio
async def test_confirm_after_expiry_gives_code_back(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]
    later = _after_hold_lapses()

    async with SessionLocal() as session:
        held = await coupon_pool.reserve(session, code, "cust-1", "order-1")
    async with SessionLocal() as session:
        with pytest.raises(CouponExpired):
            await coupon_pool.confirm(session, held.id, now=later)
    async with SessionLocal() as session:
        with pytest.raises(CouponExpired):
            await coupon_pool.confirm(session, held.id, now=later)
        stats = await coupon_pool.pool_stats(session, campaign_id, now=later)
    assert stats.available == 3

    async with SessionLocal() as session:
        again = await coupon_pool.reserve(session, code, "cust-1", "order-9", now=later)
    assert again.status == ReservationStatus.active


@pytest.mark.anyio
async def test_reclaim_sweep(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    codes = await _codes(SessionLocal, campaign_id)
    async with SessionLocal() as session:
        await coupon_pool.reserve(session, codes[0], "cust-1", "order-1")
    async with SessionLocal() as session:
        await coupon_pool.reserve(session, codes[1], "cust-2", "order-2")

    async with SessionLocal() as session:
        assert await coupon_pool.reclaim_expired_reservations(session) == 0
    async with SessionLocal() as session:
        assert await coupon_pool.reclaim_expired_reservations(session, now=_after_hold_lapses()) == 2
    async with SessionLocal() as session:
        statuses = set((await session.execute(select(CouponCode.status))).scalars())
    assert statuses == {CouponCodeStatus.available}


@pytest.mark.anyio
async def test_reserve_next_until_exhausted(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal, size=2)

    handed_out = set()
    for index in range(2):
        async with SessionLocal() as session:
            reservation = await coupon_pool.reserve_next(session, campaign_id, f"cust-{index}", f"order-{index}")
        handed_out.add(reservation.code)
    assert handed_out == set(await _codes(SessionLocal, campaign_id))

    async with SessionLocal() as session:
        with pytest.raises(PoolExhausted):
            await coupon_pool.reserve_next(session, campaign_id, "cust-9", "order-9")
    async with SessionLocal() as session:
        with pytest.raises(CouponNotFound):
            await coupon_pool.reserve_next(session, uuid.uuid4(), "cust-9", "order-9")


@pytest.mark.anyio
async def test_reserve_rejects_unknown_code_and_missing_identity(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    code = (await _codes(SessionLocal, campaign_id))[0]
    async with SessionLocal() as session:
        with pytest.raises(CouponNotFound):
            await coupon_pool.reserve(session, "NOPE-0000", "cust-1", "order-1")
        with pytest.raises(CouponNotFound):
            await coupon_pool.reserve(session, "   ", "cust-1", "order-1")
        with pytest.raises(ValidationError):
            await coupon_pool.reserve(session, code, "", "order-1")


@pytest.mark.anyio
async def test_codes_of_expired_campaign_cannot_be_reserved(open_store) -> None:
    SessionLocal = await open_store()
    campaign_id = await _coupon_campaign(SessionLocal)
    codes = await _codes(SessionLocal, campaign_id)
    async with SessionLocal() as session:
        held = await coupon_pool.reserve(session, codes[0], "cust-1", "order-1")
    async with SessionLocal() as session:
        await expire(session, campaign_id)

    async with SessionLocal() as session:
        with pytest.raises(CouponExpired):
            await coupon_pool.reserve(session, codes[1], "cust-2", "order-2")
    async with SessionLocal() as session:
        with pytest.raises(CouponExpired):
            await coupon_pool.confirm(session, held.id)


@pytest.mark.anyio
async def test_concurrent_reserve_next_never_oversells(open_store) -> None:
    SessionLocal = await open_store(file_backed=True)
    campaign_id = await _coupon_campaign(SessionLocal, size=5)

    async def _claim(index: int):
        async with SessionLocal() as session:
            return await coupon_pool.reserve_next(session, campaign_id, f"cust-{index}", f"order-{index}")

    results = await asyncio.gather(*(_claim(index) for index in range(6)), return_exceptions=True)
    won = [item for item in results if not isinstance(item, BaseException)]
    lost = [item for item in results if isinstance(item, BaseException)]
    assert len(won) == 5
    assert len({item.code for item in won}) == 5
    assert len(lost) == 1
    assert isinstance(lost[0], PoolExhausted)


@pytest.mark.anyio
async def test_concurrent_reservations_respect_customer_limit(open_store) -> None:
    SessionLocal = await open_store(file_backed=True)
    campaign_id = await _coupon_campaign(SessionLocal, size=5)

    async def _claim(index: int):
        async with SessionLocal() as session:
            return await coupon_pool.reserve_next(session, campaign_id, "cust-1", f"order-{index}")

    results = await asyncio.gather(*(_claim(index) for index in range(3)), return_exceptions=True)
    won = [item for item in results if not isinstance(item, BaseException)]
    assert len(won) == 1
    assert sorted(type(item).__name__ for item in results if isinstance(item, BaseException)) == [
        "UsageLimitExceeded",
        "UsageLimitExceeded",
    ]


@pytest.mark.anyio
async def test_concurrent_holders_of_one_code(open_store) -> None:
    SessionLocal = await open_store(file_backed=True)
    campaign_id = await _coupon_campaign(SessionLocal, size=1)
    code = (await _codes(SessionLocal, campaign_id))[0]

    async def _claim(index: int):
        async with SessionLocal() as session:
            return await coupon_pool.reserve(session, code, f"cust-{index}", f"order-{index}")

    results = await asyncio.gather(_claim(1), _claim(2), return_exceptions=True)
    won = [item for item in results if not isinstance(item, BaseException)]
    lost = [item for item in results if isinstance(item, BaseException)]
    assert len(won) == 1
    assert len(lost) == 1
    assert isinstance(lost[0], AlreadyReservedByOther)
