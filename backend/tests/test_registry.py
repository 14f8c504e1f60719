import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from promo_engine.core.errors import CampaignNotFound, ConditionSyntaxError, ValidationError
from promo_engine.models.campaign import CampaignStatus, DiscountType
from promo_engine.schemas.campaign import CampaignUpsert
from promo_engine.services import coupon_pool
from promo_engine.services.conditions import EvaluationContext, compile_condition
from promo_engine.services.pricing import DiscountSpec
from promo_engine.services.registry import (
    CampaignView,
    RegistrySnapshot,
    activate_due,
    campaign_stats,
    expire,
    expire_due,
    find_candidates,
    get_campaign,
    list_campaigns,
    registry,
    upsert_campaign,
)


def _payload(**overrides) -> CampaignUpsert:
    now = datetime.now(timezone.utc)
    data = {
        "name": "Spring sale",
        "condition": "subtotal >= 50",
        "discount_type": DiscountType.percentage,
        "discount_value": Decimal("10"),
        "starts_at": now - timedelta(days=1),
        "ends_at": now + timedelta(days=7),
        "status": CampaignStatus.active,
    }
    data.update(overrides)
    return CampaignUpsert(**data)


def _context(**overrides) -> EvaluationContext:
    data = {
        "subtotal": Decimal("120"),
        "item_count": 2,
        "categories": frozenset({"shoes"}),
        "products": frozenset({"p-1"}),
        "tags": frozenset(),
        "segment": "vip",
        "city": "Cluj",
        "timestamp": datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
        "first_order": False,
        "order_count": 3,
    }
    data.update(overrides)
    return EvaluationContext(**data)


def _view(name: str, *, condition: str = "true", **overrides) -> CampaignView:
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    data = {
        "id": uuid.uuid5(uuid.NAMESPACE_DNS, name),
        "name": name,
        "condition": condition,
        "predicate": compile_condition(condition),
        "discount": DiscountSpec(discount_type=DiscountType.percentage, value=Decimal("5")),
        "priority": 100,
        "exclusivity_group": None,
        "compounding": False,
        "starts_at": now - timedelta(days=1),
        "ends_at": now + timedelta(days=1),
        "status": CampaignStatus.active,
        "max_concurrent_applications": 10,
        "requires_coupon": False,
    }
    data.update(overrides)
    return CampaignView(**data)


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("overrides", "fragment"),
    [
        ({"discount_value": Decimal("150")}, "Percentage"),
        ({"discount_value": Decimal("0")}, "Percentage"),
        ({"discount_type": DiscountType.fixed_amount, "discount_value": Decimal("0")}, "Fixed"),
        ({"discount_type": DiscountType.buy_x_get_y, "buy_quantity": 2}, "Buy-X-get-Y"),
        ({"max_discount": Decimal("0")}, "max_discount"),
        ({"status": CampaignStatus.expired}, "expire operation"),
        ({"requires_coupon": True}, "coupon_pool_size"),
    ],
)
async def test_upsert_rejects_invalid_definitions(open_store, overrides, fragment) -> None:
    SessionLocal = await open_store()
    async with SessionLocal() as session:
        with pytest.raises(ValidationError) as exc:
            await upsert_campaign(session, _payload(**overrides))
    assert fragment in str(exc.value.detail)


@pytest.mark.anyio
async def test_upsert_rejects_inverted_window_and_bad_condition(open_store) -> None:
    SessionLocal = await open_store()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        with pytest.raises(ValidationError, match="starts_at"):
            await upsert_campaign(session, _payload(starts_at=now, ends_at=now))
        with pytest.raises(ConditionSyntaxError):
            await upsert_campaign(session, _payload(condition="subtotal >>= 5"))
        rows, total = await list_campaigns(session)
    assert rows == []
    assert total == 0


@pytest.mark.anyio
async def test_snapshot_reloads_only_when_version_moves(open_store) -> None:
    SessionLocal = await open_store()
    async with SessionLocal() as session:
        empty = await registry.get_snapshot(session)
    assert empty.version == 0
    assert empty.campaigns == ()

    async with SessionLocal() as session:
        created = await upsert_campaign(session, _payload(condition="SUBTOTAL >= 50"))
    assert created.condition == "SUBTOTAL >= 50"
    assert created.priority == 100

    async with SessionLocal() as session:
        first = await registry.get_snapshot(session)
    async with SessionLocal() as session:
        again = await registry.get_snapshot(session)
    assert first.version == 1
    assert again is first
    assert [view.id for view in first.campaigns] == [created.id]

    async with SessionLocal() as session:
        await upsert_campaign(session, _payload(priority=500), campaign_id=created.id)
    async with SessionLocal() as session:
        second = await registry.get_snapshot(session)
    assert second.version == 2
    assert second.get(created.id).priority == 500
    assert first.get(created.id).priority == 100
    assert registry.cached_snapshot() is second


@pytest.mark.anyio
async def test_snapshot_orders_by_priority_then_start(open_store) -> None:
    SessionLocal = await open_store()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        low = await upsert_campaign(session, _payload(name="low", priority=10))
        late = await upsert_campaign(session, _payload(name="late", priority=50, starts_at=now - timedelta(hours=1)))
        early = await upsert_campaign(session, _payload(name="early", priority=50, starts_at=now - timedelta(days=2)))
    async with SessionLocal() as session:
        snapshot = await registry.get_snapshot(session)
    assert [view.id for view in snapshot.campaigns] == [early.id, late.id, low.id]
    assert snapshot.version == 3


@pytest.mark.anyio
async def test_get_and_list_campaigns(open_store) -> None:
    SessionLocal = await open_store()
    async with SessionLocal() as session:
        active = await upsert_campaign(session, _payload(name="active"))
        await upsert_campaign(session, _payload(name="scheduled", status=CampaignStatus.scheduled))
        await upsert_campaign(session, _payload(name="paused", status=CampaignStatus.paused))

    async with SessionLocal() as session:
        fetched = await get_campaign(session, active.id)
        assert fetched.name == "active"
        with pytest.raises(CampaignNotFound):
            await get_campaign(session, uuid.uuid4())
        rows, total = await list_campaigns(session, page=1, limit=2)
        assert total == 3
        assert len(rows) == 2
        rows, total = await list_campaigns(session, status=CampaignStatus.paused)
        assert [row.name for row in rows] == ["paused"]
        assert total == 1


def test_find_candidates_honours_window_status_and_coupon_gate() -> None:
    now = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
    live = _view("live")
    future = _view("future", starts_at=now + timedelta(hours=1))
    ended = _view("ended", ends_at=now)
    paused = _view("paused", status=CampaignStatus.paused)
    gated = _view("gated", requires_coupon=True)
    picky = _view("picky", condition="segment = 'gold'")
    snapshot = RegistrySnapshot(version=1, campaigns=(live, future, ended, paused, gated, picky))

    candidates = find_candidates(snapshot, _context(), now=now)
    assert [(c.campaign.id, c.matched) for c in candidates] == [(live.id, True), (picky.id, False)]

    with_coupon = find_candidates(snapshot, _context(), now=now, coupon_campaign_ids={gated.id})
    assert gated.id in {c.campaign.id for c in with_coupon}


def test_find_candidates_isolates_faulting_predicate() -> None:
    def _explode(ctx, campaign_id=None):  # type: ignore[no-untyped-def]
        raise ZeroDivisionError("boom")

    broken = replace(_view("broken"), predicate=_explode)
    healthy = _view("healthy")
    snapshot = RegistrySnapshot(version=1, campaigns=(broken, healthy))
    candidates = find_candidates(snapshot, _context(), now=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))
    by_id = {c.campaign.id: c for c in candidates}
    assert by_id[broken.id].fault is not None
    assert by_id[broken.id].fault.campaign_id == broken.id
    assert by_id[broken.id].matched is False
    assert by_id[healthy.id].matched is True


@pytest.mark.anyio
async def test_expire_retires_pool_and_is_idempotent(open_store) -> None:
    SessionLocal = await open_store()
    async with SessionLocal() as session:
        campaign = await upsert_campaign(session, _payload(requires_coupon=True, coupon_pool_size=3))
        campaign_id = campaign.id
    async with SessionLocal() as session:
        stats = await coupon_pool.pool_stats(session, campaign_id)
    assert stats.total == 3
    assert stats.available == 3

    async with SessionLocal() as session:
        expired = await expire(session, campaign_id)
    assert expired.status == CampaignStatus.expired
    async with SessionLocal() as session:
        snapshot = await registry.get_snapshot(session)
    assert snapshot.get(campaign_id) is None

    async with SessionLocal() as session:
        await expire(session, campaign_id)
    async with SessionLocal() as session:
        assert (await registry.get_snapshot(session)).version == snapshot.version
        stats = await coupon_pool.pool_stats(session, campaign_id)
    assert stats.expired == 3
    assert stats.available == 0
    assert stats.retired_at is not None

    async with SessionLocal() as session:
        with pytest.raises(ValidationError, match="Expired campaigns"):
            await upsert_campaign(session, _payload(name="revived"), campaign_id=campaign_id)
        with pytest.raises(CampaignNotFound):
            await expire(session, uuid.uuid4())


@pytest.mark.anyio
async def test_activate_and_expire_due_campaigns(open_store) -> None:
    SessionLocal = await open_store()
    now = datetime.now(timezone.utc)
    async with SessionLocal() as session:
        due = await upsert_campaign(session, _payload(name="due", status=CampaignStatus.scheduled))
        later = await upsert_campaign(
            session,
            _payload(
                name="later",
                status=CampaignStatus.scheduled,
                starts_at=now + timedelta(days=1),
                ends_at=now + timedelta(days=2),
            ),
        )
        over = await upsert_campaign(
            session,
            _payload(name="over", starts_at=now - timedelta(days=3), ends_at=now - timedelta(days=1)),
        )

    async with SessionLocal() as session:
        assert await activate_due(session, now=now) == 1
    async with SessionLocal() as session:
        assert await expire_due(session, now=now) == 1
    async with SessionLocal() as session:
        assert (await get_campaign(session, due.id)).status == CampaignStatus.active
        assert (await get_campaign(session, later.id)).status == CampaignStatus.scheduled
        assert (await get_campaign(session, over.id)).status == CampaignStatus.expired
        assert await activate_due(session, now=now) == 0
        assert await expire_due(session, now=now) == 0


@pytest.mark.anyio
async def test_campaign_stats_without_applications(open_store) -> None:
    SessionLocal = await open_store()
    async with SessionLocal() as session:
        campaign = await upsert_campaign(session, _payload())
    async with SessionLocal() as session:
        stats = await campaign_stats(session, campaign.id)
    assert stats["campaign_id"] == campaign.id
    assert stats["applications"] == 0
    assert stats["total_discount"] == Decimal("0")
    assert stats["rejections"] == {}
