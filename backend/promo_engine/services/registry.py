"""Campaign registry: persistence of campaign definitions plus the in-process snapshot.

Evaluations read an immutable :class:`RegistrySnapshot`. The snapshot is rebuilt only
when the stored registry version moves, and a rebuild swaps the module-level reference,
so a request that already holds a snapshot never observes a half-applied update.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.clock import as_utc, utcnow
from promo_engine.core.config import settings
from promo_engine.core.errors import CampaignNotFound, ConflictResolutionFault, ConditionSyntaxError, ValidationError
from promo_engine.core.redis_client import cache_key, get_redis, json_dumps, json_loads
from promo_engine.db.session import store_guard
from promo_engine.models.campaign import Campaign, CampaignRegistryState, CampaignStatus, DiscountType, is_live
from promo_engine.models.coupon import CouponPool
from promo_engine.schemas.campaign import CampaignUpsert
from promo_engine.services import audit_trail, coupon_pool, events
from promo_engine.services.conditions import EvaluationContext, Predicate, compile_condition
from promo_engine.services.pricing import DiscountSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CampaignView:
    id: uuid.UUID
    name: str
    condition: str
    predicate: Predicate
    discount: DiscountSpec
    priority: int
    exclusivity_group: str | None
    compounding: bool
    starts_at: datetime
    ends_at: datetime
    status: CampaignStatus
    max_concurrent_applications: int
    requires_coupon: bool
    max_usage: int | None = None
    max_usage_per_customer: int | None = None
    budget: Decimal | None = None

    @property
    def limited(self) -> bool:
        return self.max_usage is not None or self.max_usage_per_customer is not None or self.budget is not None

    @property
    def sort_key(self) -> tuple[int, datetime, str]:
        return (-self.priority, self.starts_at, str(self.id))

    def is_evaluable(self, now: datetime) -> bool:
        return is_live(self.status, self.starts_at, self.ends_at, now)


@dataclass(frozen=True)
class RegistrySnapshot:
    version: int
    campaigns: tuple[CampaignView, ...] = ()
    loaded_at: datetime = field(default_factory=utcnow)

    def get(self, campaign_id: uuid.UUID) -> CampaignView | None:
        for view in self.campaigns:
            if view.id == campaign_id:
                return view
        return None


@dataclass(frozen=True)
class Candidate:
    campaign: CampaignView
    matched: bool
    fault: ConflictResolutionFault | None = None


def _campaign_payload(campaign: Campaign) -> dict[str, Any]:
    return {
        "id": str(campaign.id),
        "name": campaign.name,
        "condition": campaign.condition,
        "discount_type": campaign.discount_type.value,
        "discount_value": str(campaign.discount_value),
        "buy_quantity": campaign.buy_quantity,
        "get_quantity": campaign.get_quantity,
        "max_discount": str(campaign.max_discount) if campaign.max_discount is not None else None,
        "target_category_ids": list(campaign.target_category_ids or []),
        "priority": int(campaign.priority),
        "exclusivity_group": campaign.exclusivity_group,
        "compounding": bool(campaign.compounding),
        "starts_at": as_utc(campaign.starts_at).isoformat(),
        "ends_at": as_utc(campaign.ends_at).isoformat(),
        "status": campaign.status.value,
        "max_concurrent_applications": int(campaign.max_concurrent_applications),
        "requires_coupon": bool(campaign.requires_coupon),
        "max_usage": campaign.max_usage,
        "max_usage_per_customer": campaign.max_usage_per_customer,
        "budget": str(campaign.budget) if campaign.budget is not None else None,
    }


def _view_from_payload(data: dict[str, Any]) -> CampaignView:
    max_discount = data.get("max_discount")
    budget = data.get("budget")
    return CampaignView(
        id=uuid.UUID(str(data["id"])),
        name=str(data["name"]),
        condition=str(data["condition"]),
        predicate=compile_condition(str(data["condition"])),
        discount=DiscountSpec(
            discount_type=DiscountType(data["discount_type"]),
            value=Decimal(str(data["discount_value"])),
            buy_quantity=data.get("buy_quantity"),
            get_quantity=data.get("get_quantity"),
            max_discount=Decimal(str(max_discount)) if max_discount is not None else None,
            target_category_ids=frozenset(str(c) for c in data.get("target_category_ids") or []),
        ),
        priority=int(data["priority"]),
        exclusivity_group=data.get("exclusivity_group"),
        compounding=bool(data.get("compounding")),
        starts_at=as_utc(datetime.fromisoformat(str(data["starts_at"]))),
        ends_at=as_utc(datetime.fromisoformat(str(data["ends_at"]))),
        status=CampaignStatus(data["status"]),
        max_concurrent_applications=int(data["max_concurrent_applications"]),
        requires_coupon=bool(data.get("requires_coupon")),
        max_usage=data.get("max_usage"),
        max_usage_per_customer=data.get("max_usage_per_customer"),
        budget=Decimal(str(budget)) if budget is not None else None,
    )


def _build_views(payloads: Iterable[dict[str, Any]]) -> tuple[CampaignView, ...]:
    views: list[CampaignView] = []
    for data in payloads:
        try:
            views.append(_view_from_payload(data))
        except ConditionSyntaxError as exc:
            logger.error("campaign_condition_invalid", extra={"campaign_id": data.get("id"), "error": str(exc)})
    return tuple(sorted(views, key=lambda view: view.sort_key))


async def _stored_version(session: AsyncSession) -> int:
    version = (
        await session.execute(select(CampaignRegistryState.version).where(CampaignRegistryState.id == 1))
    ).scalar_one_or_none()
    return int(version or 0)


async def _bump_version(session: AsyncSession) -> None:
    stmt = (
        update(CampaignRegistryState)
        .where(CampaignRegistryState.id == 1)
        .values(version=CampaignRegistryState.version + 1, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount:
        return
    try:
        async with session.begin_nested():
            session.add(CampaignRegistryState(id=1, version=1))
    except IntegrityError:
        await session.execute(stmt)


async def _cached_payloads(version: int) -> list[dict[str, Any]] | None:
    client = get_redis()
    if client is None:
        return None
    try:
        raw = await client.get(cache_key("campaigns", "v", version))
    except Exception as exc:
        logger.warning("campaign_cache_read_failed", extra={"error": str(exc)})
        return None
    if not raw:
        return None
    try:
        payloads = json_loads(raw)
    except ValueError:
        return None
    return payloads if isinstance(payloads, list) else None


async def _store_payloads(version: int, payloads: list[dict[str, Any]]) -> None:
    client = get_redis()
    if client is None:
        return
    try:
        await client.set(
            cache_key("campaigns", "v", version),
            json_dumps(payloads),
            ex=max(1, int(settings.cache_ttl_seconds)),
        )
    except Exception as exc:
        logger.warning("campaign_cache_write_failed", extra={"error": str(exc)})


class CampaignRegistry:
    def __init__(self) -> None:
        self._snapshot: RegistrySnapshot | None = None

    async def get_snapshot(self, session: AsyncSession) -> RegistrySnapshot:
        async with store_guard("registry_snapshot"):
            version = await _stored_version(session)
            current = self._snapshot
            if current is not None and current.version == version:
                return current
            payloads = await _cached_payloads(version)
            if payloads is None:
                rows = (
                    await session.execute(
                        select(Campaign)
                        .where(Campaign.status != CampaignStatus.expired)
                        .execution_options(populate_existing=True)
                    )
                ).scalars().all()
                payloads = [_campaign_payload(row) for row in rows]
                await _store_payloads(version, payloads)
        fresh = RegistrySnapshot(version=version, campaigns=_build_views(payloads))
        latest = self._snapshot
        if latest is None or latest.version <= fresh.version:
            self._snapshot = fresh
        logger.info("registry_snapshot_loaded", extra={"version": version, "count": len(fresh.campaigns)})
        return fresh

    def cached_snapshot(self) -> RegistrySnapshot | None:
        return self._snapshot

    def reset(self) -> None:
        self._snapshot = None


registry = CampaignRegistry()


def find_candidates(
    snapshot: RegistrySnapshot,
    ctx: EvaluationContext,
    *,
    now: datetime | None = None,
    coupon_campaign_ids: Iterable[uuid.UUID] = (),
) -> list[Candidate]:
    """Time-eligible campaigns in resolution order, with their predicate outcome.

    Coupon-gated campaigns take part only when a coupon of theirs was reserved for
    this evaluation. A predicate that raises is reported as a fault instead of
    failing the evaluation.
    """
    moment = now or ctx.timestamp
    with_coupon = set(coupon_campaign_ids)
    candidates: list[Candidate] = []
    for view in snapshot.campaigns:
        if not view.is_evaluable(moment):
            continue
        if view.requires_coupon and view.id not in with_coupon:
            continue
        try:
            matched = bool(view.predicate(ctx, str(view.id)))
        except Exception as exc:
            fault = ConflictResolutionFault(view.id, exc)
            logger.warning("campaign_evaluation_fault", extra={"campaign_id": str(view.id), "error": repr(exc)})
            candidates.append(Candidate(campaign=view, matched=False, fault=fault))
            continue
        candidates.append(Candidate(campaign=view, matched=matched))
    return candidates


def _validate_payload(payload: CampaignUpsert) -> None:
    if as_utc(payload.starts_at) >= as_utc(payload.ends_at):
        raise ValidationError("starts_at must be before ends_at")
    value = Decimal(payload.discount_value or 0)
    if payload.discount_type == DiscountType.percentage:
        if value <= 0 or value > 100:
            raise ValidationError("Percentage discounts must be greater than 0 and at most 100")
    elif payload.discount_type == DiscountType.fixed_amount:
        if value <= 0:
            raise ValidationError("Fixed discounts must be greater than 0")
    elif payload.discount_type == DiscountType.buy_x_get_y:
        if not payload.buy_quantity or payload.buy_quantity < 1 or not payload.get_quantity or payload.get_quantity < 1:
            raise ValidationError("Buy-X-get-Y discounts need buy_quantity and get_quantity of at least 1")
    if payload.max_discount is not None and payload.max_discount <= 0:
        raise ValidationError("max_discount must be greater than 0")
    if payload.status == CampaignStatus.expired:
        raise ValidationError("Use the expire operation to end a campaign")
    if payload.requires_coupon and not payload.coupon_pool_size:
        raise ValidationError("Coupon campaigns need a coupon_pool_size")
    compile_condition(payload.condition)


def _apply_payload(campaign: Campaign, payload: CampaignUpsert) -> None:
    campaign.name = payload.name.strip()
    campaign.description = payload.description
    campaign.condition = compile_condition(payload.condition).source
    campaign.discount_type = payload.discount_type
    campaign.discount_value = payload.discount_value
    campaign.buy_quantity = payload.buy_quantity
    campaign.get_quantity = payload.get_quantity
    campaign.max_discount = payload.max_discount
    campaign.target_category_ids = sorted(set(payload.target_category_ids)) if payload.target_category_ids else None
    campaign.priority = payload.priority if payload.priority is not None else settings.default_campaign_priority
    campaign.exclusivity_group = (payload.exclusivity_group or "").strip() or None
    campaign.compounding = payload.compounding
    campaign.starts_at = as_utc(payload.starts_at)
    campaign.ends_at = as_utc(payload.ends_at)
    campaign.status = payload.status
    campaign.max_concurrent_applications = (
        payload.max_concurrent_applications
        if payload.max_concurrent_applications is not None
        else settings.default_max_concurrent_applications
    )
    campaign.requires_coupon = payload.requires_coupon
    campaign.coupon_pool_size = payload.coupon_pool_size
    campaign.max_usage = payload.max_usage
    campaign.max_usage_per_customer = payload.max_usage_per_customer
    campaign.budget = payload.budget
    campaign.updated_at = utcnow()


async def _ensure_pool(session: AsyncSession, campaign: Campaign) -> None:
    if campaign.status != CampaignStatus.active or not campaign.requires_coupon or not campaign.coupon_pool_size:
        return
    existing = await session.execute(select(func.count()).where(CouponPool.campaign_id == campaign.id))
    if int(existing.scalar_one() or 0):
        return
    await coupon_pool.build_pool(session, campaign, size=int(campaign.coupon_pool_size))


async def upsert_campaign(
    session: AsyncSession,
    payload: CampaignUpsert,
    campaign_id: uuid.UUID | None = None,
) -> Campaign:
    """Create or replace a campaign definition and bump the registry version."""
    _validate_payload(payload)
    async with store_guard("campaign_upsert"):
        campaign = await session.get(Campaign, campaign_id) if campaign_id is not None else None
        created = campaign is None
        if campaign is None:
            campaign = Campaign(
                id=campaign_id or uuid.uuid4(),
                created_at=utcnow(),
                usage_count=0,
                spent_budget=Decimal("0.00"),
            )
            session.add(campaign)
        elif campaign.status == CampaignStatus.expired:
            raise ValidationError("Expired campaigns cannot be modified")
        _apply_payload(campaign, payload)
        await session.flush()
        await _ensure_pool(session, campaign)
        await _bump_version(session)
        await session.commit()
    logger.info(
        "campaign_created" if created else "campaign_updated",
        extra={"campaign_id": str(campaign.id), "status": campaign.status.value},
    )
    return campaign


async def get_campaign(session: AsyncSession, campaign_id: uuid.UUID) -> Campaign:
    async with store_guard("campaign_get"):
        campaign = await session.get(Campaign, campaign_id)
    if campaign is None:
        raise CampaignNotFound(f"Campaign {campaign_id} not found")
    return campaign


async def list_campaigns(
    session: AsyncSession,
    *,
    status: CampaignStatus | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[Campaign], int]:
    filters = [Campaign.status == status] if status is not None else []
    async with store_guard("campaign_list"):
        total_items = int(
            (await session.execute(select(func.count()).select_from(Campaign).where(*filters))).scalar_one() or 0
        )
        rows = (
            await session.execute(
                select(Campaign)
                .where(*filters)
                .order_by(Campaign.priority.desc(), Campaign.starts_at.asc(), Campaign.id.asc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
        ).scalars().all()
    return list(rows), total_items


async def expire(session: AsyncSession, campaign_id: uuid.UUID, *, now: datetime | None = None) -> Campaign:
    """Move a campaign to ``expired`` and retire its pool. Expiring twice is a no-op."""
    now = now or utcnow()
    async with store_guard("campaign_expire"):
        campaign = await session.get(Campaign, campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"Campaign {campaign_id} not found")
        if campaign.status == CampaignStatus.expired:
            return campaign
        campaign.status = CampaignStatus.expired
        campaign.updated_at = now
        await session.flush()
        retired = await coupon_pool.retire_pool(session, campaign.id, now=now)
        await _bump_version(session)
        await session.commit()
    events.publish("campaign_expired", {"campaign_id": str(campaign.id), "retired_codes": retired})
    return campaign


async def activate_due(session: AsyncSession, *, now: datetime | None = None, limit: int | None = None) -> int:
    now = now or utcnow()
    batch = max(1, int(limit or settings.housekeeping_batch_limit))
    rows = (
        await session.execute(
            select(Campaign)
            .where(Campaign.status == CampaignStatus.scheduled, Campaign.starts_at <= now, Campaign.ends_at > now)
            .order_by(Campaign.starts_at.asc())
            .limit(batch)
        )
    ).scalars().all()
    if not rows:
        return 0
    for campaign in rows:
        campaign.status = CampaignStatus.active
        campaign.updated_at = now
        await _ensure_pool(session, campaign)
    await _bump_version(session)
    await session.commit()
    logger.info("campaigns_activated", extra={"count": len(rows)})
    return len(rows)


async def expire_due(session: AsyncSession, *, now: datetime | None = None, limit: int | None = None) -> int:
    now = now or utcnow()
    batch = max(1, int(limit or settings.housekeeping_batch_limit))
    rows = (
        await session.execute(
            select(Campaign)
            .where(Campaign.status != CampaignStatus.expired, Campaign.ends_at <= now)
            .order_by(Campaign.ends_at.asc())
            .limit(batch)
        )
    ).scalars().all()
    if not rows:
        return 0
    expired_ids = [campaign.id for campaign in rows]
    for campaign in rows:
        campaign.status = CampaignStatus.expired
        campaign.updated_at = now
    await session.flush()
    for campaign_id in expired_ids:
        await coupon_pool.retire_pool(session, campaign_id, now=now)
    await _bump_version(session)
    await session.commit()
    for campaign_id in expired_ids:
        events.publish("campaign_expired", {"campaign_id": str(campaign_id)})
    return len(expired_ids)


async def campaign_stats(session: AsyncSession, campaign_id: uuid.UUID) -> dict[str, Any]:
    campaign = await get_campaign(session, campaign_id)
    async with store_guard("campaign_stats"):
        totals = await audit_trail.campaign_totals(session, campaign_id=campaign.id)
    return {"campaign_id": campaign.id, **totals}
