from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.clock import utcnow
from promo_engine.core.errors import ConditionSyntaxError, StoreUnavailable
from promo_engine.db.session import get_session
from promo_engine.models.audit import AuditKind
from promo_engine.models.campaign import CampaignStatus
from promo_engine.schemas.audit import AuditListResponse, AuditRecordRead
from promo_engine.schemas.campaign import (
    ActiveCampaignRead,
    ActiveCampaignsResponse,
    CampaignListResponse,
    CampaignRead,
    CampaignStatsRead,
    CampaignUpsert,
    ConditionValidateRequest,
    ConditionValidateResponse,
)
from promo_engine.schemas.common import PaginationMeta
from promo_engine.schemas.coupon import CouponPoolCreate, CouponPoolRead, ReservationRead
from promo_engine.schemas.evaluation import (
    AppliedCampaignRead,
    CouponErrorRead,
    OrderContext,
    RejectedCampaignRead,
    ResolutionResultRead,
)
from promo_engine.services import audit_trail, coupon_pool
from promo_engine.services import registry as registry_service
from promo_engine.services.conditions import compile_condition, dump
from promo_engine.services.evaluation import EvaluationOutcome, evaluate_order
from promo_engine.services.registry import registry

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


def _resolution_read(outcome: EvaluationOutcome) -> ResolutionResultRead:
    result = outcome.result
    return ResolutionResultRead(
        order_id=outcome.order_id,
        registry_version=outcome.registry_version,
        matched=list(result.matched),
        applied=[
            AppliedCampaignRead(
                campaign_id=item.campaign_id,
                name=item.name,
                priority=item.priority,
                exclusivity_group=item.exclusivity_group,
                discount_type=item.discount_type,
                amount=item.amount,
                base=item.base,
                truncated_by=item.truncated_by,
            )
            for item in result.applied
        ],
        rejected=[
            RejectedCampaignRead(campaign_id=item.campaign_id, name=item.name, reason=item.reason)
            for item in result.rejected
        ],
        subtotal=result.subtotal,
        total_discount=result.total_discount,
        coupon_code=outcome.coupon_code,
        reservation=ReservationRead.model_validate(outcome.reservation) if outcome.reservation else None,
        coupon_error=(
            CouponErrorRead(code=outcome.coupon_error.code, detail=str(outcome.coupon_error.detail))
            if outcome.coupon_error is not None
            else None
        ),
        audit_id=outcome.audit_id,
    )


@router.post("", response_model=CampaignRead, status_code=status.HTTP_201_CREATED)
async def create_campaign(payload: CampaignUpsert, session: AsyncSession = Depends(get_session)) -> CampaignRead:
    campaign = await registry_service.upsert_campaign(session, payload)
    return CampaignRead.model_validate(campaign)


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status_filter: CampaignStatus | None = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> CampaignListResponse:
    rows, total_items = await registry_service.list_campaigns(session, status=status_filter, page=page, limit=limit)
    return CampaignListResponse(
        items=[CampaignRead.model_validate(row) for row in rows],
        meta=PaginationMeta.build(total_items=total_items, page=page, limit=limit),
    )


@router.get("/active", response_model=ActiveCampaignsResponse)
async def active_campaigns(session: AsyncSession = Depends(get_session)) -> ActiveCampaignsResponse:
    stale = False
    try:
        snapshot = await registry.get_snapshot(session)
    except StoreUnavailable:
        snapshot = registry.cached_snapshot()
        if snapshot is None:
            raise
        stale = True
    now = utcnow()
    return ActiveCampaignsResponse(
        version=snapshot.version,
        stale=stale,
        items=[ActiveCampaignRead.model_validate(view) for view in snapshot.campaigns if view.is_evaluable(now)],
    )


@router.get("/audit", response_model=AuditListResponse)
async def audit_log(
    order_id: str | None = Query(default=None, max_length=120),
    customer_id: str | None = Query(default=None, max_length=120),
    campaign_id: UUID | None = Query(default=None),
    kind: AuditKind | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
) -> AuditListResponse:
    flt = audit_trail.AuditFilter(
        order_id=order_id,
        customer_id=customer_id,
        campaign_id=str(campaign_id) if campaign_id else None,
        kind=kind,
        since=since,
        until=until,
    )
    rows, total_items = await audit_trail.query(session, flt, page=page, limit=limit)
    return AuditListResponse(
        items=[AuditRecordRead.model_validate(row) for row in rows],
        meta=PaginationMeta.build(total_items=total_items, page=page, limit=limit),
    )


@router.post("/evaluate", response_model=ResolutionResultRead)
async def evaluate(order: OrderContext, session: AsyncSession = Depends(get_session)) -> ResolutionResultRead:
    outcome = await evaluate_order(session, order)
    return _resolution_read(outcome)


@router.post("/validate-condition", response_model=ConditionValidateResponse)
def validate_condition(payload: ConditionValidateRequest) -> ConditionValidateResponse:
    try:
        predicate = compile_condition(payload.condition)
    except ConditionSyntaxError as exc:
        return ConditionValidateResponse(valid=False, detail=str(exc.detail), position=exc.position)
    return ConditionValidateResponse(
        valid=True,
        normalized=predicate.source,
        size=predicate.size,
        tree=dump(predicate.root),
    )


@router.get("/{campaign_id}", response_model=CampaignRead)
async def get_campaign(campaign_id: UUID, session: AsyncSession = Depends(get_session)) -> CampaignRead:
    campaign = await registry_service.get_campaign(session, campaign_id)
    return CampaignRead.model_validate(campaign)


@router.put("/{campaign_id}", response_model=CampaignRead)
async def upsert_campaign(
    campaign_id: UUID,
    payload: CampaignUpsert,
    session: AsyncSession = Depends(get_session),
) -> CampaignRead:
    campaign = await registry_service.upsert_campaign(session, payload, campaign_id=campaign_id)
    return CampaignRead.model_validate(campaign)


@router.post("/{campaign_id}/expire", response_model=CampaignRead)
async def expire_campaign(campaign_id: UUID, session: AsyncSession = Depends(get_session)) -> CampaignRead:
    campaign = await registry_service.expire(session, campaign_id)
    return CampaignRead.model_validate(campaign)


@router.get("/{campaign_id}/stats", response_model=CampaignStatsRead)
async def campaign_stats(campaign_id: UUID, session: AsyncSession = Depends(get_session)) -> CampaignStatsRead:
    stats = await registry_service.campaign_stats(session, campaign_id)
    return CampaignStatsRead(**stats)


@router.post("/{campaign_id}/pool", response_model=CouponPoolRead, status_code=status.HTTP_201_CREATED)
async def create_pool(
    campaign_id: UUID,
    payload: CouponPoolCreate,
    session: AsyncSession = Depends(get_session),
) -> CouponPoolRead:
    stats = await coupon_pool.create_pool(
        session,
        campaign_id,
        size=payload.size,
        per_customer_limit=payload.per_customer_limit,
        code_prefix=payload.code_prefix,
        expires_at=payload.expires_at,
    )
    return CouponPoolRead.model_validate(stats)


@router.get("/{campaign_id}/pool", response_model=CouponPoolRead)
async def get_pool(campaign_id: UUID, session: AsyncSession = Depends(get_session)) -> CouponPoolRead:
    stats = await coupon_pool.pool_stats(session, campaign_id)
    return CouponPoolRead.model_validate(stats)
