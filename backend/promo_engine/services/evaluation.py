from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.clock import as_utc, utcnow
from promo_engine.core.config import settings
from promo_engine.core.errors import AuditWriteFailed, CouponError, EngineError, StoreUnavailable, ValidationError
from promo_engine.db.session import store_guard
from promo_engine.schemas.evaluation import OrderContext
from promo_engine.services import audit_trail, campaign_usage, coupon_pool
from promo_engine.services.conditions import EvaluationContext
from promo_engine.services.coupon_pool import Reservation
from promo_engine.services.pricing import PricedLine
from promo_engine.services.registry import CampaignView, Candidate, find_candidates, registry
from promo_engine.services.resolver import RejectedCampaign, ResolutionResult, resolve

logger = logging.getLogger(__name__)


class AdmissionGate:
    """Per-process count of evaluations currently applying each campaign."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[uuid.UUID, int] = {}

    def acquire(self, campaigns: Iterable[CampaignView]) -> tuple[list[uuid.UUID], set[uuid.UUID]]:
        held: list[uuid.UUID] = []
        saturated: set[uuid.UUID] = set()
        with self._lock:
            for view in campaigns:
                limit = max(1, int(view.max_concurrent_applications))
                current = self._active.get(view.id, 0)
                if current >= limit:
                    saturated.add(view.id)
                    continue
                self._active[view.id] = current + 1
                held.append(view.id)
        return held, saturated

    def release(self, campaign_ids: Iterable[uuid.UUID]) -> None:
        with self._lock:
            for campaign_id in campaign_ids:
                remaining = self._active.get(campaign_id, 0) - 1
                if remaining > 0:
                    self._active[campaign_id] = remaining
                else:
                    self._active.pop(campaign_id, None)

    def in_flight(self, campaign_id: uuid.UUID) -> int:
        with self._lock:
            return self._active.get(campaign_id, 0)

    def reset(self) -> None:
        with self._lock:
            self._active.clear()

    @contextmanager
    def admit(self, campaigns: Iterable[CampaignView]) -> Iterator[set[uuid.UUID]]:
        held, saturated = self.acquire(campaigns)
        try:
            yield saturated
        finally:
            self.release(held)


admission_gate = AdmissionGate()


@dataclass(frozen=True)
class EvaluationOutcome:
    order_id: str
    registry_version: int
    result: ResolutionResult
    coupon_code: str | None = None
    reservation: Reservation | None = None
    coupon_error: EngineError | None = None
    audit_id: uuid.UUID | None = None


def build_context(order: OrderContext, now: datetime) -> EvaluationContext:
    items = order.items
    return EvaluationContext(
        subtotal=order.subtotal,
        item_count=sum(int(item.quantity) for item in items),
        categories=frozenset(item.category_id for item in items if item.category_id),
        products=frozenset(item.product_id for item in items),
        tags=frozenset(tag for item in items for tag in item.tags),
        segment=order.segment,
        city=order.city,
        timestamp=as_utc(order.timestamp) if order.timestamp else now,
        first_order=bool(order.first_order),
        order_count=int(order.order_count),
        campaign_uses=MappingProxyType({str(k): int(v) for k, v in order.campaign_uses.items()}),
    )


def priced_lines(order: OrderContext) -> list[PricedLine]:
    return [
        PricedLine(
            product_id=item.product_id,
            category_id=item.category_id,
            quantity=int(item.quantity),
            unit_price=item.unit_price,
        )
        for item in order.items
    ]


async def _release_quietly(session: AsyncSession, reservation: Reservation) -> Reservation | None:
    try:
        return await coupon_pool.release(session, reservation.id)
    except EngineError as exc:
        logger.warning(
            "coupon_release_failed",
            extra={"reservation_id": str(reservation.id), "error": str(exc)},
        )
        return None


async def _abandon(session: AsyncSession, reservation: Reservation | None) -> None:
    try:
        await session.rollback()
    except SQLAlchemyError as exc:
        logger.warning("evaluation_rollback_failed", extra={"error": str(exc)})
    if reservation is not None:
        await _release_quietly(session, reservation)


async def _resolve_within_limits(
    session: AsyncSession,
    candidates: list[Candidate],
    *,
    subtotal: Decimal,
    lines: list[PricedLine],
    saturated: set[uuid.UUID],
    customer_id: str | None,
) -> ResolutionResult:
    """Resolve, then count the applied campaigns against their usage limits and budgets.

    A campaign whose limit was taken between the read and the count is resolved again
    from fresh counters; losing it a second time rejects it.
    """
    views = {candidate.campaign.id: candidate.campaign for candidate in candidates}
    contenders = [candidate.campaign for candidate in candidates if candidate.matched and candidate.fault is None]
    contended: set[uuid.UUID] = set()
    exhausted: dict[uuid.UUID, str] = {}
    while True:
        async with store_guard("campaign_usage_load"):
            usage = await campaign_usage.load(session, contenders, customer_id)
        result = resolve(
            candidates,
            subtotal=subtotal,
            lines=lines,
            floor=settings.discount_floor,
            global_cap=settings.global_discount_cap,
            cap_policy=settings.cap_truncation_policy,
            saturated=saturated,
            usage=usage,
            exhausted=exhausted,
        )
        async with store_guard("campaign_usage_claim"):
            lost = await campaign_usage.claim(
                session,
                {item.campaign_id: item.amount for item in result.applied},
                views,
                customer_id,
            )
        if not lost:
            return result
        for campaign_id, reason in lost.items():
            if campaign_id in contended:
                exhausted[campaign_id] = reason
            contended.add(campaign_id)


async def evaluate_order(session: AsyncSession, order: OrderContext) -> EvaluationOutcome:
    """Evaluate one order: candidates, optional coupon hold, resolution, audit record.

    A coupon failure never fails the evaluation; it is reported in ``coupon_error``
    and the coupon's campaign is rejected with the failure code instead of being
    resolved. The decision names a coupon only when its hold backs an applied
    campaign. Usage counters and the audit record commit together; a failed audit
    write fails the request with ``AuditWriteFailed`` and gives the coupon hold back.
    """
    now = utcnow()
    snapshot = await registry.get_snapshot(session)
    ctx = build_context(order, now)
    lines = priced_lines(order)

    reservation: Reservation | None = None
    coupon_error: EngineError | None = None
    refused_campaign_id: uuid.UUID | None = None
    extra_rejections: list[RejectedCampaign] = []
    if order.coupon_code:
        try:
            reservation = await coupon_pool.reserve(
                session, order.coupon_code, order.customer_id or "", order.holder_id or order.order_id, now=now
            )
        except (CouponError, ValidationError) as exc:
            coupon_error = exc
            logger.info("coupon_rejected", extra={"order_id": order.order_id, "code": exc.code})
            refused_campaign_id = await coupon_pool.campaign_for_code(session, order.coupon_code)
            if refused_campaign_id is not None:
                view = snapshot.get(refused_campaign_id)
                extra_rejections.append(RejectedCampaign(refused_campaign_id, view.name if view else None, exc.code))

    coupon_campaigns = {reservation.campaign_id} if reservation else set()
    candidates = [
        candidate
        for candidate in find_candidates(snapshot, ctx, now=now, coupon_campaign_ids=coupon_campaigns)
        if candidate.campaign.id != refused_campaign_id
    ]
    contenders = [c.campaign for c in candidates if c.matched and c.fault is None]

    unused: Reservation | None = None
    with admission_gate.admit(contenders) as saturated:
        try:
            result = await _resolve_within_limits(
                session,
                candidates,
                subtotal=ctx.subtotal,
                lines=lines,
                saturated=saturated,
                customer_id=order.customer_id,
            )
        except StoreUnavailable:
            await _abandon(session, reservation)
            raise

        if reservation is not None and reservation.campaign_id not in result.applied_ids():
            if reservation.campaign_id not in result.matched:
                view = snapshot.get(reservation.campaign_id)
                extra_rejections.append(
                    RejectedCampaign(reservation.campaign_id, view.name if view else None, "condition_not_met")
                )
            unused, reservation = reservation, None

        if extra_rejections:
            result = replace(result, rejected=result.rejected + tuple(extra_rejections))

        decision = audit_trail.EvaluationDecision(
            order_id=order.order_id,
            customer_id=order.customer_id,
            matched=tuple(str(cid) for cid in result.matched),
            applied={str(item.campaign_id): item.amount for item in result.applied},
            rejected=tuple((str(item.campaign_id), item.reason) for item in result.rejected),
            total_discount=result.total_discount,
            coupon_code=reservation.code if reservation else None,
            reservation_id=reservation.id if reservation else None,
            timestamp=now,
        )
        try:
            async with store_guard("audit_write"):
                entry = await audit_trail.record(session, decision)
                audit_id = entry.id
                await session.commit()
        except StoreUnavailable as exc:
            logger.error("audit_write_failed", extra={"order_id": order.order_id, "error": str(exc)})
            await _abandon(session, reservation or unused)
            raise AuditWriteFailed("Evaluation decision could not be recorded") from exc

    if unused is not None:
        await _release_quietly(session, unused)

    logger.info(
        "order_evaluated",
        extra={
            "order_id": order.order_id,
            "applied": len(result.applied),
            "total_discount": str(result.total_discount),
            "registry_version": snapshot.version,
        },
    )
    return EvaluationOutcome(
        order_id=order.order_id,
        registry_version=snapshot.version,
        result=result,
        coupon_code=decision.coupon_code,
        reservation=reservation,
        coupon_error=coupon_error,
        audit_id=audit_id,
    )
