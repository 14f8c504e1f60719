from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core.clock import utcnow
from promo_engine.core.config import settings
from promo_engine.db.session import store_guard
from promo_engine.models.audit import AuditCampaignLink, AuditChainState, AuditKind, AuditRecord

logger = logging.getLogger(__name__)

_CHAIN_ENTITY = "campaign_audit"


@dataclass(frozen=True)
class EvaluationDecision:
    order_id: str
    customer_id: str | None
    matched: tuple[str, ...]
    applied: Mapping[str, Decimal]
    rejected: tuple[tuple[str, str], ...]
    total_discount: Decimal
    coupon_code: str | None = None
    reservation_id: uuid.UUID | None = None
    timestamp: datetime = field(default_factory=utcnow)


def _canonical_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _hash_bytes(prev_hash: str, material: str) -> str:
    secret = (settings.audit_hash_chain_secret or settings.secret_key or "").encode("utf-8")
    hasher = hashlib.sha256()
    hasher.update(secret)
    hasher.update(b"\n")
    hasher.update((prev_hash or "").encode("utf-8"))
    hasher.update(b"\n")
    hasher.update(material.encode("utf-8"))
    return hasher.hexdigest()


async def _locked_chain_state(session: AsyncSession) -> AuditChainState:
    state = (
        await session.execute(
            select(AuditChainState).where(AuditChainState.entity == _CHAIN_ENTITY).with_for_update()
        )
    ).scalar_one_or_none()
    if state is not None:
        return state
    state = AuditChainState(entity=_CHAIN_ENTITY, tail_hash=None)
    session.add(state)
    await session.flush()
    return state


def hash_chain_enabled() -> bool:
    return bool(getattr(settings, "audit_hash_chain_enabled", False))


def chain_material(record: AuditRecord) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "kind": record.kind.value,
        "created_at": record.created_at.isoformat(),
        "order_id": record.order_id,
        "customer_id": record.customer_id,
        "matched": list(record.matched or []),
        "applied": list(record.applied or []),
        "total_discount": str(record.total_discount),
        "coupon_code": record.coupon_code,
    }


async def _append(session: AsyncSession, record: AuditRecord) -> AuditRecord:
    if hash_chain_enabled():
        state = await _locked_chain_state(session)
        prev = state.tail_hash
        digest = _hash_bytes(prev or "", _canonical_json(chain_material(record)))
        state.tail_hash = digest
        session.add(state)
        record.chain_prev_hash = prev
        record.chain_hash = digest
    session.add(record)
    await session.flush()
    return record


async def record(session: AsyncSession, decision: EvaluationDecision) -> AuditRecord:
    """Append an evaluation decision to the caller's transaction.

    The caller owns the commit; a decision is durable only once it commits.
    """
    applied_ids = list(decision.applied.keys())
    entry = AuditRecord(
        id=uuid.uuid4(),
        kind=AuditKind.evaluation,
        order_id=decision.order_id,
        customer_id=decision.customer_id,
        matched=list(decision.matched),
        applied=applied_ids,
        rejected=[{"campaign_id": cid, "reason": reason} for cid, reason in decision.rejected],
        total_discount=decision.total_discount,
        coupon_code=decision.coupon_code,
        reservation_id=decision.reservation_id,
        created_at=decision.timestamp,
    )
    links = [AuditCampaignLink(campaign_id=cid, role="matched") for cid in decision.matched]
    links += [AuditCampaignLink(campaign_id=cid, role="applied", amount=amount) for cid, amount in decision.applied.items()]
    links += [AuditCampaignLink(campaign_id=cid, role="rejected", reason=reason) for cid, reason in decision.rejected]
    entry.links = links
    return await _append(session, entry)


async def record_coupon_event(
    session: AsyncSession,
    *,
    kind: AuditKind,
    campaign_id: uuid.UUID,
    code: str,
    reservation_id: uuid.UUID,
    customer_id: str | None,
    holder_id: str | None,
) -> AuditRecord:
    entry = AuditRecord(
        id=uuid.uuid4(),
        kind=kind,
        order_id=holder_id,
        customer_id=customer_id,
        matched=[],
        applied=[],
        rejected=[],
        total_discount=Decimal("0.00"),
        coupon_code=code,
        reservation_id=reservation_id,
        created_at=utcnow(),
    )
    entry.links = [AuditCampaignLink(campaign_id=str(campaign_id), role="coupon")]
    return await _append(session, entry)


@dataclass(frozen=True)
class AuditFilter:
    order_id: str | None = None
    customer_id: str | None = None
    campaign_id: str | None = None
    kind: AuditKind | None = None
    since: datetime | None = None
    until: datetime | None = None


def _filters(flt: AuditFilter) -> list:
    filters = []
    if flt.order_id:
        filters.append(AuditRecord.order_id == flt.order_id)
    if flt.customer_id:
        filters.append(AuditRecord.customer_id == flt.customer_id)
    if flt.kind:
        filters.append(AuditRecord.kind == flt.kind)
    if flt.since:
        filters.append(AuditRecord.created_at >= flt.since)
    if flt.until:
        filters.append(AuditRecord.created_at < flt.until)
    if flt.campaign_id:
        linked = select(AuditCampaignLink.record_id).where(AuditCampaignLink.campaign_id == str(flt.campaign_id))
        filters.append(AuditRecord.id.in_(linked))
    return filters


async def query(
    session: AsyncSession,
    flt: AuditFilter,
    *,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[AuditRecord], int]:
    filters = _filters(flt)
    count_stmt = select(func.count()).select_from(AuditRecord)
    stmt = select(AuditRecord)
    if filters:
        count_stmt = count_stmt.where(*filters)
        stmt = stmt.where(*filters)
    offset = (page - 1) * limit
    stmt = stmt.order_by(AuditRecord.created_at.desc(), AuditRecord.id.desc()).offset(offset).limit(limit)
    async with store_guard("audit_query"):
        total_items = int((await session.execute(count_stmt)).scalar_one() or 0)
        rows = (await session.execute(stmt)).scalars().unique().all()
    return list(rows), total_items


async def campaign_totals(session: AsyncSession, *, campaign_id: uuid.UUID) -> dict[str, Any]:
    applied = (
        await session.execute(
            select(
                func.count(AuditCampaignLink.id),
                func.coalesce(func.sum(AuditCampaignLink.amount), 0),
                func.count(func.distinct(AuditRecord.customer_id)),
            )
            .join(AuditRecord, AuditRecord.id == AuditCampaignLink.record_id)
            .where(AuditCampaignLink.campaign_id == str(campaign_id), AuditCampaignLink.role == "applied")
        )
    ).one()
    rejections = (
        await session.execute(
            select(AuditCampaignLink.reason, func.count(AuditCampaignLink.id))
            .where(AuditCampaignLink.campaign_id == str(campaign_id), AuditCampaignLink.role == "rejected")
            .group_by(AuditCampaignLink.reason)
        )
    ).all()
    applications = int(applied[0] or 0)
    total_discount = Decimal(str(applied[1] or 0))
    return {
        "applications": applications,
        "total_discount": total_discount,
        "unique_customers": int(applied[2] or 0),
        "average_discount": (total_discount / applications) if applications else Decimal("0"),
        "rejections": {str(reason or "unknown"): int(count) for reason, count in rejections},
    }


async def prune(session: AsyncSession, *, retention_days: int | None = None, now: datetime | None = None) -> int:
    """Delete records older than the retention window. Housekeeping only."""
    days = int(retention_days if retention_days is not None else settings.audit_retention_days)
    if days <= 0:
        return 0
    cutoff = (now or utcnow()) - timedelta(days=days)
    stale = select(AuditRecord.id).where(AuditRecord.created_at < cutoff)
    await session.execute(
        delete(AuditCampaignLink)
        .where(AuditCampaignLink.record_id.in_(stale))
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        delete(AuditRecord).where(AuditRecord.created_at < cutoff).execution_options(synchronize_session=False)
    )
    await session.commit()
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("audit_pruned", extra={"count": removed, "cutoff": cutoff.isoformat()})
    return removed
