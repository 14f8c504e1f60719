"""Campaign-level usage counters: applications, per-customer applications and spent budget.

Counters move in the transaction that writes the evaluation's audit record, so a
decision and the usage it consumed commit or roll back together. Every counter move
is a conditional UPDATE; a limit taken by a concurrent evaluation shows up as a
claim that touched no row.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.models.campaign import Campaign, CampaignCustomerUsage
from promo_engine.services.pricing import ZERO, quantize_money
from promo_engine.services.registry import CampaignView

logger = logging.getLogger(__name__)

USAGE_LIMIT_REACHED = "usage_limit_reached"
BUDGET_EXCEEDED = "budget_exceeded"


@dataclass(frozen=True)
class CampaignUsage:
    uses: int = 0
    spent: Decimal = ZERO
    # None when the order carries no customer identity.
    customer_uses: int | None = 0


def limit_reason(view: CampaignView, usage: CampaignUsage | None) -> str | None:
    state = usage or CampaignUsage()
    if view.max_usage is not None and state.uses >= view.max_usage:
        return USAGE_LIMIT_REACHED
    if view.max_usage_per_customer is not None and (
        state.customer_uses is None or state.customer_uses >= view.max_usage_per_customer
    ):
        return USAGE_LIMIT_REACHED
    if view.budget is not None and state.spent >= view.budget:
        return BUDGET_EXCEEDED
    return None


def remaining_budget(view: CampaignView, usage: CampaignUsage | None) -> Decimal | None:
    if view.budget is None:
        return None
    spent = usage.spent if usage else ZERO
    return max(ZERO, quantize_money(view.budget - spent, rounding="down"))


async def load(
    session: AsyncSession,
    views: Iterable[CampaignView],
    customer_id: str | None,
) -> dict[uuid.UUID, CampaignUsage]:
    """Current counters of the limited campaigns among ``views``."""
    ids = [view.id for view in views if view.limited]
    if not ids:
        return {}
    rows = (
        await session.execute(
            select(Campaign.id, Campaign.usage_count, Campaign.spent_budget).where(Campaign.id.in_(ids))
        )
    ).all()
    per_customer: dict[uuid.UUID, int] = {}
    if customer_id:
        per_customer = {
            campaign_id: int(applications or 0)
            for campaign_id, applications in (
                await session.execute(
                    select(CampaignCustomerUsage.campaign_id, CampaignCustomerUsage.applications).where(
                        CampaignCustomerUsage.campaign_id.in_(ids),
                        CampaignCustomerUsage.customer_id == customer_id,
                    )
                )
            ).all()
        }
    return {
        row.id: CampaignUsage(
            uses=int(row.usage_count or 0),
            spent=Decimal(str(row.spent_budget or 0)),
            customer_uses=per_customer.get(row.id, 0) if customer_id else None,
        )
        for row in rows
    }


async def _count_campaign(session: AsyncSession, view: CampaignView, amount: Decimal) -> str | None:
    conditions = [Campaign.id == view.id]
    if view.max_usage is not None:
        conditions.append(Campaign.usage_count < view.max_usage)
    if view.budget is not None:
        conditions.append(Campaign.spent_budget + amount <= view.budget)
    stmt = (
        update(Campaign)
        .where(*conditions)
        .values(
            usage_count=Campaign.usage_count + 1,
            spent_budget=Campaign.spent_budget + amount,
            updated_at=Campaign.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount:
        return None
    uses = (await session.execute(select(Campaign.usage_count).where(Campaign.id == view.id))).scalar_one_or_none()
    if view.max_usage is not None and int(uses or 0) >= view.max_usage:
        return USAGE_LIMIT_REACHED
    return BUDGET_EXCEEDED


async def _count_customer(session: AsyncSession, view: CampaignView, customer_id: str) -> str | None:
    conditions = [
        CampaignCustomerUsage.campaign_id == view.id,
        CampaignCustomerUsage.customer_id == customer_id,
    ]
    if view.max_usage_per_customer is not None:
        conditions.append(CampaignCustomerUsage.applications < view.max_usage_per_customer)
    stmt = (
        update(CampaignCustomerUsage)
        .where(*conditions)
        .values(applications=CampaignCustomerUsage.applications + 1)
        .execution_options(synchronize_session=False)
    )
    if (await session.execute(stmt)).rowcount:
        return None
    existing = (
        await session.execute(
            select(CampaignCustomerUsage.id).where(
                CampaignCustomerUsage.campaign_id == view.id,
                CampaignCustomerUsage.customer_id == customer_id,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        return USAGE_LIMIT_REACHED
    try:
        async with session.begin_nested():
            session.add(CampaignCustomerUsage(campaign_id=view.id, customer_id=customer_id, applications=0))
    except IntegrityError:
        logger.debug("campaign_usage_row_race", extra={"campaign_id": str(view.id)})
    if (await session.execute(stmt)).rowcount:
        return None
    return USAGE_LIMIT_REACHED


async def claim(
    session: AsyncSession,
    applied: Mapping[uuid.UUID, Decimal],
    views: Mapping[uuid.UUID, CampaignView],
    customer_id: str | None,
) -> dict[uuid.UUID, str]:
    """Count one application of every applied campaign.

    Returns the campaigns whose limit or budget was taken in the meantime, with the
    reason. When that mapping is not empty nothing was counted.
    """
    if not applied:
        return {}
    rejected: dict[uuid.UUID, str] = {}
    savepoint = await session.begin_nested()
    try:
        for campaign_id, amount in applied.items():
            view = views[campaign_id]
            reason = await _count_campaign(session, view, Decimal(amount))
            if reason is None and customer_id:
                reason = await _count_customer(session, view, customer_id)
            if reason is not None:
                rejected[campaign_id] = reason
    except BaseException:
        await savepoint.rollback()
        raise
    if rejected:
        await savepoint.rollback()
        logger.info(
            "campaign_usage_contended",
            extra={"campaigns": sorted(str(cid) for cid in rejected), "customer_id": customer_id},
        )
    else:
        await savepoint.commit()
    return rejected
