from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, replace
from decimal import ROUND_DOWN, Decimal
from typing import Iterable, Literal, Mapping, Sequence

from promo_engine.models.campaign import DiscountType
from promo_engine.services.campaign_usage import CampaignUsage, limit_reason, remaining_budget
from promo_engine.services.pricing import MONEY_QUANT, ZERO, PricedLine, compute_discount, quantize_money
from promo_engine.services.registry import Candidate

CapPolicy = Literal["priority", "proportional"]


class RejectionReason(str, enum.Enum):
    evaluation_fault = "evaluation_fault"
    admission_limit = "admission_limit"
    exclusivity_conflict = "exclusivity_conflict"
    no_discount = "no_discount"
    discount_floor = "discount_floor"
    global_cap = "global_cap"
    usage_limit_reached = "usage_limit_reached"
    budget_exceeded = "budget_exceeded"


@dataclass(frozen=True)
class AppliedCampaign:
    campaign_id: uuid.UUID
    name: str
    priority: int
    exclusivity_group: str | None
    discount_type: DiscountType
    amount: Decimal
    base: Decimal
    truncated_by: str | None = None


@dataclass(frozen=True)
class RejectedCampaign:
    campaign_id: uuid.UUID
    name: str | None
    reason: str


@dataclass(frozen=True)
class ResolutionResult:
    matched: tuple[uuid.UUID, ...]
    applied: tuple[AppliedCampaign, ...]
    rejected: tuple[RejectedCampaign, ...]
    subtotal: Decimal
    total_discount: Decimal

    def applied_ids(self) -> set[uuid.UUID]:
        return {item.campaign_id for item in self.applied}


def _truncate_by_priority(applied: list[AppliedCampaign], cap: Decimal) -> list[AppliedCampaign]:
    excess = sum((item.amount for item in applied), start=ZERO) - cap
    out = list(applied)
    for index in range(len(out) - 1, -1, -1):
        if excess <= 0:
            break
        item = out[index]
        cut = min(excess, item.amount)
        out[index] = replace(item, amount=item.amount - cut, truncated_by=RejectionReason.global_cap.value)
        excess -= cut
    return out


def _truncate_proportionally(applied: list[AppliedCampaign], cap: Decimal) -> list[AppliedCampaign]:
    total = sum((item.amount for item in applied), start=ZERO)
    scaled = [quantize_money(item.amount * cap / total, rounding="down") for item in applied]
    remainder = cap.quantize(MONEY_QUANT, rounding=ROUND_DOWN) - sum(scaled, start=ZERO)
    for index, item in enumerate(applied):
        if remainder <= 0:
            break
        room = item.amount - scaled[index]
        extra = min(room, remainder)
        scaled[index] += extra
        remainder -= extra
    return [
        replace(item, amount=amount, truncated_by=RejectionReason.global_cap.value if amount != item.amount else None)
        for item, amount in zip(applied, scaled)
    ]


def resolve(
    candidates: Iterable[Candidate],
    *,
    subtotal: Decimal,
    lines: Sequence[PricedLine] = (),
    floor: Decimal = ZERO,
    global_cap: Decimal | None = None,
    cap_policy: CapPolicy = "priority",
    saturated: Iterable[uuid.UUID] = (),
    usage: Mapping[uuid.UUID, CampaignUsage] | None = None,
    exhausted: Mapping[uuid.UUID, str] | None = None,
) -> ResolutionResult:
    """Pick the adjustments applied to one order.

    Candidates are walked in registry order (priority desc, start asc, id). A campaign
    is accepted unless it is past its usage limit or budget, its exclusivity group is
    already taken, it yields nothing, or it would push the running total below the
    floor. A discount larger than the campaign's remaining budget is cut to it.
    Non-compounding discounts are computed against the pre-discount subtotal,
    compounding ones against the running total. The global cap is enforced last, per
    ``cap_policy``. Pure and deterministic.
    """
    subtotal = quantize_money(Decimal(subtotal))
    floor = Decimal(floor or 0)
    full = set(saturated)
    usage = usage or {}
    exhausted = exhausted or {}
    running = subtotal
    occupied: set[str] = set()
    matched: list[uuid.UUID] = []
    applied: list[AppliedCampaign] = []
    rejected: list[RejectedCampaign] = []

    for candidate in sorted(candidates, key=lambda item: item.campaign.sort_key):
        view = candidate.campaign
        if candidate.fault is not None:
            rejected.append(RejectedCampaign(view.id, view.name, RejectionReason.evaluation_fault.value))
            continue
        if not candidate.matched:
            continue
        matched.append(view.id)
        spent_out = exhausted.get(view.id) or limit_reason(view, usage.get(view.id))
        if spent_out:
            rejected.append(RejectedCampaign(view.id, view.name, spent_out))
            continue
        if view.id in full:
            rejected.append(RejectedCampaign(view.id, view.name, RejectionReason.admission_limit.value))
            continue
        group = view.exclusivity_group
        if group and group in occupied:
            rejected.append(RejectedCampaign(view.id, view.name, RejectionReason.exclusivity_conflict.value))
            continue
        base = running if view.compounding else subtotal
        amount = compute_discount(view.discount, base=base, subtotal=subtotal, lines=lines)
        truncated_by = None
        room = remaining_budget(view, usage.get(view.id))
        if room is not None and amount > room:
            amount = room
            truncated_by = RejectionReason.budget_exceeded.value
        if amount <= 0:
            rejected.append(RejectedCampaign(view.id, view.name, RejectionReason.no_discount.value))
            continue
        if running - amount < ZERO or running - amount < floor:
            rejected.append(RejectedCampaign(view.id, view.name, RejectionReason.discount_floor.value))
            continue
        applied.append(
            AppliedCampaign(
                campaign_id=view.id,
                name=view.name,
                priority=view.priority,
                exclusivity_group=group,
                discount_type=view.discount.discount_type,
                amount=amount,
                base=base,
                truncated_by=truncated_by,
            )
        )
        if group:
            occupied.add(group)
        running -= amount

    if global_cap is not None and applied:
        cap = max(ZERO, Decimal(global_cap))
        if sum((item.amount for item in applied), start=ZERO) > cap:
            if cap_policy == "proportional":
                applied = _truncate_proportionally(applied, cap)
            else:
                applied = _truncate_by_priority(applied, cap)
            for item in [item for item in applied if item.amount <= 0]:
                rejected.append(RejectedCampaign(item.campaign_id, item.name, RejectionReason.global_cap.value))
            applied = [item for item in applied if item.amount > 0]

    total = sum((item.amount for item in applied), start=ZERO)
    return ResolutionResult(
        matched=tuple(matched),
        applied=tuple(applied),
        rejected=tuple(rejected),
        subtotal=subtotal,
        total_discount=quantize_money(total),
    )
