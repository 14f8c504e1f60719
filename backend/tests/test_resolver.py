import random
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from promo_engine.core.errors import ConflictResolutionFault
from promo_engine.models.campaign import CampaignStatus, DiscountType
from promo_engine.services.conditions import compile_condition
from promo_engine.services.evaluation import AdmissionGate
from promo_engine.services.pricing import DiscountSpec, PricedLine
from promo_engine.services.campaign_usage import CampaignUsage
from promo_engine.services.registry import Candidate, CampaignView
from promo_engine.services.resolver import resolve

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def view(
    name: str,
    *,
    priority: int = 100,
    discount_type: DiscountType = DiscountType.percentage,
    value: str = "10",
    group: str | None = None,
    compounding: bool = False,
    max_discount: str | None = None,
    starts_at: datetime | None = None,
    campaign_id: uuid.UUID | None = None,
) -> CampaignView:
    return CampaignView(
        id=campaign_id or uuid.uuid5(uuid.NAMESPACE_DNS, name),
        name=name,
        condition="true",
        predicate=compile_condition("true"),
        discount=DiscountSpec(
            discount_type=discount_type,
            value=Decimal(value),
            max_discount=Decimal(max_discount) if max_discount else None,
        ),
        priority=priority,
        exclusivity_group=group,
        compounding=compounding,
        starts_at=starts_at or NOW - timedelta(days=1),
        ends_at=NOW + timedelta(days=1),
        status=CampaignStatus.active,
        max_concurrent_applications=10,
        requires_coupon=False,
    )


def matched(*views: CampaignView) -> list[Candidate]:
    return [Candidate(campaign=v, matched=True) for v in views]


def test_stackable_and_exclusive_campaigns_both_apply() -> None:
    a = view("A", priority=100, value="10")
    b = view("B", priority=200, discount_type=DiscountType.fixed_amount, value="500", group="seasonal")
    result = resolve(matched(a, b), subtotal=Decimal("10000"))
    assert [item.campaign_id for item in result.applied] == [b.id, a.id]
    assert [item.amount for item in result.applied] == [Decimal("500.00"), Decimal("1000.00")]
    assert result.total_discount == Decimal("1500.00")
    assert result.rejected == ()


def test_exclusivity_group_admits_only_the_first_campaign() -> None:
    c = view("C", priority=50, group="flash")
    d = view("D", priority=40, group="flash")
    result = resolve(matched(d, c), subtotal=Decimal("200"))
    assert [item.campaign_id for item in result.applied] == [c.id]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(d.id, "exclusivity_conflict")]


def test_ties_break_on_start_time_then_id() -> None:
    early = view("early", priority=10, group="g", starts_at=NOW - timedelta(days=3))
    late = view("late", priority=10, group="g", starts_at=NOW - timedelta(days=2))
    result = resolve(matched(late, early), subtotal=Decimal("100"))
    assert result.applied[0].campaign_id == early.id

    first_id, second_id = sorted([uuid.uuid4(), uuid.uuid4()], key=str)
    one = view("one", priority=10, group="g", campaign_id=second_id)
    two = view("two", priority=10, group="g", campaign_id=first_id)
    result = resolve(matched(one, two), subtotal=Decimal("100"))
    assert result.applied[0].campaign_id == first_id


def test_compounding_campaign_uses_running_total() -> None:
    flat = view("flat", priority=200, discount_type=DiscountType.fixed_amount, value="100")
    pct = view("pct", priority=100, value="10", compounding=True)
    result = resolve(matched(flat, pct), subtotal=Decimal("1000"))
    assert [item.amount for item in result.applied] == [Decimal("100.00"), Decimal("90.00")]
    assert result.applied[1].base == Decimal("900.00")


def test_floor_rejects_discount_that_would_go_below_it() -> None:
    big = view("big", priority=200, discount_type=DiscountType.fixed_amount, value="80")
    more = view("more", priority=100, discount_type=DiscountType.fixed_amount, value="15")
    result = resolve(matched(big, more), subtotal=Decimal("100"), floor=Decimal("10"))
    assert [item.campaign_id for item in result.applied] == [big.id]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(more.id, "discount_floor")]


def test_total_never_exceeds_subtotal() -> None:
    views = [view(f"fixed-{i}", priority=i, discount_type=DiscountType.fixed_amount, value="40") for i in range(5)]
    result = resolve(matched(*views), subtotal=Decimal("100"))
    assert result.total_discount <= Decimal("100")
    assert len(result.applied) == 2
    assert {item.reason for item in result.rejected} == {"discount_floor"}


def test_zero_discount_is_rejected() -> None:
    bogo = view("bogo", discount_type=DiscountType.buy_x_get_y, value="0")
    result = resolve(matched(bogo), subtotal=Decimal("100"))
    assert result.applied == ()
    assert result.rejected[0].reason == "no_discount"


def test_unmatched_candidates_are_ignored() -> None:
    a = view("A")
    result = resolve([Candidate(campaign=a, matched=False)], subtotal=Decimal("100"))
    assert result.matched == ()
    assert result.applied == ()
    assert result.rejected == ()


def test_faulted_candidate_is_rejected_and_others_still_apply() -> None:
    broken = view("broken", priority=300)
    fine = view("fine", priority=100)
    candidates = [
        Candidate(campaign=broken, matched=False, fault=ConflictResolutionFault(broken.id, KeyError("x"))),
        Candidate(campaign=fine, matched=True),
    ]
    result = resolve(candidates, subtotal=Decimal("100"))
    assert [item.campaign_id for item in result.applied] == [fine.id]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(broken.id, "evaluation_fault")]


def test_saturated_campaign_is_rejected_and_frees_its_group() -> None:
    busy = view("busy", priority=200, group="g")
    backup = view("backup", priority=100, group="g")
    result = resolve(matched(busy, backup), subtotal=Decimal("100"), saturated={busy.id})
    assert [item.campaign_id for item in result.applied] == [backup.id]
    assert result.rejected[0].reason == "admission_limit"


def test_global_cap_priority_policy_trims_lowest_priority_first() -> None:
    high = view("high", priority=300, discount_type=DiscountType.fixed_amount, value="30")
    mid = view("mid", priority=200, discount_type=DiscountType.fixed_amount, value="20")
    low = view("low", priority=100, discount_type=DiscountType.fixed_amount, value="10")
    result = resolve(matched(high, mid, low), subtotal=Decimal("100"), global_cap=Decimal("35"), cap_policy="priority")
    assert [(item.campaign_id, item.amount, item.truncated_by) for item in result.applied] == [
        (high.id, Decimal("30.00"), None),
        (mid.id, Decimal("5.00"), "global_cap"),
    ]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(low.id, "global_cap")]
    assert result.total_discount == Decimal("35.00")


def test_global_cap_proportional_policy_scales_every_campaign() -> None:
    a = view("a", priority=300, discount_type=DiscountType.fixed_amount, value="10")
    b = view("b", priority=200, discount_type=DiscountType.fixed_amount, value="10")
    c = view("c", priority=100, discount_type=DiscountType.fixed_amount, value="10")
    result = resolve(matched(a, b, c), subtotal=Decimal("100"), global_cap=Decimal("10"), cap_policy="proportional")
    assert [item.amount for item in result.applied] == [Decimal("3.34"), Decimal("3.33"), Decimal("3.33")]
    assert all(item.truncated_by == "global_cap" for item in result.applied)
    assert result.total_discount == Decimal("10.00")


def test_global_cap_not_reached_leaves_amounts_alone() -> None:
    a = view("a", discount_type=DiscountType.fixed_amount, value="10")
    result = resolve(matched(a), subtotal=Decimal("100"), global_cap=Decimal("50"))
    assert result.applied[0].amount == Decimal("10.00")
    assert result.applied[0].truncated_by is None


def test_resolve_is_deterministic_and_idempotent() -> None:
    views = [
        view(f"c{i}", priority=random.Random(i).randint(1, 5), group=("g" if i % 2 else None), value=str(5 + i))
        for i in range(8)
    ]
    lines = [PricedLine(product_id="p", category_id=None, quantity=1, unit_price=Decimal("250"))]
    baseline = resolve(matched(*views), subtotal=Decimal("250"), lines=lines, global_cap=Decimal("60"))
    for seed in range(5):
        shuffled = matched(*views)
        random.Random(seed).shuffle(shuffled)
        assert resolve(shuffled, subtotal=Decimal("250"), lines=lines, global_cap=Decimal("60")) == baseline
    applied_groups = [item.exclusivity_group for item in baseline.applied if item.exclusivity_group]
    assert len(applied_groups) == len(set(applied_groups))
    assert baseline.total_discount <= Decimal("60")


def test_admission_gate_saturates_at_the_campaign_limit() -> None:
    gate = AdmissionGate()
    single = replace(view("single"), max_concurrent_applications=1)
    roomy = view("roomy")
    with gate.admit([single, roomy]) as first:
        assert first == set()
        assert gate.in_flight(single.id) == 1
        with gate.admit([single, roomy]) as second:
            assert second == {single.id}
            assert gate.in_flight(roomy.id) == 2
        assert gate.in_flight(single.id) == 1
    assert gate.in_flight(single.id) == 0
    assert gate.in_flight(roomy.id) == 0


def test_campaign_past_its_usage_limit_is_rejected() -> None:
    spent = replace(view("Spent", priority=200), max_usage=3)
    fresh = view("Fresh", priority=100)
    result = resolve(matched(spent, fresh), subtotal=Decimal("100"), usage={spent.id: CampaignUsage(uses=3)})
    assert [item.campaign_id for item in result.applied] == [fresh.id]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(spent.id, "usage_limit_reached")]
    assert result.matched == (spent.id, fresh.id)


def test_per_customer_limit_needs_a_customer() -> None:
    once = replace(view("Once per customer"), max_usage_per_customer=1)
    anonymous = resolve(matched(once), subtotal=Decimal("100"), usage={once.id: CampaignUsage(customer_uses=None)})
    assert [item.reason for item in anonymous.rejected] == ["usage_limit_reached"]

    repeat = resolve(matched(once), subtotal=Decimal("100"), usage={once.id: CampaignUsage(customer_uses=1)})
    assert [item.reason for item in repeat.rejected] == ["usage_limit_reached"]

    first = resolve(matched(once), subtotal=Decimal("100"), usage={once.id: CampaignUsage(customer_uses=0)})
    assert [item.amount for item in first.applied] == [Decimal("10.00")]


def test_budget_is_spent_then_exceeded() -> None:
    funded = replace(view("Funded", discount_type=DiscountType.fixed_amount, value="20"), budget=Decimal("50"))

    partial = resolve(matched(funded), subtotal=Decimal("100"), usage={funded.id: CampaignUsage(spent=Decimal("40"))})
    assert [item.amount for item in partial.applied] == [Decimal("10.00")]
    assert partial.applied[0].truncated_by == "budget_exceeded"

    empty = resolve(matched(funded), subtotal=Decimal("100"), usage={funded.id: CampaignUsage(spent=Decimal("50"))})
    assert empty.applied == ()
    assert [(item.campaign_id, item.reason) for item in empty.rejected] == [(funded.id, "budget_exceeded")]


def test_exhausted_campaign_leaves_its_group_free() -> None:
    first = view("First", priority=200, group="weekly")
    second = view("Second", priority=100, group="weekly")
    result = resolve(matched(first, second), subtotal=Decimal("100"), exhausted={first.id: "usage_limit_reached"})
    assert [item.campaign_id for item in result.applied] == [second.id]
    assert [(item.campaign_id, item.reason) for item in result.rejected] == [(first.id, "usage_limit_reached")]
