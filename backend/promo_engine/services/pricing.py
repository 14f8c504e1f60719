from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Literal, Sequence

from promo_engine.models.campaign import DiscountType

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

MoneyRounding = Literal["half_up", "half_even", "up", "down"]


_ROUNDING_MAP: dict[str, str] = {
    "half_up": ROUND_HALF_UP,
    "half_even": ROUND_HALF_EVEN,
    "up": ROUND_UP,
    "down": ROUND_DOWN,
}


def quantize_money(value: Decimal, *, rounding: MoneyRounding = "half_up") -> Decimal:
    mode = _ROUNDING_MAP.get(str(rounding), ROUND_HALF_UP)
    return Decimal(value).quantize(MONEY_QUANT, rounding=mode)


@dataclass(frozen=True)
class PricedLine:
    product_id: str
    category_id: str | None
    quantity: int
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class DiscountSpec:
    discount_type: DiscountType
    value: Decimal
    buy_quantity: int | None = None
    get_quantity: int | None = None
    max_discount: Decimal | None = None
    target_category_ids: frozenset[str] = frozenset()


def _eligible_lines(spec: DiscountSpec, lines: Sequence[PricedLine]) -> list[PricedLine]:
    if not spec.target_category_ids:
        return list(lines)
    return [line for line in lines if line.category_id in spec.target_category_ids]


def _percentage_scope(spec: DiscountSpec, *, base: Decimal, subtotal: Decimal, lines: Sequence[PricedLine]) -> Decimal:
    if not spec.target_category_ids:
        return base
    if subtotal <= 0:
        return ZERO
    targeted = sum((line.total for line in _eligible_lines(spec, lines)), start=ZERO)
    return base * targeted / subtotal


def free_units_value(spec: DiscountSpec, lines: Sequence[PricedLine]) -> Decimal:
    """Value of the units given away by a buy-X-get-Y offer.

    For every complete group of X+Y eligible units, the Y cheapest units are free.
    """
    buy = int(spec.buy_quantity or 0)
    get = int(spec.get_quantity or 0)
    if buy <= 0 or get <= 0:
        return ZERO
    eligible = sorted(_eligible_lines(spec, lines), key=lambda line: (line.unit_price, line.product_id))
    total_units = sum(max(0, int(line.quantity)) for line in eligible)
    remaining = (total_units // (buy + get)) * get
    value = ZERO
    for line in eligible:
        if remaining <= 0:
            break
        take = min(remaining, max(0, int(line.quantity)))
        value += line.unit_price * take
        remaining -= take
    return value


def compute_discount(
    spec: DiscountSpec,
    *,
    base: Decimal,
    subtotal: Decimal,
    lines: Sequence[PricedLine],
) -> Decimal:
    """Discount of one campaign against ``base`` (pre-discount subtotal or running total)."""
    if base <= 0:
        return ZERO
    if spec.discount_type == DiscountType.percentage:
        pct = Decimal(spec.value or 0)
        amount = _percentage_scope(spec, base=base, subtotal=subtotal, lines=lines) * pct / Decimal("100") if pct > 0 else ZERO
    elif spec.discount_type == DiscountType.fixed_amount:
        amount = max(ZERO, Decimal(spec.value or 0))
    elif spec.discount_type == DiscountType.buy_x_get_y:
        amount = free_units_value(spec, lines)
    else:  # pragma: no cover - enum is closed
        amount = ZERO

    if spec.max_discount is not None:
        amount = min(amount, Decimal(spec.max_discount))
    amount = min(amount, base)
    return quantize_money(max(ZERO, amount))
