from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from promo_engine.core.errors import IneligibleReason
from promo_engine.models.promotion import Promotion, PromotionDisplayStatus, PromotionKind
from promo_engine.services import pricing
from promo_engine.services.promotion_status import derive_status


@dataclass(frozen=True)
class DiscountResult:
    eligible: bool
    discount_amount: Decimal = pricing.ZERO
    waive_shipping: bool = False
    reason: IneligibleReason | None = None
    min_spend: Decimal | None = None


def _ineligible(reason: IneligibleReason, *, min_spend: Decimal | None = None) -> DiscountResult:
    return DiscountResult(eligible=False, reason=reason, min_spend=min_spend)


def _raw_amount(promotion: Promotion, order_total: Decimal) -> Decimal:
    value = pricing.to_money(promotion.value)
    if promotion.kind == PromotionKind.percentage:
        raw = order_total * value / Decimal("100")
        cap = pricing.to_money(promotion.max_discount)
        if cap > 0:
            raw = min(raw, cap)
        return raw
    if promotion.kind == PromotionKind.fixed_amount:
        return min(value, order_total)
    if promotion.kind == PromotionKind.free_shipping:
        return pricing.ZERO
    raise AssertionError(f"Unhandled promotion kind: {promotion.kind!r}")


def calculate_discount(
    promotion: Promotion,
    order_total: Decimal | int | float | str,
    *,
    now: datetime | None = None,
) -> DiscountResult:
    """Quote the discount ``promotion`` gives on ``order_total`` at ``now``.

    This is the optimistic check shown to the customer; the redemption ledger
    re-checks the usage limit when the order is committed.
    """
    total = pricing.to_money(order_total)
    if total < 0:
        total = pricing.ZERO

    min_spend = pricing.to_money(promotion.min_spend)
    if total < min_spend:
        return _ineligible(IneligibleReason.below_minimum_spend, min_spend=min_spend)
    if derive_status(promotion, now) != PromotionDisplayStatus.active:
        return _ineligible(IneligibleReason.not_currently_active)
    limit = int(promotion.usage_limit or 0)
    if limit > 0 and int(promotion.used or 0) >= limit:
        return _ineligible(IneligibleReason.usage_limit_reached)

    amount = pricing.floor_money(min(_raw_amount(promotion, total), total))
    return DiscountResult(
        eligible=True,
        discount_amount=amount,
        waive_shipping=promotion.kind == PromotionKind.free_shipping,
    )
