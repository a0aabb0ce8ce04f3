from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core import metrics
from promo_engine.models.promotion import PromotionRedemption
from promo_engine.services import pricing
from promo_engine.services import promotion_store

logger = logging.getLogger(__name__)


class RedemptionRejection(str, enum.Enum):
    not_found = "not_found"
    usage_limit_reached = "usage_limit_reached"


@dataclass(frozen=True)
class RedemptionOutcome:
    accepted: bool
    used: int | None
    reason: RedemptionRejection | None = None
    replayed: bool = False
    redemption: PromotionRedemption | None = None


def _replay(entry: PromotionRedemption) -> RedemptionOutcome:
    metrics.record_redemption_replayed()
    return RedemptionOutcome(accepted=True, used=entry.used_after, replayed=True, redemption=entry)


async def redeem(
    session: AsyncSession,
    *,
    promotion_id: UUID,
    order_id: str,
    discount_amount: Decimal = pricing.ZERO,
    waive_shipping: bool = False,
) -> RedemptionOutcome:
    """Consume one use of a promotion for ``order_id``.

    The limit is re-checked by the conditional UPDATE at commit time, whatever
    the caller saw when quoting. A second call for an order that already
    redeemed returns the recorded outcome instead of counting again.
    """
    existing = await promotion_store.get_redemption(session, promotion_id=promotion_id, order_id=order_id)
    if existing is not None:
        return _replay(existing)

    new_used = await promotion_store.increment_usage(session, promotion_id)
    if new_used is None:
        await session.rollback()
        # A concurrent retry of this order may have taken the last use.
        winner = await promotion_store.get_redemption(session, promotion_id=promotion_id, order_id=order_id)
        if winner is not None:
            return _replay(winner)
        promotion = await promotion_store.get_promotion(session, promotion_id)
        reason = RedemptionRejection.not_found if promotion is None else RedemptionRejection.usage_limit_reached
        metrics.record_redemption_rejected(reason.value)
        logger.warning(
            "promotion_redeem_rejected",
            extra={"promotion_id": str(promotion_id), "order_id": order_id, "reason": reason.value},
        )
        return RedemptionOutcome(accepted=False, used=promotion.used if promotion else None, reason=reason)

    entry = PromotionRedemption(
        promotion_id=promotion_id,
        order_id=order_id,
        used_after=int(new_used),
        discount_amount=pricing.quantize_money(discount_amount),
        waive_shipping=bool(waive_shipping),
    )
    session.add(entry)
    try:
        await session.commit()
    except IntegrityError:
        # Another request committed this order first; our increment is rolled back with the insert.
        await session.rollback()
        winner = await promotion_store.get_redemption(session, promotion_id=promotion_id, order_id=order_id)
        if winner is None:
            raise
        return _replay(winner)

    await session.refresh(entry)
    metrics.record_redemption_accepted()
    logger.info(
        "promotion_redeemed",
        extra={"promotion_id": str(promotion_id), "order_id": order_id, "used": int(new_used)},
    )
    return RedemptionOutcome(accepted=True, used=int(new_used), redemption=entry)


async def list_redemptions(session: AsyncSession, promotion_id: UUID) -> list[PromotionRedemption]:
    return await promotion_store.list_redemptions(session, promotion_id)
