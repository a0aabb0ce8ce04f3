from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ColumnElement, String, and_, cast, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.models.promotion import (
    Promotion,
    PromotionAdminState,
    PromotionDisplayStatus,
    PromotionKind,
    PromotionRedemption,
)


def _status_clause(status: PromotionDisplayStatus, now: datetime) -> ColumnElement[bool]:
    # SQL twin of promotion_status.derive_status; keep the two in step.
    is_active_flag = Promotion.admin_state == PromotionAdminState.active
    not_expired = or_(Promotion.ends_at.is_(None), Promotion.ends_at >= now)
    if status == PromotionDisplayStatus.paused:
        return Promotion.admin_state == PromotionAdminState.paused
    if status == PromotionDisplayStatus.expired:
        return and_(is_active_flag, Promotion.ends_at.is_not(None), Promotion.ends_at < now)
    if status == PromotionDisplayStatus.scheduled:
        return and_(is_active_flag, not_expired, Promotion.starts_at.is_not(None), Promotion.starts_at > now)
    if status == PromotionDisplayStatus.active:
        return and_(is_active_flag, not_expired, or_(Promotion.starts_at.is_(None), Promotion.starts_at <= now))
    raise AssertionError(f"Unhandled status: {status!r}")


def _search_clause(query: str) -> ColumnElement[bool]:
    needle = query.strip().lower()
    kind_needle = needle.replace(" ", "_")
    return or_(
        func.lower(Promotion.code).contains(needle, autoescape=True),
        func.lower(Promotion.name).contains(needle, autoescape=True),
        func.lower(cast(Promotion.kind, String)).contains(kind_needle, autoescape=True),
    )


async def get_promotion(session: AsyncSession, promotion_id: UUID) -> Promotion | None:
    return await session.get(Promotion, promotion_id)


async def get_promotion_by_code(session: AsyncSession, code: str) -> Promotion | None:
    cleaned = (code or "").strip().upper()
    if not cleaned:
        return None
    result = await session.execute(select(Promotion).where(Promotion.code == cleaned))
    return result.scalar_one_or_none()


async def code_exists(session: AsyncSession, code: str, *, exclude_id: UUID | None = None) -> bool:
    stmt = select(func.count()).select_from(Promotion).where(Promotion.code == code)
    if exclude_id is not None:
        stmt = stmt.where(Promotion.id != exclude_id)
    return int((await session.execute(stmt)).scalar_one()) > 0


async def list_promotions(
    session: AsyncSession,
    *,
    now: datetime,
    archived: bool | None = None,
    status: PromotionDisplayStatus | None = None,
    kind: PromotionKind | None = None,
    query: str | None = None,
) -> list[Promotion]:
    stmt = select(Promotion)
    expired = _status_clause(PromotionDisplayStatus.expired, now)
    if archived is True:
        stmt = stmt.where(expired)
    elif archived is False:
        stmt = stmt.where(~expired)
    if status is not None:
        stmt = stmt.where(_status_clause(status, now))
    if kind is not None:
        stmt = stmt.where(Promotion.kind == kind)
    if query and query.strip():
        stmt = stmt.where(_search_clause(query))
    result = await session.execute(stmt.order_by(Promotion.created_at.desc(), Promotion.code))
    return list(result.scalars().all())


async def increment_usage(session: AsyncSession, promotion_id: UUID) -> int | None:
    """Atomically bump ``used`` unless the usage limit is already reached.

    One conditional UPDATE, so concurrent callers cannot all read ``used < limit``
    and then overshoot it. Returns the new count, or None when no row matched
    (unknown id or limit reached). Runs inside the caller's transaction.
    """
    stmt = (
        update(Promotion)
        .where(
            Promotion.id == promotion_id,
            or_(Promotion.usage_limit == 0, Promotion.used < Promotion.usage_limit),
        )
        .values(used=Promotion.used + 1)
        .returning(Promotion.used)
        .execution_options(synchronize_session=False)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_redemption(session: AsyncSession, *, promotion_id: UUID, order_id: str) -> PromotionRedemption | None:
    result = await session.execute(
        select(PromotionRedemption).where(
            PromotionRedemption.promotion_id == promotion_id,
            PromotionRedemption.order_id == order_id,
        )
    )
    return result.scalar_one_or_none()


async def list_redemptions(session: AsyncSession, promotion_id: UUID) -> list[PromotionRedemption]:
    result = await session.execute(
        select(PromotionRedemption)
        .where(PromotionRedemption.promotion_id == promotion_id)
        .order_by(PromotionRedemption.redeemed_at, PromotionRedemption.used_after)
    )
    return list(result.scalars().all())


async def save_promotion(session: AsyncSession, promotion: Promotion) -> Promotion:
    session.add(promotion)
    await session.commit()
    await session.refresh(promotion)
    return promotion


async def delete_promotion(session: AsyncSession, promotion: Promotion) -> None:
    await session.execute(delete(PromotionRedemption).where(PromotionRedemption.promotion_id == promotion.id))
    await session.delete(promotion)
    await session.commit()
