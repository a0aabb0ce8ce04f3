from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from promo_engine.core import metrics
from promo_engine.core.config import settings
from promo_engine.core.errors import (
    ConcurrencyConflictError,
    ConflictError,
    IneligibleError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from promo_engine.models.promotion import Promotion, PromotionAdminState, PromotionDisplayStatus, PromotionRedemption
from promo_engine.schemas.promotion import PromotionCreate, PromotionFilters, PromotionRead, PromotionUpdate
from promo_engine.services import pricing
from promo_engine.services import promotion_store
from promo_engine.services import redemption_ledger
from promo_engine.services.discounts import DiscountResult, calculate_discount
from promo_engine.services.promotion_rules import (
    normalize_code,
    validate_promotion,
    validate_reactivation_window,
)
from promo_engine.services.promotion_status import as_utc, derive_status, utcnow
from promo_engine.services.redemption_ledger import RedemptionRejection

logger = logging.getLogger(__name__)

# Fields an administrator may set; ``used`` only ever moves through the ledger.
_EDITABLE_FIELDS = (
    "code",
    "name",
    "kind",
    "value",
    "min_spend",
    "max_discount",
    "usage_limit",
    "admin_state",
    "starts_at",
    "ends_at",
)


def _now(now: datetime | None) -> datetime:
    return as_utc(now) or utcnow()


def _snapshot(promotion: Promotion) -> dict[str, Any]:
    fields = {name: getattr(promotion, name) for name in _EDITABLE_FIELDS}
    fields["used"] = promotion.used
    return fields


def _normalized(fields: dict[str, Any]) -> dict[str, Any]:
    cleaned = dict(fields)
    cleaned["code"] = normalize_code(cleaned.get("code"))
    if isinstance(cleaned.get("name"), str):
        cleaned["name"] = cleaned["name"].strip()
    for money_field in ("value", "min_spend", "max_discount"):
        if cleaned.get(money_field) is not None:
            cleaned[money_field] = pricing.to_money(cleaned[money_field])
    if cleaned.get("usage_limit") is None:
        cleaned["usage_limit"] = 0
    cleaned["starts_at"] = as_utc(cleaned.get("starts_at"))
    cleaned["ends_at"] = as_utc(cleaned.get("ends_at"))
    return cleaned


def _raise_if_invalid(fields: dict[str, Any]) -> None:
    violations = validate_promotion(SimpleNamespace(**fields))
    if violations:
        raise ValidationError(violations)


async def _ensure_code_free(session: AsyncSession, code: str, *, exclude_id: UUID | None = None) -> None:
    if await promotion_store.code_exists(session, code, exclude_id=exclude_id):
        raise ConflictError(code)


async def _save_claiming_code(session: AsyncSession, promotion: Promotion) -> Promotion:
    code = promotion.code
    try:
        return await promotion_store.save_promotion(session, promotion)
    except IntegrityError:
        # Lost a race for the same code between the existence check and commit.
        await session.rollback()
        raise ConflictError(code) from None


async def _load(session: AsyncSession, promotion_id: UUID) -> Promotion:
    promotion = await promotion_store.get_promotion(session, promotion_id)
    if promotion is None:
        raise NotFoundError(promotion_id)
    return promotion


def promotion_view(promotion: Promotion, *, now: datetime | None = None) -> PromotionRead:
    """Serialize ``promotion`` with its status derived at ``now``."""
    return PromotionRead.model_validate(promotion).model_copy(update={"status": derive_status(promotion, _now(now))})


async def create_promotion(session: AsyncSession, payload: PromotionCreate) -> Promotion:
    fields = _normalized(payload.model_dump())
    fields["used"] = 0
    _raise_if_invalid(fields)
    await _ensure_code_free(session, fields["code"])

    promotion = await _save_claiming_code(session, Promotion(**fields))
    metrics.record_promotion_created()
    logger.info("promotion_created", extra={"promotion_id": str(promotion.id), "code": promotion.code})
    return promotion


async def get_promotion(session: AsyncSession, promotion_id: UUID) -> Promotion:
    return await _load(session, promotion_id)


async def update_promotion(session: AsyncSession, promotion_id: UUID, payload: PromotionUpdate) -> Promotion:
    promotion = await _load(session, promotion_id)
    changes = payload.model_dump(exclude_unset=True)
    fields = _normalized({**_snapshot(promotion), **changes})
    _raise_if_invalid(fields)
    if fields["code"] != promotion.code:
        await _ensure_code_free(session, fields["code"], exclude_id=promotion.id)

    for name in _EDITABLE_FIELDS:
        setattr(promotion, name, fields[name])
    promotion = await _save_claiming_code(session, promotion)
    logger.info(
        "promotion_updated",
        extra={"promotion_id": str(promotion.id), "code": promotion.code, "fields": sorted(changes)},
    )
    return promotion


async def list_promotions(
    session: AsyncSession,
    filters: PromotionFilters | None = None,
    *,
    now: datetime | None = None,
) -> list[PromotionRead]:
    filters = filters or PromotionFilters()
    current = _now(now)
    rows = await promotion_store.list_promotions(
        session,
        now=current,
        archived=filters.archived,
        status=filters.status,
        kind=filters.kind,
        query=filters.query,
    )
    return [promotion_view(row, now=current) for row in rows]


async def duplicate_promotion(
    session: AsyncSession,
    promotion_id: UUID,
    new_code: str | None = None,
) -> Promotion:
    source = await _load(session, promotion_id)
    raw_code = new_code if new_code is not None else f"{source.code}{settings.promo_duplicate_suffix}"
    fields = _normalized({**_snapshot(source), "code": raw_code})
    fields["used"] = 0
    _raise_if_invalid(fields)
    await _ensure_code_free(session, fields["code"])

    copy = await _save_claiming_code(session, Promotion(**fields))
    logger.info(
        "promotion_duplicated",
        extra={"promotion_id": str(copy.id), "code": copy.code, "source_id": str(source.id)},
    )
    return copy


async def toggle_promotion(
    session: AsyncSession,
    promotion_id: UUID,
    *,
    force_activate: bool = False,
    now: datetime | None = None,
) -> Promotion:
    """Pause an active promotion, resume a paused one, start a scheduled one.

    Starting a scheduled promotion pulls ``starts_at`` forward to ``now`` so it
    reads back as active immediately. With ``force_activate`` the call never
    pauses: an already active promotion is left as it is. Expired promotions
    go through :func:`reactivate_promotion` instead.
    """
    current = _now(now)
    promotion = await _load(session, promotion_id)
    status = derive_status(promotion, current)

    if status == PromotionDisplayStatus.expired:
        raise InvalidStateError(
            operation="toggle",
            status=status.value,
            detail="Promotion has expired; reactivate it with a new window",
        )
    starts_at = promotion.starts_at
    if status == PromotionDisplayStatus.active:
        if force_activate:
            return promotion
        admin_state = PromotionAdminState.paused
    elif status == PromotionDisplayStatus.paused:
        admin_state = PromotionAdminState.active
    elif status == PromotionDisplayStatus.scheduled:
        admin_state = PromotionAdminState.active
        starts_at = current
    else:  # pragma: no cover - closed enum
        raise AssertionError(f"Unhandled status: {status!r}")

    _raise_if_invalid(_normalized({**_snapshot(promotion), "admin_state": admin_state, "starts_at": starts_at}))
    promotion.admin_state = admin_state
    promotion.starts_at = starts_at

    promotion = await promotion_store.save_promotion(session, promotion)
    logger.info(
        "promotion_toggled",
        extra={
            "promotion_id": str(promotion.id),
            "code": promotion.code,
            "status": derive_status(promotion, current).value,
            "previous_status": status.value,
        },
    )
    return promotion


async def reactivate_promotion(
    session: AsyncSession,
    promotion_id: UUID,
    starts_at: datetime | None,
    ends_at: datetime | None,
    *,
    now: datetime | None = None,
) -> Promotion:
    current = _now(now)
    promotion = await _load(session, promotion_id)
    status = derive_status(promotion, current)
    if status != PromotionDisplayStatus.expired:
        raise InvalidStateError(operation="reactivate", status=status.value)

    new_start, new_end = as_utc(starts_at), as_utc(ends_at)
    violations = validate_reactivation_window(new_start, new_end, now=current)
    if violations:
        raise ValidationError(violations)
    fields = _normalized(
        {**_snapshot(promotion), "admin_state": PromotionAdminState.active, "starts_at": new_start, "ends_at": new_end}
    )
    _raise_if_invalid(fields)

    promotion.admin_state = PromotionAdminState.active
    promotion.starts_at = new_start
    promotion.ends_at = new_end
    promotion = await promotion_store.save_promotion(session, promotion)
    logger.info(
        "promotion_reactivated",
        extra={
            "promotion_id": str(promotion.id),
            "code": promotion.code,
            "status": derive_status(promotion, current).value,
        },
    )
    return promotion


async def delete_promotion(session: AsyncSession, promotion_id: UUID) -> None:
    promotion = await _load(session, promotion_id)
    code = promotion.code
    await promotion_store.delete_promotion(session, promotion)
    logger.info("promotion_deleted", extra={"promotion_id": str(promotion_id), "code": code})


def _recorded_result(entry: PromotionRedemption) -> DiscountResult:
    return DiscountResult(
        eligible=True,
        discount_amount=pricing.to_money(entry.discount_amount),
        waive_shipping=bool(entry.waive_shipping),
    )


async def apply_promotion(
    session: AsyncSession,
    code: str,
    order_total: Decimal | int | float | str,
    order_id: str,
    *,
    now: datetime | None = None,
) -> DiscountResult:
    """Quote and redeem ``code`` for one order.

    Eligibility is checked twice: against the loaded snapshot to price the
    discount, then by the ledger's conditional increment at commit. Losing
    the second check after passing the first raises
    :class:`ConcurrencyConflictError` so the caller re-quotes.
    """
    current = _now(now)
    cleaned = normalize_code(code)
    promotion = await promotion_store.get_promotion_by_code(session, cleaned)
    if promotion is None:
        raise NotFoundError(cleaned or code)

    recorded = await promotion_store.get_redemption(session, promotion_id=promotion.id, order_id=order_id)
    if recorded is not None:
        return _recorded_result(recorded)

    quote = calculate_discount(promotion, order_total, now=current)
    if not quote.eligible:
        if quote.reason is None:
            raise AssertionError("Ineligible quote without a reason")
        raise IneligibleError.for_reason(quote.reason, min_spend=quote.min_spend)

    outcome = await redemption_ledger.redeem(
        session,
        promotion_id=promotion.id,
        order_id=order_id,
        discount_amount=quote.discount_amount,
        waive_shipping=quote.waive_shipping,
    )
    if not outcome.accepted:
        if outcome.reason == RedemptionRejection.not_found:
            raise NotFoundError(cleaned)
        raise ConcurrencyConflictError(cleaned)
    await session.refresh(promotion)
    if outcome.replayed and outcome.redemption is not None:
        return _recorded_result(outcome.redemption)
    return quote


async def list_promotion_redemptions(session: AsyncSession, promotion_id: UUID) -> list[PromotionRedemption]:
    await _load(session, promotion_id)
    return await redemption_ledger.list_redemptions(session, promotion_id)
