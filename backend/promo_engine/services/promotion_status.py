from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from promo_engine.models.promotion import PromotionAdminState, PromotionDisplayStatus


class _Scheduled(Protocol):
    admin_state: PromotionAdminState
    starts_at: datetime | None
    ends_at: datetime | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands DateTime(timezone=True) back naive; every stored timestamp is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def derive_status(promotion: _Scheduled, now: datetime | None = None) -> PromotionDisplayStatus:
    """Classify a promotion for display.

    Precedence, first match wins:

    1. paused by an administrator, whatever the window says;
    2. past ``ends_at``, even when the admin flag is active;
    3. before ``starts_at``;
    4. active.
    """
    current = as_utc(now) or utcnow()
    if promotion.admin_state == PromotionAdminState.paused:
        return PromotionDisplayStatus.paused
    ends_at = as_utc(promotion.ends_at)
    if ends_at is not None and current > ends_at:
        return PromotionDisplayStatus.expired
    starts_at = as_utc(promotion.starts_at)
    if starts_at is not None and current < starts_at:
        return PromotionDisplayStatus.scheduled
    return PromotionDisplayStatus.active
