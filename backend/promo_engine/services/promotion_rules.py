"""Invariants every stored promotion must satisfy.

The rules are pure: they look at a candidate (an ORM row, or a namespace
holding the merged fields of a create/update) and report every violated
invariant tagged with its field. Nothing here touches the database, so code
uniqueness is left to the service layer.
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from promo_engine.core.config import settings
from promo_engine.core.errors import FieldViolation
from promo_engine.models.promotion import PromotionAdminState, PromotionKind
from promo_engine.services.promotion_status import as_utc


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _as_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _as_kind(value: Any) -> PromotionKind | None:
    try:
        return PromotionKind(value)
    except ValueError:
        return None


def _check_code(code: Any) -> list[FieldViolation]:
    cleaned = normalize_code(code if isinstance(code, str) else None)
    if not cleaned:
        return [FieldViolation("code", "required", "Code is required")]
    if not re.fullmatch(settings.promo_code_pattern, cleaned):
        return [
            FieldViolation(
                "code",
                "invalid_format",
                "Code may only contain A-Z, 0-9, '_' and '-' (max 32 characters)",
                limit=settings.promo_code_pattern,
            )
        ]
    return []


def _check_name(name: Any) -> list[FieldViolation]:
    if not isinstance(name, str) or not name.strip():
        return [FieldViolation("name", "required", "Name is required")]
    if len(name.strip()) > 120:
        return [FieldViolation("name", "out_of_range", "Name is too long", limit=120)]
    return []


def _check_value(kind: PromotionKind, raw: Any) -> list[FieldViolation]:
    value = _as_decimal(raw)
    if value is None:
        return [FieldViolation("value", "required", "Value is required")]
    if kind == PromotionKind.percentage:
        low, high = settings.promo_percentage_min, settings.promo_percentage_max
        if not low <= value <= high:
            return [
                FieldViolation("value", "out_of_range", f"Percentage must be between {low} and {high}", limit=high)
            ]
    elif kind == PromotionKind.fixed_amount:
        high = settings.promo_fixed_amount_max
        if not Decimal("0") <= value <= high:
            return [FieldViolation("value", "out_of_range", f"Fixed amount must be between 0 and {high}", limit=high)]
    elif kind == PromotionKind.free_shipping:
        if value != 0:
            return [FieldViolation("value", "not_allowed", "Free shipping promotions carry no value", limit=0)]
    else:  # pragma: no cover - closed enum
        raise AssertionError(f"Unhandled promotion kind: {kind!r}")
    return []


def _check_min_spend(raw: Any) -> list[FieldViolation]:
    min_spend = _as_decimal(raw)
    floor = settings.promo_min_spend_floor
    if min_spend is None:
        return [FieldViolation("min_spend", "required", "Minimum spend is required", limit=floor)]
    if min_spend < floor:
        return [FieldViolation("min_spend", "out_of_range", f"Minimum spend must be at least {floor}", limit=floor)]
    return []


def _check_max_discount(raw: Any) -> list[FieldViolation]:
    max_discount = _as_decimal(raw)
    cap = settings.promo_max_discount_cap
    if max_discount is None:
        return []
    if max_discount < 0 or max_discount > cap:
        return [
            FieldViolation("max_discount", "out_of_range", f"Max discount must be 0 (no cap) or at most {cap}", limit=cap)
        ]
    return []


def _check_usage(limit: Any, used: Any) -> list[FieldViolation]:
    cap = settings.promo_usage_limit_cap
    if limit is None:
        limit = 0
    if not isinstance(limit, int) or limit < 0 or limit > cap:
        return [
            FieldViolation("usage_limit", "out_of_range", f"Usage limit must be 0 (unlimited) or at most {cap}", limit=cap)
        ]
    used_count = int(used or 0)
    if used_count < 0:
        return [FieldViolation("used", "out_of_range", "Usage count cannot be negative", limit=0)]
    if limit > 0 and used_count > limit:
        return [
            FieldViolation(
                "usage_limit",
                "usage_exceeds_limit",
                f"Usage limit cannot be lower than the {used_count} redemptions already made",
                limit=used_count,
            )
        ]
    return []


def validate_window(starts_at: datetime | None, ends_at: datetime | None) -> list[FieldViolation]:
    start = as_utc(starts_at)
    end = as_utc(ends_at)
    if start is not None and end is not None and end <= start:
        return [FieldViolation("ends_at", "window_order", "End must be after start")]
    return []


def validate_promotion(candidate: Any) -> list[FieldViolation]:
    """Return every invariant ``candidate`` violates; an empty list means valid."""
    violations: list[FieldViolation] = []
    violations.extend(_check_code(getattr(candidate, "code", None)))
    violations.extend(_check_name(getattr(candidate, "name", None)))

    kind = _as_kind(getattr(candidate, "kind", None))
    if kind is None:
        allowed = ", ".join(k.value for k in PromotionKind)
        violations.append(FieldViolation("kind", "not_allowed", f"Kind must be one of: {allowed}"))
    else:
        violations.extend(_check_value(kind, getattr(candidate, "value", None)))

    violations.extend(_check_min_spend(getattr(candidate, "min_spend", None)))
    violations.extend(_check_max_discount(getattr(candidate, "max_discount", None)))
    violations.extend(_check_usage(getattr(candidate, "usage_limit", 0), getattr(candidate, "used", 0)))

    admin_state = getattr(candidate, "admin_state", PromotionAdminState.active)
    if admin_state not in set(PromotionAdminState):
        violations.append(FieldViolation("admin_state", "not_allowed", "Admin state must be active or paused"))

    violations.extend(validate_window(getattr(candidate, "starts_at", None), getattr(candidate, "ends_at", None)))
    return violations


def validate_reactivation_window(
    starts_at: datetime | None, ends_at: datetime | None, *, now: datetime
) -> list[FieldViolation]:
    """Reactivation needs a complete window that has not already elapsed."""
    violations: list[FieldViolation] = []
    if starts_at is None:
        violations.append(FieldViolation("starts_at", "required", "Start is required to reactivate"))
    if ends_at is None:
        violations.append(FieldViolation("ends_at", "required", "End is required to reactivate"))
    if violations:
        return violations
    violations.extend(validate_window(starts_at, ends_at))
    end = as_utc(ends_at)
    if not violations and end is not None and end <= as_utc(now):
        violations.append(FieldViolation("ends_at", "out_of_range", "End must be in the future"))
    return violations
