"""Typed rejections raised by the promotion engine.

Every expected business condition surfaces as one of these classes so the API
layer can render a specific message (which field, which limit) without
parsing strings. Anything else escaping the engine, such as a
``sqlalchemy.exc.SQLAlchemyError``, is a genuine fault.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from promo_engine.schemas.error import ErrorResponse, FieldViolationRead


class IneligibleReason(str, enum.Enum):
    below_minimum_spend = "below_minimum_spend"
    not_currently_active = "not_currently_active"
    usage_limit_reached = "usage_limit_reached"


@dataclass(frozen=True)
class FieldViolation:
    field: str
    code: str
    message: str
    limit: Any = None


class PromotionError(Exception):
    code = "promotion_error"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(detail=self.detail, code=self.code)


class ValidationError(PromotionError):
    code = "validation_error"
    status_code = 422

    def __init__(self, violations: list[FieldViolation]) -> None:
        fields = ", ".join(sorted({v.field for v in violations}))
        super().__init__(f"Invalid promotion: {fields}")
        self.violations = list(violations)

    @property
    def fields(self) -> set[str]:
        return {v.field for v in self.violations}

    def to_response(self) -> ErrorResponse:
        errors = [
            FieldViolationRead(field=v.field, code=v.code, message=v.message, limit=_limit_repr(v.limit))
            for v in self.violations
        ]
        return ErrorResponse(detail=self.detail, code=self.code, errors=errors)


class NotFoundError(PromotionError):
    code = "not_found"
    status_code = 404

    def __init__(self, key: Any) -> None:
        super().__init__(f"Promotion not found: {key}")
        self.key = key


class ConflictError(PromotionError):
    code = "code_conflict"
    status_code = 409

    def __init__(self, promo_code: str) -> None:
        super().__init__(f"Promotion code already exists: {promo_code}")
        self.promo_code = promo_code


class InvalidStateError(PromotionError):
    code = "invalid_state"
    status_code = 409

    def __init__(self, *, operation: str, status: str, detail: str | None = None) -> None:
        super().__init__(detail or f"Cannot {operation} a promotion that is {status}")
        self.operation = operation
        self.status = status


class IneligibleError(PromotionError):
    code = "ineligible"
    status_code = 400

    _MESSAGES = {
        IneligibleReason.below_minimum_spend: "Order total is below the minimum spend",
        IneligibleReason.not_currently_active: "Promotion is not currently active",
        IneligibleReason.usage_limit_reached: "Promotion usage limit reached",
    }

    def __init__(self, reason: IneligibleReason, *, min_spend: Decimal | None = None) -> None:
        detail = self._MESSAGES[reason]
        if reason == IneligibleReason.below_minimum_spend and min_spend is not None:
            detail = f"Minimum spend is {min_spend}"
        super().__init__(detail)
        self.reason = reason
        self.min_spend = min_spend

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(detail=self.detail, code=f"{self.code}:{self.reason.value}")

    @classmethod
    def for_reason(cls, reason: IneligibleReason, *, min_spend: Decimal | None = None) -> "IneligibleError":
        if reason == IneligibleReason.below_minimum_spend:
            return BelowMinimumSpendError(min_spend=min_spend)
        if reason == IneligibleReason.not_currently_active:
            return NotCurrentlyActiveError()
        if reason == IneligibleReason.usage_limit_reached:
            return UsageLimitReachedError()
        raise AssertionError(f"Unhandled ineligible reason: {reason!r}")


class BelowMinimumSpendError(IneligibleError):
    def __init__(self, *, min_spend: Decimal | None = None) -> None:
        super().__init__(IneligibleReason.below_minimum_spend, min_spend=min_spend)


class NotCurrentlyActiveError(IneligibleError):
    def __init__(self) -> None:
        super().__init__(IneligibleReason.not_currently_active)


class UsageLimitReachedError(IneligibleError):
    def __init__(self) -> None:
        super().__init__(IneligibleReason.usage_limit_reached)


class ConcurrencyConflictError(PromotionError):
    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, promo_code: str) -> None:
        super().__init__(f"Promotion {promo_code} was used up while the order was being placed; re-quote the discount")
        self.promo_code = promo_code


def _limit_repr(limit: Any) -> str | None:
    if limit is None:
        return None
    return str(limit)
