from promo_engine.db.base import Base  # noqa: F401
from promo_engine.models.promotion import (  # noqa: F401
    Promotion,
    PromotionAdminState,
    PromotionDisplayStatus,
    PromotionKind,
    PromotionRedemption,
)

__all__ = [
    "Base",
    "Promotion",
    "PromotionAdminState",
    "PromotionDisplayStatus",
    "PromotionKind",
    "PromotionRedemption",
]
