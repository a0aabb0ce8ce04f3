import os
from collections.abc import AsyncIterator, Generator
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Point the module-level engine at SQLite before anything imports promo_engine.db.session.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from promo_engine.core import metrics  # noqa: E402
from promo_engine.db.base import Base  # noqa: E402
from promo_engine.models.promotion import PromotionAdminState, PromotionKind  # noqa: E402
from promo_engine.schemas.promotion import PromotionCreate  # noqa: E402

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak between tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # A file database so concurrent sessions really use separate connections.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'promotions.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)
    await engine.dispose()


@pytest.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    async with session_factory() as db:
        yield db


def promotion_payload(**overrides: object) -> PromotionCreate:
    data: dict[str, object] = {
        "code": "SAVE10",
        "name": "Save 10%",
        "kind": PromotionKind.percentage,
        "value": Decimal("10"),
        "min_spend": Decimal("50"),
        "max_discount": Decimal("0"),
        "usage_limit": 0,
        "admin_state": PromotionAdminState.active,
        "starts_at": None,
        "ends_at": None,
    }
    data.update(overrides)
    return PromotionCreate(**data)
