import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from conftest import NOW, promotion_payload
from promo_engine.core.errors import (
    BelowMinimumSpendError,
    ConcurrencyConflictError,
    ConflictError,
    IneligibleError,
    IneligibleReason,
    InvalidStateError,
    NotCurrentlyActiveError,
    NotFoundError,
    UsageLimitReachedError,
    ValidationError,
)
from promo_engine.models.promotion import (
    Promotion,
    PromotionAdminState,
    PromotionDisplayStatus,
    PromotionKind,
    PromotionRedemption,
)
from promo_engine.schemas.promotion import PromotionFilters, PromotionUpdate
from promo_engine.services import promotions as promotions_service
from promo_engine.services import redemption_ledger
from promo_engine.services.promotion_status import as_utc, derive_status

pytestmark = pytest.mark.anyio


async def test_create_normalizes_and_starts_unused(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session, promotion_payload(code="  welcome_10 ", name="  Welcome  ")
    )
    assert promo.code == "WELCOME_10"
    assert promo.name == "Welcome"
    assert promo.used == 0
    assert promo.admin_state == PromotionAdminState.active
    assert promo.created_at is not None

    fetched = await promotions_service.get_promotion(session, promo.id)
    assert fetched.id == promo.id


async def test_create_rejects_duplicate_code_case_insensitively(session: AsyncSession) -> None:
    await promotions_service.create_promotion(session, promotion_payload(code="SPRING"))
    with pytest.raises(ConflictError) as exc:
        await promotions_service.create_promotion(session, promotion_payload(code="spring"))
    assert exc.value.promo_code == "SPRING"


async def test_create_reports_every_invalid_field(session: AsyncSession) -> None:
    with pytest.raises(ValidationError) as exc:
        await promotions_service.create_promotion(
            session,
            promotion_payload(
                code="no spaces",
                value=Decimal("0"),
                min_spend=Decimal("20"),
                starts_at=NOW,
                ends_at=NOW - timedelta(hours=1),
            ),
        )
    assert exc.value.fields == {"code", "value", "min_spend", "ends_at"}
    assert (await session.execute(select(Promotion))).scalars().all() == []


async def test_update_validates_merged_candidate(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(session, promotion_payload(code="FLAT", value=Decimal("20")))

    updated = await promotions_service.update_promotion(
        session, promo.id, PromotionUpdate(name="Flat 25", value=Decimal("25"), usage_limit=50)
    )
    assert updated.name == "Flat 25"
    assert updated.value == Decimal("25")
    assert updated.usage_limit == 50

    # Switching kind without fixing the value breaks the free shipping invariant.
    with pytest.raises(ValidationError) as exc:
        await promotions_service.update_promotion(session, promo.id, PromotionUpdate(kind=PromotionKind.free_shipping))
    assert exc.value.fields == {"value"}

    await session.refresh(promo)
    assert promo.kind == PromotionKind.percentage


async def test_update_code_conflict_and_missing(session: AsyncSession) -> None:
    await promotions_service.create_promotion(session, promotion_payload(code="TAKEN"))
    promo = await promotions_service.create_promotion(session, promotion_payload(code="MINE"))

    with pytest.raises(ConflictError):
        await promotions_service.update_promotion(session, promo.id, PromotionUpdate(code="taken"))
    # Keeping its own code is not a conflict.
    same = await promotions_service.update_promotion(session, promo.id, PromotionUpdate(code="mine"))
    assert same.code == "MINE"

    with pytest.raises(NotFoundError):
        await promotions_service.update_promotion(session, uuid.uuid4(), PromotionUpdate(name="x"))


async def test_update_cannot_lower_limit_below_usage(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(session, promotion_payload(code="USED", usage_limit=5))
    for order_id in ("o-1", "o-2", "o-3"):
        await promotions_service.apply_promotion(session, "USED", Decimal("100"), order_id)

    with pytest.raises(ValidationError) as exc:
        await promotions_service.update_promotion(session, promo.id, PromotionUpdate(usage_limit=2))
    assert exc.value.violations[0].code == "usage_exceeds_limit"


async def test_duplicate_copies_everything_but_identity_and_usage(session: AsyncSession) -> None:
    source = await promotions_service.create_promotion(
        session,
        promotion_payload(
            code="BASE",
            kind=PromotionKind.percentage,
            value=Decimal("15"),
            min_spend=Decimal("80"),
            max_discount=Decimal("300"),
            usage_limit=10,
            admin_state=PromotionAdminState.paused,
            starts_at=NOW - timedelta(days=1),
            ends_at=NOW + timedelta(days=30),
        ),
    )
    await promotions_service.toggle_promotion(session, source.id, now=NOW)
    await promotions_service.apply_promotion(session, "BASE", Decimal("200"), "order-1", now=NOW)

    copy = await promotions_service.duplicate_promotion(session, source.id, "base-2")
    await session.refresh(source)

    assert copy.id != source.id
    assert copy.code == "BASE-2"
    assert copy.used == 0
    assert source.used == 1
    for field in ("name", "kind", "value", "min_spend", "max_discount", "usage_limit", "admin_state"):
        assert getattr(copy, field) == getattr(source, field)
    assert as_utc(copy.starts_at) == as_utc(source.starts_at)
    assert as_utc(copy.ends_at) == as_utc(source.ends_at)


async def test_duplicate_default_code_and_conflicts(session: AsyncSession) -> None:
    source = await promotions_service.create_promotion(session, promotion_payload(code="HOLIDAY"))

    copy = await promotions_service.duplicate_promotion(session, source.id)
    assert copy.code == "HOLIDAY-COPY"

    with pytest.raises(ConflictError):
        await promotions_service.duplicate_promotion(session, source.id)
    with pytest.raises(ConflictError):
        await promotions_service.duplicate_promotion(session, source.id, "holiday")
    with pytest.raises(ValidationError) as exc:
        await promotions_service.duplicate_promotion(session, source.id, "not valid!")
    assert exc.value.fields == {"code"}
    with pytest.raises(NotFoundError):
        await promotions_service.duplicate_promotion(session, uuid.uuid4(), "ANY")


async def test_toggle_pauses_and_resumes(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(session, promotion_payload(code="FLIP"))

    paused = await promotions_service.toggle_promotion(session, promo.id, now=NOW)
    assert paused.admin_state == PromotionAdminState.paused
    assert derive_status(paused, NOW) == PromotionDisplayStatus.paused

    resumed = await promotions_service.toggle_promotion(session, promo.id, now=NOW)
    assert derive_status(resumed, NOW) == PromotionDisplayStatus.active

    still_active = await promotions_service.toggle_promotion(session, promo.id, force_activate=True, now=NOW)
    assert derive_status(still_active, NOW) == PromotionDisplayStatus.active


async def test_toggle_scheduled_starts_it_now(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session,
        promotion_payload(code="LATER", starts_at=NOW + timedelta(days=2), ends_at=NOW + timedelta(days=9)),
    )
    assert derive_status(promo, NOW) == PromotionDisplayStatus.scheduled

    started = await promotions_service.toggle_promotion(session, promo.id, now=NOW)

    assert derive_status(started, NOW) == PromotionDisplayStatus.active
    assert as_utc(started.starts_at) == NOW
    assert as_utc(started.ends_at) == NOW + timedelta(days=9)


async def test_toggle_refuses_expired(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session,
        promotion_payload(code="GONE", starts_at=NOW - timedelta(days=9), ends_at=NOW - timedelta(days=2)),
    )
    with pytest.raises(InvalidStateError) as exc:
        await promotions_service.toggle_promotion(session, promo.id, now=NOW)
    assert exc.value.status == "expired"
    with pytest.raises(NotFoundError):
        await promotions_service.toggle_promotion(session, uuid.uuid4(), now=NOW)


async def test_reactivate_only_from_expired(session: AsyncSession) -> None:
    active = await promotions_service.create_promotion(session, promotion_payload(code="LIVE"))
    paused = await promotions_service.create_promotion(
        session,
        promotion_payload(
            code="HELD",
            admin_state=PromotionAdminState.paused,
            starts_at=NOW - timedelta(days=9),
            ends_at=NOW - timedelta(days=2),
        ),
    )
    window = (NOW + timedelta(days=1), NOW + timedelta(days=8))

    for promo in (active, paused):
        with pytest.raises(InvalidStateError) as exc:
            await promotions_service.reactivate_promotion(session, promo.id, *window, now=NOW)
        assert exc.value.operation == "reactivate"


async def test_reactivate_assigns_new_window_and_keeps_usage(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session,
        promotion_payload(code="AGAIN", usage_limit=10, starts_at=NOW - timedelta(days=9), ends_at=NOW + timedelta(days=1)),
    )
    await promotions_service.apply_promotion(session, "AGAIN", Decimal("100"), "order-1", now=NOW)
    later = NOW + timedelta(days=3)
    assert derive_status(promo, later) == PromotionDisplayStatus.expired

    scheduled = await promotions_service.reactivate_promotion(
        session, promo.id, later + timedelta(days=1), later + timedelta(days=10), now=later
    )
    assert scheduled.used == 1
    assert scheduled.admin_state == PromotionAdminState.active
    assert derive_status(scheduled, later) == PromotionDisplayStatus.scheduled
    assert derive_status(scheduled, later + timedelta(days=2)) == PromotionDisplayStatus.active


async def test_reactivate_validates_the_new_window(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session,
        promotion_payload(code="OLD", starts_at=NOW - timedelta(days=9), ends_at=NOW - timedelta(days=2)),
    )
    with pytest.raises(ValidationError) as exc:
        await promotions_service.reactivate_promotion(
            session, promo.id, NOW + timedelta(days=5), NOW + timedelta(days=1), now=NOW
        )
    assert exc.value.fields == {"ends_at"}

    with pytest.raises(ValidationError):
        await promotions_service.reactivate_promotion(
            session, promo.id, NOW - timedelta(days=5), NOW - timedelta(days=1), now=NOW
        )

    await session.refresh(promo)
    assert derive_status(promo, NOW) == PromotionDisplayStatus.expired

    active = await promotions_service.reactivate_promotion(
        session, promo.id, NOW - timedelta(hours=1), NOW + timedelta(days=1), now=NOW
    )
    assert derive_status(active, NOW) == PromotionDisplayStatus.active


async def test_delete_removes_promotion_and_ledger(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(session, promotion_payload(code="BYE"))
    await promotions_service.apply_promotion(session, "BYE", Decimal("100"), "order-1")

    await promotions_service.delete_promotion(session, promo.id)

    assert (await session.execute(select(Promotion).where(Promotion.code == "BYE"))).scalar_one_or_none() is None
    assert (await session.execute(select(PromotionRedemption))).scalars().all() == []
    with pytest.raises(NotFoundError):
        await promotions_service.delete_promotion(session, promo.id)


async def test_apply_quotes_and_redeems(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session,
        promotion_payload(code="HALF", value=Decimal("50"), max_discount=Decimal("200"), usage_limit=3),
    )

    result = await promotions_service.apply_promotion(session, " half ", Decimal("1000"), "order-1", now=NOW)

    assert result.eligible is True
    assert result.discount_amount == Decimal("200.00")
    await session.refresh(promo)
    assert promo.used == 1
    ledger = await promotions_service.list_promotion_redemptions(session, promo.id)
    assert [(e.order_id, e.used_after, e.discount_amount) for e in ledger] == [("order-1", 1, Decimal("200.00"))]


async def test_apply_same_order_twice_is_idempotent(session: AsyncSession) -> None:
    promo = await promotions_service.create_promotion(
        session, promotion_payload(code="ONCE", kind=PromotionKind.fixed_amount, value=Decimal("30"), usage_limit=1)
    )

    first = await promotions_service.apply_promotion(session, "ONCE", Decimal("100"), "order-1", now=NOW)
    second = await promotions_service.apply_promotion(session, "ONCE", Decimal("100"), "order-1", now=NOW)

    assert first == second
    assert second.discount_amount == Decimal("30.00")
    await session.refresh(promo)
    assert promo.used == 1

    with pytest.raises(UsageLimitReachedError):
        await promotions_service.apply_promotion(session, "ONCE", Decimal("100"), "order-2", now=NOW)


async def test_apply_free_shipping_signals_waiver(session: AsyncSession) -> None:
    await promotions_service.create_promotion(
        session, promotion_payload(code="SHIPFREE", kind=PromotionKind.free_shipping, value=Decimal("0"))
    )
    result = await promotions_service.apply_promotion(session, "shipfree", Decimal("60"), "order-1", now=NOW)
    assert result.discount_amount == Decimal("0.00")
    assert result.waive_shipping is True


async def test_apply_rejections_are_typed(session: AsyncSession) -> None:
    await promotions_service.create_promotion(session, promotion_payload(code="BIG", min_spend=Decimal("500")))
    await promotions_service.create_promotion(
        session, promotion_payload(code="NAPPING", admin_state=PromotionAdminState.paused)
    )

    with pytest.raises(BelowMinimumSpendError) as low:
        await promotions_service.apply_promotion(session, "BIG", Decimal("499"), "order-1", now=NOW)
    assert low.value.reason == IneligibleReason.below_minimum_spend
    assert low.value.min_spend == Decimal("500")

    with pytest.raises(NotCurrentlyActiveError):
        await promotions_service.apply_promotion(session, "NAPPING", Decimal("100"), "order-1", now=NOW)

    with pytest.raises(NotFoundError):
        await promotions_service.apply_promotion(session, "NOPE", Decimal("100"), "order-1", now=NOW)


async def test_apply_raises_conflict_when_limit_is_taken_mid_flight(
    session_factory: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async with session_factory() as session:
        promo = await promotions_service.create_promotion(session, promotion_payload(code="LAST1", usage_limit=1))
    promotion_id = promo.id
    original_redeem = redemption_ledger.redeem

    async def redeem_after_competitor(session: AsyncSession, **kwargs):  # type: ignore[no-untyped-def]
        # Another checkout takes the last use between the quote and the commit.
        async with session_factory() as other:
            competitor = await original_redeem(other, promotion_id=promotion_id, order_id="order-competitor")
            assert competitor.accepted
        return await original_redeem(session, **kwargs)

    monkeypatch.setattr(redemption_ledger, "redeem", redeem_after_competitor)

    async with session_factory() as session:
        with pytest.raises(ConcurrencyConflictError):
            await promotions_service.apply_promotion(session, "LAST1", Decimal("100"), "order-mine", now=NOW)
        stored = await session.get(Promotion, promotion_id, populate_existing=True)
        assert stored is not None
        assert stored.used == 1


async def test_ineligible_errors_share_a_base(session: AsyncSession) -> None:
    await promotions_service.create_promotion(
        session, promotion_payload(code="SOON", starts_at=NOW + timedelta(days=1))
    )
    with pytest.raises(IneligibleError) as exc:
        await promotions_service.apply_promotion(session, "SOON", Decimal("100"), "order-1", now=NOW)
    assert exc.value.reason == IneligibleReason.not_currently_active


async def test_list_filters_by_archive_status_kind_and_query(session: AsyncSession) -> None:
    await promotions_service.create_promotion(session, promotion_payload(code="LIVE10", name="Spring live"))
    await promotions_service.create_promotion(
        session, promotion_payload(code="PAUSED5", name="Rainy day", admin_state=PromotionAdminState.paused)
    )
    await promotions_service.create_promotion(
        session,
        promotion_payload(code="NEXTWEEK", name="Preview", starts_at=NOW + timedelta(days=7)),
    )
    await promotions_service.create_promotion(
        session,
        promotion_payload(
            code="SHIPOLD",
            name="Old shipping",
            kind=PromotionKind.free_shipping,
            value=Decimal("0"),
            starts_at=NOW - timedelta(days=30),
            ends_at=NOW - timedelta(days=1),
        ),
    )

    current = await promotions_service.list_promotions(session, PromotionFilters(), now=NOW)
    assert {p.code: p.status for p in current} == {
        "LIVE10": PromotionDisplayStatus.active,
        "PAUSED5": PromotionDisplayStatus.paused,
        "NEXTWEEK": PromotionDisplayStatus.scheduled,
    }

    archived = await promotions_service.list_promotions(session, PromotionFilters(archived=True), now=NOW)
    assert [(p.code, p.status) for p in archived] == [("SHIPOLD", PromotionDisplayStatus.expired)]

    scheduled = await promotions_service.list_promotions(
        session, PromotionFilters(status=PromotionDisplayStatus.scheduled), now=NOW
    )
    assert [p.code for p in scheduled] == ["NEXTWEEK"]

    active = await promotions_service.list_promotions(
        session, PromotionFilters(status=PromotionDisplayStatus.active), now=NOW
    )
    assert [p.code for p in active] == ["LIVE10"]

    by_kind = await promotions_service.list_promotions(
        session, PromotionFilters(archived=True, kind=PromotionKind.free_shipping), now=NOW
    )
    assert [p.code for p in by_kind] == ["SHIPOLD"]

    by_name = await promotions_service.list_promotions(session, PromotionFilters(query="rainy"), now=NOW)
    assert [p.code for p in by_name] == ["PAUSED5"]

    by_code = await promotions_service.list_promotions(session, PromotionFilters(query="live1"), now=NOW)
    assert [p.code for p in by_code] == ["LIVE10"]

    by_kind_text = await promotions_service.list_promotions(
        session, PromotionFilters(archived=True, query="free shipping"), now=NOW
    )
    assert [p.code for p in by_kind_text] == ["SHIPOLD"]

    wildcard = await promotions_service.list_promotions(session, PromotionFilters(query="%"), now=NOW)
    assert wildcard == []


async def test_listing_status_matches_later_clock(session: AsyncSession) -> None:
    await promotions_service.create_promotion(
        session, promotion_payload(code="WEEK", starts_at=NOW, ends_at=NOW + timedelta(days=7))
    )
    later = NOW + timedelta(days=8)
    assert await promotions_service.list_promotions(session, PromotionFilters(), now=later) == []
    archived = await promotions_service.list_promotions(session, PromotionFilters(archived=True), now=later)
    assert [p.status for p in archived] == [PromotionDisplayStatus.expired]


async def test_list_redemptions_for_unknown_promotion(session: AsyncSession) -> None:
    with pytest.raises(NotFoundError):
        await promotions_service.list_promotion_redemptions(session, uuid.uuid4())
