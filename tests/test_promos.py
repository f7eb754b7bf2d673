import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from billing.db.models import (
    DiscountType,
    PlanType,
    PromoCode,
    PromoCodeUse,
    Subscription,
    SubscriptionStatus,
)
from billing.errors import PersistenceError, ValidationError
from billing.services import promos as promo_service
from billing.services.promos import EligibilityFailure, PromoStatus


async def test_eligible_code_returns_discount(session, make_promo):
    await make_promo(code="WELCOME20", discount_value=20)

    result = await promo_service.check_eligibility(
        session, "  welcome20 ", PlanType.MONTHLY, user_id=1
    )

    assert result.valid
    assert result.promo.code == "WELCOME20"
    assert result.discount.base_price == 9900
    assert result.discount.final_price == 7920


async def test_unknown_code(session):
    result = await promo_service.check_eligibility(
        session, "NOPE", PlanType.MONTHLY, user_id=1
    )
    assert not result.valid
    assert result.reason == EligibilityFailure.NOT_FOUND
    assert result.message


async def test_malformed_code(session):
    result = await promo_service.check_eligibility(
        session, "bad code!", PlanType.MONTHLY, user_id=1
    )
    assert result.reason == EligibilityFailure.INVALID_FORMAT


async def test_expired_is_reported_before_later_failures(session, make_promo, now):
    await make_promo(
        code="OLD",
        valid_from=now - timedelta(days=60),
        valid_until=now - timedelta(days=30),
        max_uses=1,
        current_uses=1,
        applicable_plans=[PlanType.YEARLY],
    )

    result = await promo_service.check_eligibility(
        session, "OLD", PlanType.MONTHLY, user_id=1
    )

    assert result.reason == EligibilityFailure.EXPIRED


async def test_not_yet_valid_code_is_expired(session, make_promo, now):
    await make_promo(code="SOON", valid_from=now + timedelta(days=1))
    result = await promo_service.check_eligibility(
        session, "SOON", PlanType.MONTHLY, user_id=1
    )
    assert result.reason == EligibilityFailure.EXPIRED


async def test_exhausted_code(session, make_promo):
    await make_promo(code="GONE", max_uses=2, current_uses=2)
    result = await promo_service.check_eligibility(
        session, "GONE", PlanType.MONTHLY, user_id=1
    )
    assert result.reason == EligibilityFailure.EXHAUSTED_USES


async def test_plan_mismatch(session, make_promo):
    await make_promo(code="YEARONLY", applicable_plans=[PlanType.YEARLY])

    monthly = await promo_service.check_eligibility(
        session, "YEARONLY", PlanType.MONTHLY, user_id=1
    )
    yearly = await promo_service.check_eligibility(
        session, "YEARONLY", PlanType.YEARLY, user_id=1
    )

    assert monthly.reason == EligibilityFailure.PLAN_MISMATCH
    assert yearly.valid
    assert yearly.discount.base_price == 94800


async def test_new_users_only_rejects_previous_subscribers(
    session_factory, make_user, make_promo, now
):
    await make_user(7)
    await make_promo(code="NEWBIE", new_users_only=True)
    async with session_factory() as session:
        session.add(
            Subscription(
                user_id=7,
                status=SubscriptionStatus.CANCELLED,
                plan_type=PlanType.MONTHLY,
                payment_method="card",
                started_at=now - timedelta(days=90),
                current_period_start=now - timedelta(days=90),
                current_period_end=now - timedelta(days=60),
            )
        )
        await session.commit()

    async with session_factory() as session:
        returning = await promo_service.check_eligibility(
            session, "NEWBIE", PlanType.MONTHLY, user_id=7
        )
        fresh = await promo_service.check_eligibility(
            session, "NEWBIE", PlanType.MONTHLY, user_id=8
        )

    assert returning.reason == EligibilityFailure.NOT_NEW_USER
    assert fresh.valid


async def test_active_trial_blocks_promo_codes(session, make_user, make_promo, now):
    await make_user(3, trial_ends_at=now + timedelta(days=5))
    await make_promo(code="WELCOME20")

    result = await promo_service.check_eligibility(
        session, "WELCOME20", PlanType.MONTHLY, user_id=3
    )

    assert result.reason == EligibilityFailure.TRIAL_ACTIVE


async def test_record_use_increments_counter(session_factory, make_user, make_promo):
    await make_user(1)
    promo = await make_promo(code="ONCE", max_uses=5)

    async with session_factory() as session:
        await promo_service.record_use(session, promo.id, user_id=1, subscription_id=None)

    async with session_factory() as session:
        refreshed = await session.get(PromoCode, promo.id)
        uses = (await session.execute(select(PromoCodeUse))).scalars().all()
    assert refreshed.current_uses == 1
    assert [(use.promo_code_id, use.user_id) for use in uses] == [(promo.id, 1)]


async def test_second_redemption_by_same_user_is_already_used(
    session_factory, make_user, make_promo
):
    await make_user(1)
    promo = await make_promo(code="ONCE")

    async with session_factory() as session:
        await promo_service.record_use(session, promo.id, user_id=1, subscription_id=None)
    async with session_factory() as session:
        with pytest.raises(ValidationError) as excinfo:
            await promo_service.record_use(
                session, promo.id, user_id=1, subscription_id=None
            )
        result = await promo_service.check_eligibility(
            session, "ONCE", PlanType.MONTHLY, user_id=1
        )

    assert excinfo.value.code == EligibilityFailure.ALREADY_USED
    assert result.reason == EligibilityFailure.ALREADY_USED
    async with session_factory() as session:
        assert (await session.get(PromoCode, promo.id)).current_uses == 1


async def test_concurrent_redemptions_never_exceed_the_cap(
    session_factory, make_user, make_promo
):
    cap = 3
    user_ids = list(range(1, 8))
    for user_id in user_ids:
        await make_user(user_id)
    promo = await make_promo(code="LIMITED", max_uses=cap)

    async def redeem(user_id):
        async with session_factory() as session:
            try:
                await promo_service.record_use(
                    session, promo.id, user_id=user_id, subscription_id=None
                )
                return "ok"
            except ValidationError as exc:
                return exc.code

    outcomes = await asyncio.gather(*(redeem(user_id) for user_id in user_ids))

    assert outcomes.count("ok") == cap
    assert outcomes.count(EligibilityFailure.EXHAUSTED_USES) == len(user_ids) - cap
    async with session_factory() as session:
        refreshed = await session.get(PromoCode, promo.id)
        use_count = await session.scalar(
            select(func.count()).select_from(PromoCodeUse)
        )
    assert refreshed.current_uses == cap
    assert use_count == cap


async def test_concurrent_redemptions_by_one_user_record_once(
    session_factory, make_user, make_promo
):
    await make_user(1)
    promo = await make_promo(code="RACE")

    async def redeem():
        async with session_factory() as session:
            try:
                await promo_service.record_use(
                    session, promo.id, user_id=1, subscription_id=None
                )
                return "ok"
            except ValidationError as exc:
                return exc.code

    outcomes = await asyncio.gather(redeem(), redeem())

    assert sorted(outcomes) == sorted(["ok", EligibilityFailure.ALREADY_USED])
    async with session_factory() as session:
        assert (await session.get(PromoCode, promo.id)).current_uses == 1


async def test_promo_status(make_promo, now):
    active = await make_promo(code="A")
    used_up = await make_promo(code="B", max_uses=1, current_uses=1)
    scheduled = await make_promo(code="C", valid_from=now + timedelta(days=2))
    expired = await make_promo(
        code="D", valid_from=now - timedelta(days=10), valid_until=now - timedelta(days=1)
    )

    assert promo_service.promo_status(active, now) == PromoStatus.ACTIVE
    assert promo_service.promo_status(used_up, now) == PromoStatus.USED_UP
    assert promo_service.promo_status(scheduled, now) == PromoStatus.SCHEDULED
    assert promo_service.promo_status(expired, now) == PromoStatus.EXPIRED


async def test_create_promo_code_normalizes_and_rejects_duplicates(session, now):
    promo = await promo_service.create_promo_code(
        session,
        code=" spring10 ",
        discount_type=DiscountType.FIXED_AMOUNT,
        discount_value=1000,
        valid_from=now,
        valid_until=now + timedelta(days=10),
    )
    await session.commit()
    assert promo.code == "SPRING10"

    with pytest.raises(ValidationError) as excinfo:
        await promo_service.create_promo_code(
            session,
            code="SPRING10",
            discount_type=DiscountType.FIXED_AMOUNT,
            discount_value=500,
            valid_from=now,
            valid_until=now + timedelta(days=10),
        )
    assert excinfo.value.code == "duplicate_code"


async def test_create_promo_code_rejects_inverted_validity(session, now):
    with pytest.raises(ValidationError) as excinfo:
        await promo_service.create_promo_code(
            session,
            code="BACKWARDS",
            discount_type=DiscountType.PERCENTAGE,
            discount_value=10,
            valid_from=now,
            valid_until=now - timedelta(days=1),
        )
    assert excinfo.value.code == "invalid_validity"


async def test_record_use_rejects_code_outside_its_window(
    session_factory, make_user, make_promo, now
):
    await make_user(1)
    promo = await make_promo(
        code="LAPSED",
        valid_from=now - timedelta(days=60),
        valid_until=now - timedelta(days=30),
    )

    async with session_factory() as session:
        with pytest.raises(ValidationError) as excinfo:
            await promo_service.record_use(
                session, promo.id, user_id=1, subscription_id=None, now=now
            )

    assert excinfo.value.code == EligibilityFailure.EXPIRED
    async with session_factory() as session:
        assert (await session.get(PromoCode, promo.id)).current_uses == 0
        assert await session.scalar(select(func.count()).select_from(PromoCodeUse)) == 0


async def test_record_use_of_unknown_code_is_not_found(session_factory, make_user):
    await make_user(1)

    async with session_factory() as session:
        with pytest.raises(ValidationError) as excinfo:
            await promo_service.record_use(session, 4242, user_id=1, subscription_id=None)

    assert excinfo.value.code == EligibilityFailure.NOT_FOUND


async def test_record_use_integrity_error_without_use_row_is_a_persistence_error(
    session_factory, make_user, make_promo, monkeypatch
):
    await make_user(1)
    promo = await make_promo(code="FKFAIL")

    async def _foreign_key_failure(*args, **kwargs):
        raise IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))

    monkeypatch.setattr(promo_service.promo_repo, "redeem_promo_code", _foreign_key_failure)

    async with session_factory() as session:
        with pytest.raises(PersistenceError):
            await promo_service.record_use(session, promo.id, user_id=1, subscription_id=None)


async def test_check_redeemable_skips_the_cap_but_not_the_window(
    session, make_promo, now
):
    full = await make_promo(code="FULL", max_uses=1, current_uses=1)
    lapsed = await make_promo(
        code="LAPSED",
        valid_from=now - timedelta(days=60),
        valid_until=now - timedelta(days=30),
    )

    assert (
        await promo_service.check_redeemable(session, full.id, PlanType.MONTHLY, 1, now=now)
    ).valid
    result = await promo_service.check_redeemable(
        session, lapsed.id, PlanType.MONTHLY, 1, now=now
    )
    assert result.reason == EligibilityFailure.EXPIRED
