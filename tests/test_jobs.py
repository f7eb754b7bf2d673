from datetime import timedelta

from sqlalchemy import select

from billing.db.models import (
    ActivationClaim,
    AuditLog,
    ClaimStatus,
    PaymentMethod,
    PlanType,
    User,
    as_utc,
)
from billing.repositories import subscriptions as subscription_repo
from billing.scheduler.jobs import fail_stale_claims, reconcile_premium_flags
from billing.scheduler.setup import setup_scheduler
from billing.services import activation as activation_service
from billing.services.activation import ActivationError


async def _subscribe(session_factory, user_id, started_at, period_end):
    async with session_factory() as session:
        await subscription_repo.add_subscription(
            session,
            user_id=user_id,
            plan_type=PlanType.MONTHLY,
            payment_method=PaymentMethod.CARD,
            started_at=started_at,
            period_end=period_end,
            price_per_month=9900,
            total_paid=9900,
        )
        await session.commit()


async def test_reconcile_sets_missing_premium_flag(session_factory, make_user, now):
    await make_user(1)
    await _subscribe(session_factory, 1, now, now + timedelta(days=30))

    async with session_factory() as session:
        changed = await reconcile_premium_flags(session, now=now)

    assert changed == 1
    async with session_factory() as session:
        user = await session.get(User, 1)
    assert user.is_premium
    assert as_utc(user.premium_expires_at) == now + timedelta(days=30)


async def test_reconcile_clears_lapsed_premium(session_factory, make_user, now):
    lapsed_at = now - timedelta(days=1)
    await make_user(2, is_premium=True, premium_expires_at=lapsed_at)
    await _subscribe(session_factory, 2, now - timedelta(days=31), lapsed_at)

    async with session_factory() as session:
        changed = await reconcile_premium_flags(session, now=now)

    assert changed == 1
    async with session_factory() as session:
        user = await session.get(User, 2)
    assert not user.is_premium
    assert as_utc(user.premium_expires_at) == lapsed_at


async def test_reconcile_leaves_consistent_users_alone(session_factory, make_user, now):
    period_end = now + timedelta(days=10)
    await make_user(3, is_premium=True, premium_expires_at=period_end)
    await _subscribe(session_factory, 3, now - timedelta(days=20), period_end)
    await make_user(4)

    async with session_factory() as session:
        assert await reconcile_premium_flags(session, now=now) == 0


def test_scheduler_registers_maintenance_jobs(session_factory):
    scheduler = setup_scheduler(session_factory)

    assert scheduler.get_job("reconcile_premium_flags") is not None
    assert scheduler.get_job("fail_stale_claims") is not None


async def _claim(session_factory, order_id, user_id, created_at, status=ClaimStatus.PENDING):
    async with session_factory() as session:
        session.add(
            ActivationClaim(
                order_id=order_id,
                user_id=user_id,
                plan_type=PlanType.MONTHLY,
                amount=9900,
                status=status,
                created_at=created_at,
            )
        )
        await session.commit()


async def test_stale_pending_claims_are_failed_and_audited(session_factory, make_user, now):
    await make_user(1)
    await _claim(session_factory, "order-stale", 1, now - timedelta(hours=2))
    await _claim(session_factory, "order-fresh", 1, now - timedelta(minutes=1))
    await _claim(
        session_factory, "order-done", 1, now - timedelta(hours=2), ClaimStatus.COMPLETED
    )

    async with session_factory() as session:
        failed = await fail_stale_claims(session, timedelta(minutes=30), now=now)

    assert failed == 1
    async with session_factory() as session:
        stale = await session.get(ActivationClaim, "order-stale")
        fresh = await session.get(ActivationClaim, "order-fresh")
        done = await session.get(ActivationClaim, "order-done")
        audit = (await session.execute(select(AuditLog))).scalar_one()
    assert stale.status == ClaimStatus.FAILED
    assert stale.error_code == "subscription_creation_failed"
    assert fresh.status == ClaimStatus.PENDING
    assert done.status == ClaimStatus.COMPLETED
    assert audit.action == "activation_needs_review"
    assert audit.payload["order_id"] == "order-stale"


async def test_retry_after_stale_claim_sweep_reports_the_failure(
    session_factory, gateway, authorize, make_user, now
):
    await make_user(1)
    await _claim(session_factory, "order-stuck", 1, now - timedelta(hours=2))
    async with session_factory() as session:
        await fail_stale_claims(session, timedelta(minutes=30), now=now)

    result = await activation_service.activate(
        session_factory,
        gateway,
        order_id="order-stuck",
        user_id=1,
        plan_type=PlanType.MONTHLY,
        amount=9900,
        authorization=authorize("order-stuck", 9900),
    )

    assert result.error == ActivationError.SUBSCRIPTION_CREATION_FAILED
