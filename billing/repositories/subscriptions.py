from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import Subscription, SubscriptionStatus


async def get_subscription_by_id(
    session: AsyncSession, subscription_id: int
) -> Subscription | None:
    result = await session.execute(
        select(Subscription).where(Subscription.id == subscription_id)
    )
    return result.scalar_one_or_none()


async def has_any_subscription(session: AsyncSession, user_id: int) -> bool:
    result = await session.execute(
        select(Subscription.id).where(Subscription.user_id == user_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def list_active_subscriptions(session: AsyncSession) -> list[Subscription]:
    result = await session.execute(
        select(Subscription).where(Subscription.status == SubscriptionStatus.ACTIVE)
    )
    return list(result.scalars().all())


async def cancel_active_subscriptions(
    session: AsyncSession, user_id: int, cancelled_at: datetime
) -> int:
    # Conditional update: only rows still active flip, so concurrent callers
    # cannot cancel the same row twice.
    result = await session.execute(
        update(Subscription)
        .where(Subscription.user_id == user_id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE)
        .values(
            status=SubscriptionStatus.CANCELLED,
            cancelled_at=cancelled_at,
            updated_at=cancelled_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def add_subscription(
    session: AsyncSession,
    user_id: int,
    plan_type: str,
    payment_method: str,
    started_at: datetime,
    period_end: datetime,
    price_per_month: int,
    total_paid: int,
    billing_key: str | None = None,
    last_four_digits: str | None = None,
) -> Subscription:
    subscription = Subscription(
        user_id=user_id,
        status=SubscriptionStatus.ACTIVE,
        plan_type=plan_type,
        billing_key=billing_key,
        payment_method=payment_method,
        last_four_digits=last_four_digits,
        started_at=started_at,
        current_period_start=started_at,
        current_period_end=period_end,
        price_per_month=price_per_month,
        total_paid=total_paid,
    )
    session.add(subscription)
    await session.flush()
    return subscription
