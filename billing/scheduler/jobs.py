from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import as_utc
from billing.repositories import activation_claims as claim_repo
from billing.repositories import subscriptions as subscription_repo
from billing.repositories import users as user_repo
from billing.repositories.audit_log import add_audit_log


logger = logging.getLogger(__name__)

STALE_CLAIM_ERROR = "subscription_creation_failed"


async def reconcile_premium_flags(
    session: AsyncSession, now: datetime | None = None
) -> int:
    """Recompute the cached premium flag from active subscriptions.

    A user is premium while an active subscription's period has not ended.
    Returns the number of users whose flag changed.
    """
    now = now or datetime.now(timezone.utc)
    period_ends: dict[int, datetime] = {}
    for subscription in await subscription_repo.list_active_subscriptions(session):
        period_end = as_utc(subscription.current_period_end)
        if period_end <= now:
            continue
        current = period_ends.get(subscription.user_id)
        if current is None or period_end > current:
            period_ends[subscription.user_id] = period_end

    changed = 0
    for user in await user_repo.list_users(session):
        expected_end = period_ends.get(user.id)
        expected_premium = expected_end is not None
        if user.is_premium == expected_premium and (
            not expected_premium or as_utc(user.premium_expires_at) == expected_end
        ):
            continue
        user.is_premium = expected_premium
        if expected_premium:
            user.premium_expires_at = expected_end
        elif user.premium_expires_at is None or as_utc(user.premium_expires_at) > now:
            user.premium_expires_at = now
        changed += 1
        logger.info(
            "Premium flag reconciled",
            extra={"user_id": user.id, "is_premium": expected_premium},
        )
    await session.commit()
    return changed


async def fail_stale_claims(
    session: AsyncSession, older_than: timedelta, now: datetime | None = None
) -> int:
    """Fail activation claims left pending by an interrupted activation.

    Each one is a confirmed charge without a subscription, so it goes to the
    audit log for manual follow-up. Returns the number of claims failed.
    """
    now = now or datetime.now(timezone.utc)
    failed = 0
    for claim in await claim_repo.list_pending_claims(session, now - older_than):
        if not await claim_repo.fail_pending_claim(
            session, claim.order_id, STALE_CLAIM_ERROR, now
        ):
            continue
        await add_audit_log(
            session,
            action="activation_needs_review",
            payload={
                "order_id": claim.order_id,
                "user_id": claim.user_id,
                "amount": claim.amount,
                "step": "stale_claim",
            },
        )
        failed += 1
        logger.error(
            "Activation claim left pending; marked failed",
            extra={"order_id": claim.order_id, "user_id": claim.user_id},
        )
    await session.commit()
    return failed
