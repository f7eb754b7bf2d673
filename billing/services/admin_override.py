from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing.db.models import PaymentMethod
from billing.errors import PersistenceError, ValidationError
from billing.repositories import subscriptions as subscription_repo
from billing.repositories import users as user_repo
from billing.repositories.audit_log import add_audit_log
from billing.services.settings import ensure_plan_type, get_effective_settings


logger = logging.getLogger(__name__)

MAX_GRANT_DAYS = 3650


@dataclass(frozen=True)
class GrantResult:
    subscription_id: int
    expires_at: datetime
    premium_flag_synced: bool


@dataclass(frozen=True)
class RevokeResult:
    cancelled_subscriptions: int
    premium_flag_synced: bool

    @property
    def was_active(self) -> bool:
        return self.cancelled_subscriptions > 0


async def grant_premium(
    session_factory: async_sessionmaker[AsyncSession],
    admin_user_id: int,
    target_user_id: int,
    plan_type: str,
    duration_days: int | None = None,
    now: datetime | None = None,
) -> GrantResult:
    """Activate premium without a payment.

    The caller must already have established that admin_user_id is an
    administrator.
    """
    now = now or datetime.now(timezone.utc)
    ensure_plan_type(plan_type)
    if duration_days is not None and not (1 <= duration_days <= MAX_GRANT_DAYS):
        raise ValidationError(
            f"duration_days must be within 1..{MAX_GRANT_DAYS}", code="invalid_duration"
        )

    try:
        async with session_factory() as session:
            await user_repo.get_or_create_user(session, admin_user_id)
            await user_repo.get_or_create_user(session, target_user_id)
            effective = await get_effective_settings(session)
            if duration_days is not None:
                period_end = now + timedelta(days=duration_days)
            else:
                period_end = now + effective.duration_for(plan_type)

            await subscription_repo.cancel_active_subscriptions(session, target_user_id, now)
            subscription = await subscription_repo.add_subscription(
                session,
                user_id=target_user_id,
                plan_type=plan_type,
                payment_method=PaymentMethod.ADMIN_GRANTED,
                started_at=now,
                period_end=period_end,
                price_per_month=0,
                total_paid=0,
            )
            await add_audit_log(
                session,
                action="admin_premium_granted",
                payload={
                    "target_user_id": target_user_id,
                    "subscription_id": subscription.id,
                    "plan_type": plan_type,
                    "duration_days": duration_days,
                },
                actor_user_id=admin_user_id,
            )
            await session.commit()
            subscription_id = subscription.id
    except SQLAlchemyError as exc:
        logger.exception(
            "Admin grant failed",
            extra={"admin_user_id": admin_user_id, "target_user_id": target_user_id},
        )
        raise PersistenceError(
            "Failed to create subscription", details={"target_user_id": target_user_id}
        ) from exc

    synced = await _sync_premium_flag(session_factory, target_user_id, True, period_end)
    logger.info(
        "Premium granted by admin",
        extra={
            "admin_user_id": admin_user_id,
            "target_user_id": target_user_id,
            "subscription_id": subscription_id,
        },
    )
    return GrantResult(
        subscription_id=subscription_id, expires_at=period_end, premium_flag_synced=synced
    )


async def revoke_premium(
    session_factory: async_sessionmaker[AsyncSession],
    admin_user_id: int,
    target_user_id: int,
    now: datetime | None = None,
) -> RevokeResult:
    """Cancel the user's active subscription. Revoking twice is a no-op."""
    now = now or datetime.now(timezone.utc)
    try:
        async with session_factory() as session:
            await user_repo.get_or_create_user(session, admin_user_id)
            cancelled = await subscription_repo.cancel_active_subscriptions(
                session, target_user_id, now
            )
            if cancelled:
                await add_audit_log(
                    session,
                    action="admin_premium_revoked",
                    payload={"target_user_id": target_user_id, "cancelled": cancelled},
                    actor_user_id=admin_user_id,
                )
            await session.commit()
    except SQLAlchemyError as exc:
        logger.exception(
            "Admin revoke failed",
            extra={"admin_user_id": admin_user_id, "target_user_id": target_user_id},
        )
        raise PersistenceError(
            "Failed to cancel subscription", details={"target_user_id": target_user_id}
        ) from exc

    synced = await _sync_premium_flag(session_factory, target_user_id, False, now)
    return RevokeResult(cancelled_subscriptions=cancelled, premium_flag_synced=synced)


async def _sync_premium_flag(
    session_factory: async_sessionmaker[AsyncSession],
    user_id: int,
    is_premium: bool,
    expires_at: datetime,
) -> bool:
    # Non-fatal: reconcile_premium_flags converges the flag later.
    try:
        async with session_factory() as session:
            await user_repo.set_premium(session, user_id, is_premium, expires_at)
            await session.commit()
        return True
    except SQLAlchemyError:
        logger.exception(
            "Premium flag update failed; left to reconciliation",
            extra={"user_id": user_id, "is_premium": is_premium},
        )
        return False
