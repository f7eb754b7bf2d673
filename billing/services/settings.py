from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import PlanType
from billing.errors import ValidationError
from billing.repositories.app_settings import get_settings, upsert_setting
from billing.repositories.audit_log import add_audit_log
from billing.repositories.users import get_or_create_user
from config import settings


logger = logging.getLogger(__name__)

PRICE_KEYS = {
    PlanType.MONTHLY: "monthly_price",
    PlanType.YEARLY: "yearly_price",
}


@dataclass(frozen=True)
class EffectiveSettings:
    monthly_price: int
    yearly_price: int
    monthly_period_days: int
    yearly_period_days: int

    def price_for(self, plan_type: str) -> int:
        if plan_type == PlanType.MONTHLY:
            return self.monthly_price
        if plan_type == PlanType.YEARLY:
            return self.yearly_price
        raise ValidationError(f"Unknown plan type: {plan_type}", code="invalid_plan")

    def duration_for(self, plan_type: str) -> timedelta:
        if plan_type == PlanType.MONTHLY:
            return timedelta(days=self.monthly_period_days)
        if plan_type == PlanType.YEARLY:
            return timedelta(days=self.yearly_period_days)
        raise ValidationError(f"Unknown plan type: {plan_type}", code="invalid_plan")


def ensure_plan_type(plan_type: str) -> str:
    if plan_type not in PlanType.ALL:
        raise ValidationError(f"Unknown plan type: {plan_type}", code="invalid_plan")
    return plan_type


def price_per_month(plan_type: str, amount: int) -> int:
    if plan_type == PlanType.YEARLY:
        return amount // 12
    return amount


async def get_effective_settings(session: AsyncSession) -> EffectiveSettings:
    overrides = await get_settings(session, *PRICE_KEYS.values())
    monthly = overrides.get(PRICE_KEYS[PlanType.MONTHLY])
    yearly = overrides.get(PRICE_KEYS[PlanType.YEARLY])

    return EffectiveSettings(
        monthly_price=int(monthly) if monthly is not None else settings.monthly_price,
        yearly_price=int(yearly) if yearly is not None else settings.yearly_price,
        monthly_period_days=settings.monthly_period_days,
        yearly_period_days=settings.yearly_period_days,
    )


async def update_plan_prices(
    session: AsyncSession,
    admin_user_id: int,
    prices: dict[str, int],
    now: datetime | None = None,
) -> EffectiveSettings:
    """Override plan prices at runtime. Commit is done by the caller."""
    now = now or datetime.now(timezone.utc)
    if not prices:
        raise ValidationError("No prices given", code="invalid_price")
    for plan_type, price in prices.items():
        ensure_plan_type(plan_type)
        if price < 0:
            raise ValidationError("Price must not be negative", code="invalid_price")

    await get_or_create_user(session, admin_user_id)
    for plan_type, price in prices.items():
        await upsert_setting(session, PRICE_KEYS[plan_type], str(price), now)
    await add_audit_log(
        session,
        action="plan_prices_updated",
        payload={"prices": dict(prices)},
        actor_user_id=admin_user_id,
    )
    logger.info(
        "Plan prices updated",
        extra={"admin_user_id": admin_user_id, "prices": dict(prices)},
    )
    return await get_effective_settings(session)
