from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from billing.errors import ValidationError
from billing.payments.adapter import PaymentGateway
from billing.services import promos as promo_service
from billing.services.settings import ensure_plan_type, get_effective_settings


logger = logging.getLogger(__name__)

PLAN_NAMES = {"monthly": "Premium (monthly)", "yearly": "Premium (yearly)"}


@dataclass(frozen=True)
class DiscountSummary:
    promo_code_id: int
    code: str
    discount_type: str
    discount_value: int
    discount_amount: int
    description: str | None
    free_trial_days: int | None = None


@dataclass(frozen=True)
class CheckoutSession:
    order_id: str
    checkout_url: str
    plan_type: str
    base_amount: int
    final_amount: int
    discount_summary: DiscountSummary | None = None


def generate_order_id(user_id: int) -> str:
    # uuid4 keeps collisions negligible; the user prefix makes ids traceable.
    return f"order_{user_id}_{uuid.uuid4().hex}"


async def create_checkout(
    session: AsyncSession,
    gateway: PaymentGateway,
    user_id: int,
    plan_type: str,
    promo_code: str | None = None,
    now: datetime | None = None,
) -> CheckoutSession:
    """Price an order and obtain a gateway checkout handle for it.

    Nothing is written and no promo slot is held here: the user may abandon
    checkout, so the promo code is redeemed only on activation.
    """
    now = now or datetime.now(timezone.utc)
    ensure_plan_type(plan_type)
    effective = await get_effective_settings(session)
    base_amount = effective.price_for(plan_type)
    final_amount = base_amount
    summary = None

    if promo_code is not None and promo_code.strip():
        eligibility = await promo_service.check_eligibility(
            session, promo_code, plan_type, user_id, now=now
        )
        if not eligibility.valid:
            raise ValidationError(
                eligibility.message,
                code=eligibility.reason,
                details={"promo_code": promo_code, "plan_type": plan_type},
            )
        promo = eligibility.promo
        final_amount = eligibility.discount.final_price
        summary = DiscountSummary(
            promo_code_id=promo.id,
            code=promo.code,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            discount_amount=eligibility.discount.discount_amount,
            description=promo.description,
            free_trial_days=eligibility.discount.free_trial_days,
        )

    order_id = generate_order_id(user_id)
    checkout_url = await gateway.create_checkout(
        order_id=order_id,
        amount=final_amount,
        order_name=PLAN_NAMES[plan_type],
        customer_key=f"user_{user_id}",
    )
    logger.info(
        "Checkout created",
        extra={
            "order_id": order_id,
            "user_id": user_id,
            "plan_type": plan_type,
            "final_amount": final_amount,
        },
    )
    return CheckoutSession(
        order_id=order_id,
        checkout_url=checkout_url,
        plan_type=plan_type,
        base_amount=base_amount,
        final_amount=final_amount,
        discount_summary=summary,
    )
