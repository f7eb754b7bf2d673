from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import re

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import DiscountType, PlanType, PromoCode, as_utc
from billing.errors import PersistenceError, ValidationError
from billing.repositories import promos as promo_repo
from billing.repositories import subscriptions as subscription_repo
from billing.repositories import users as user_repo
from billing.services.discounts import DiscountResult, calculate_discount
from billing.services.settings import ensure_plan_type, get_effective_settings


logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{1,64}$")


class EligibilityFailure(str):
    INVALID_FORMAT = "invalid_format"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    EXHAUSTED_USES = "exhausted_uses"
    PLAN_MISMATCH = "plan_mismatch"
    NOT_NEW_USER = "not_new_user"
    ALREADY_USED = "already_used"
    TRIAL_ACTIVE = "trial_active"


FAILURE_MESSAGES = {
    EligibilityFailure.INVALID_FORMAT: "Promo code format is invalid.",
    EligibilityFailure.NOT_FOUND: "Promo code does not exist.",
    EligibilityFailure.EXPIRED: "Promo code is not valid at this time.",
    EligibilityFailure.EXHAUSTED_USES: "Promo code has no uses left.",
    EligibilityFailure.PLAN_MISMATCH: "Promo code does not apply to this plan.",
    EligibilityFailure.NOT_NEW_USER: "Promo code is for new users only.",
    EligibilityFailure.ALREADY_USED: "Promo code was already used by this account.",
    EligibilityFailure.TRIAL_ACTIVE: "Promo codes cannot be applied during a free trial.",
}


class PromoStatus(str):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    USED_UP = "used_up"


@dataclass(frozen=True)
class EligibilityResult:
    valid: bool
    reason: str | None = None
    promo: PromoCode | None = None
    discount: DiscountResult | None = None

    @property
    def message(self) -> str | None:
        return FAILURE_MESSAGES.get(self.reason) if self.reason else None

    @classmethod
    def rejected(cls, reason: str, promo: PromoCode | None = None) -> "EligibilityResult":
        return cls(valid=False, reason=reason, promo=promo)


def is_well_formed(code: str) -> bool:
    return bool(CODE_PATTERN.match(promo_repo.normalize_code(code)))


def promo_status(promo: PromoCode, now: datetime) -> str:
    if now < as_utc(promo.valid_from):
        return PromoStatus.SCHEDULED
    if now > as_utc(promo.valid_until):
        return PromoStatus.EXPIRED
    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        return PromoStatus.USED_UP
    return PromoStatus.ACTIVE


async def _first_failure(
    session: AsyncSession,
    promo: PromoCode,
    plan_type: str,
    user_id: int,
    now: datetime,
    check_cap: bool = True,
) -> str | None:
    if not (as_utc(promo.valid_from) <= now <= as_utc(promo.valid_until)):
        return EligibilityFailure.EXPIRED
    if check_cap and promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        return EligibilityFailure.EXHAUSTED_USES
    if promo.applicable_plans and plan_type not in promo.applicable_plans:
        return EligibilityFailure.PLAN_MISMATCH
    if promo.new_users_only and await subscription_repo.has_any_subscription(
        session, user_id
    ):
        return EligibilityFailure.NOT_NEW_USER
    if await promo_repo.get_promo_use(session, promo.id, user_id) is not None:
        return EligibilityFailure.ALREADY_USED

    user = await user_repo.get_user_by_id(session, user_id)
    if user is not None and user.trial_ends_at and as_utc(user.trial_ends_at) > now:
        return EligibilityFailure.TRIAL_ACTIVE
    return None


async def check_eligibility(
    session: AsyncSession,
    code: str,
    plan_type: str,
    user_id: int,
    now: datetime | None = None,
) -> EligibilityResult:
    """Run the ordered eligibility checks, stopping at the first failure.

    Read-only: nothing is reserved, the cap is enforced again by record_use.
    """
    now = now or datetime.now(timezone.utc)
    ensure_plan_type(plan_type)

    if not is_well_formed(code):
        return EligibilityResult.rejected(EligibilityFailure.INVALID_FORMAT)

    promo = await promo_repo.get_promo_by_code(session, code)
    if promo is None:
        return EligibilityResult.rejected(EligibilityFailure.NOT_FOUND)
    reason = await _first_failure(session, promo, plan_type, user_id, now)
    if reason is not None:
        return EligibilityResult.rejected(reason, promo)

    effective = await get_effective_settings(session)
    discount = calculate_discount(
        effective.price_for(plan_type), promo.discount_type, promo.discount_value
    )
    return EligibilityResult(valid=True, promo=promo, discount=discount)


async def check_redeemable(
    session: AsyncSession,
    promo_code_id: int,
    plan_type: str,
    user_id: int,
    now: datetime | None = None,
) -> EligibilityResult:
    """Re-run the eligibility checks for a promo chosen at checkout.

    The cap is not checked here; record_use takes the slot atomically.
    """
    now = now or datetime.now(timezone.utc)
    promo = await promo_repo.get_promo_by_id(session, promo_code_id)
    if promo is None:
        return EligibilityResult.rejected(EligibilityFailure.NOT_FOUND)
    reason = await _first_failure(
        session, promo, plan_type, user_id, now, check_cap=False
    )
    if reason is not None:
        return EligibilityResult.rejected(reason, promo)
    return EligibilityResult(valid=True, promo=promo)


async def record_use(
    session: AsyncSession,
    promo_code_id: int,
    user_id: int,
    subscription_id: int | None,
    now: datetime | None = None,
) -> None:
    """Redeem one use of a promo code for a user as a single transaction.

    Commits on success and rolls back on any rejection. Raises
    ValidationError (not_found / already_used / expired / exhausted_uses) or
    PersistenceError.
    """
    now = now or datetime.now(timezone.utc)
    details = {"promo_code_id": promo_code_id, "user_id": user_id}

    def _rejected(reason: str) -> ValidationError:
        return ValidationError(FAILURE_MESSAGES[reason], code=reason, details=details)

    if await promo_repo.get_promo_by_id(session, promo_code_id) is None:
        raise _rejected(EligibilityFailure.NOT_FOUND)

    try:
        redeemed = await promo_repo.redeem_promo_code(
            session, promo_code_id, user_id, subscription_id, now
        )
    except IntegrityError as exc:
        await session.rollback()
        if await promo_repo.get_promo_use(session, promo_code_id, user_id) is not None:
            raise _rejected(EligibilityFailure.ALREADY_USED) from exc
        raise PersistenceError("Failed to record promo code use", details=details) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Failed to record promo code use", details=details) from exc

    if not redeemed:
        await session.rollback()
        promo = await promo_repo.get_promo_by_id(session, promo_code_id)
        if promo is None:
            raise _rejected(EligibilityFailure.NOT_FOUND)
        if not (as_utc(promo.valid_from) <= now <= as_utc(promo.valid_until)):
            raise _rejected(EligibilityFailure.EXPIRED)
        raise _rejected(EligibilityFailure.EXHAUSTED_USES)

    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("Failed to commit promo code use", details=details) from exc
    logger.info(
        "Promo code redeemed",
        extra={
            "promo_code_id": promo_code_id,
            "user_id": user_id,
            "subscription_id": subscription_id,
        },
    )


async def create_promo_code(
    session: AsyncSession,
    code: str,
    discount_type: str,
    discount_value: int,
    valid_from: datetime,
    valid_until: datetime,
    max_uses: int | None = None,
    applicable_plans: list[str] | None = None,
    new_users_only: bool = False,
    description: str | None = None,
) -> PromoCode:
    # Commit is done by the caller.
    if not is_well_formed(code):
        raise ValidationError("Promo code format is invalid", code="invalid_format")
    if discount_type not in DiscountType.ALL:
        raise ValidationError(
            f"Unknown discount type: {discount_type}", code="invalid_discount_type"
        )
    if discount_value < 0 or (
        discount_type == DiscountType.PERCENTAGE and discount_value > 100
    ):
        raise ValidationError("Discount value out of range", code="invalid_discount_value")
    if max_uses is not None and max_uses < 1:
        raise ValidationError("max_uses must be positive", code="invalid_max_uses")
    if as_utc(valid_from) >= as_utc(valid_until):
        raise ValidationError(
            "valid_from must be earlier than valid_until", code="invalid_validity"
        )
    for plan_type in applicable_plans or ():
        if plan_type not in PlanType.ALL:
            raise ValidationError(f"Unknown plan type: {plan_type}", code="invalid_plan")
    if await promo_repo.get_promo_by_code(session, code) is not None:
        raise ValidationError("Promo code already exists", code="duplicate_code")

    return await promo_repo.create_promo_code(
        session,
        code=code,
        discount_type=discount_type,
        discount_value=discount_value,
        max_uses=max_uses,
        valid_from=valid_from,
        valid_until=valid_until,
        applicable_plans=list(applicable_plans) if applicable_plans else None,
        new_users_only=new_users_only,
        description=description,
    )
