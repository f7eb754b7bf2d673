from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import PromoCode, PromoCodeUse


def normalize_code(code: str) -> str:
    return code.strip().upper()


async def get_promo_by_code(session: AsyncSession, code: str) -> PromoCode | None:
    result = await session.execute(
        select(PromoCode).where(PromoCode.code == normalize_code(code))
    )
    return result.scalar_one_or_none()


async def get_promo_by_id(session: AsyncSession, promo_code_id: int) -> PromoCode | None:
    result = await session.execute(select(PromoCode).where(PromoCode.id == promo_code_id))
    return result.scalar_one_or_none()


async def create_promo_code(
    session: AsyncSession,
    code: str,
    discount_type: str,
    discount_value: int,
    max_uses: int | None,
    valid_from: datetime,
    valid_until: datetime,
    applicable_plans: list[str] | None = None,
    new_users_only: bool = False,
    description: str | None = None,
) -> PromoCode:
    promo = PromoCode(
        code=normalize_code(code),
        discount_type=discount_type,
        discount_value=discount_value,
        max_uses=max_uses,
        current_uses=0,
        valid_from=valid_from,
        valid_until=valid_until,
        applicable_plans=applicable_plans,
        new_users_only=new_users_only,
        description=description,
    )
    session.add(promo)
    return promo


async def list_promo_codes(session: AsyncSession, limit: int = 50) -> list[PromoCode]:
    result = await session.execute(
        select(PromoCode).order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).limit(limit)
    )
    return list(result.scalars().all())


async def get_promo_use(
    session: AsyncSession, promo_code_id: int, user_id: int
) -> PromoCodeUse | None:
    result = await session.execute(
        select(PromoCodeUse).where(
            PromoCodeUse.promo_code_id == promo_code_id,
            PromoCodeUse.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def redeem_promo_code(
    session: AsyncSession,
    promo_code_id: int,
    user_id: int,
    subscription_id: int | None,
    used_at: datetime,
) -> bool:
    """Insert the use row and take one slot of the cap in the same transaction.

    The flush raises IntegrityError when the user already holds a use row for
    this code. A False return means the code was outside its validity window
    at used_at or no slot was left; the caller must roll the transaction back
    so the use row does not survive.
    """
    session.add(
        PromoCodeUse(
            promo_code_id=promo_code_id,
            user_id=user_id,
            subscription_id=subscription_id,
            used_at=used_at,
        )
    )
    await session.flush()
    result = await session.execute(
        update(PromoCode)
        .where(PromoCode.id == promo_code_id)
        .where(PromoCode.valid_from <= used_at)
        .where(PromoCode.valid_until >= used_at)
        .where(
            or_(
                PromoCode.max_uses.is_(None),
                PromoCode.current_uses < PromoCode.max_uses,
            )
        )
        .values(current_uses=PromoCode.current_uses + 1, updated_at=used_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
