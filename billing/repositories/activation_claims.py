from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import ActivationClaim, ClaimStatus


async def get_claim(session: AsyncSession, order_id: str) -> ActivationClaim | None:
    result = await session.execute(
        select(ActivationClaim).where(ActivationClaim.order_id == order_id)
    )
    return result.scalar_one_or_none()


async def create_claim(
    session: AsyncSession,
    order_id: str,
    user_id: int,
    plan_type: str,
    amount: int,
    promo_code_id: int | None,
) -> ActivationClaim:
    # order_id is the primary key: a concurrent duplicate fails on flush.
    claim = ActivationClaim(
        order_id=order_id,
        user_id=user_id,
        plan_type=plan_type,
        amount=amount,
        promo_code_id=promo_code_id,
        status=ClaimStatus.PENDING,
    )
    session.add(claim)
    await session.flush()
    return claim


async def list_pending_claims(
    session: AsyncSession, created_before: datetime
) -> list[ActivationClaim]:
    result = await session.execute(
        select(ActivationClaim)
        .where(ActivationClaim.status == ClaimStatus.PENDING)
        .where(ActivationClaim.created_at < created_before)
        .order_by(ActivationClaim.created_at)
    )
    return list(result.scalars().all())


async def fail_pending_claim(
    session: AsyncSession, order_id: str, error_code: str, failed_at: datetime
) -> bool:
    # Only a claim that is still pending flips; a completed one is left alone.
    result = await session.execute(
        update(ActivationClaim)
        .where(ActivationClaim.order_id == order_id)
        .where(ActivationClaim.status == ClaimStatus.PENDING)
        .values(status=ClaimStatus.FAILED, error_code=error_code, updated_at=failed_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
