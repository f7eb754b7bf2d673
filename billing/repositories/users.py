from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import User


async def get_user_by_id(session: AsyncSession, user_id: int) -> User | None:
    result = await session.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_user(session: AsyncSession, user_id: int) -> User:
    user = await get_user_by_id(session, user_id)
    if user:
        return user
    user = User(id=user_id, is_premium=False)
    session.add(user)
    await session.flush()
    return user


async def set_premium(
    session: AsyncSession,
    user_id: int,
    is_premium: bool,
    premium_expires_at: datetime | None,
) -> bool:
    result = await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(is_premium=is_premium, premium_expires_at=premium_expires_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def set_trial_end(
    session: AsyncSession, user_id: int, trial_ends_at: datetime
) -> None:
    await session.execute(
        update(User)
        .where(User.id == user_id)
        .values(trial_ends_at=trial_ends_at)
        .execution_options(synchronize_session=False)
    )


async def list_users(session: AsyncSession) -> list[User]:
    result = await session.execute(select(User).order_by(User.id))
    return list(result.scalars().all())
