from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import AppSetting


async def get_settings(session: AsyncSession, *keys: str) -> dict[str, str]:
    result = await session.execute(select(AppSetting).where(AppSetting.key.in_(keys)))
    return {entry.key: entry.value for entry in result.scalars()}


async def upsert_setting(
    session: AsyncSession, key: str, value: str, updated_at: datetime
) -> AppSetting:
    entry = await session.get(AppSetting, key)
    if entry is None:
        entry = AppSetting(key=key, value=value, updated_at=updated_at)
        session.add(entry)
    else:
        entry.value = value
        entry.updated_at = updated_at
    await session.flush()
    return entry
