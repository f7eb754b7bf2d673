from sqlalchemy.ext.asyncio import AsyncSession

from billing.db.models import AuditLog


async def add_audit_log(
    session: AsyncSession,
    action: str,
    payload: dict,
    actor_user_id: int | None = None,
) -> AuditLog:
    entry = AuditLog(action=action, payload=payload, actor_user_id=actor_user_id)
    session.add(entry)
    return entry
