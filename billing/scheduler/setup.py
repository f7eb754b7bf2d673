from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from billing.db.session import AsyncSessionLocal
from billing.scheduler import jobs
from config import settings


def setup_scheduler(session_factory=None) -> AsyncIOScheduler:
    session_factory = session_factory or AsyncSessionLocal
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    async def _reconcile_premium_flags() -> None:
        async with session_factory() as session:
            await jobs.reconcile_premium_flags(session)

    async def _fail_stale_claims() -> None:
        async with session_factory() as session:
            await jobs.fail_stale_claims(
                session, timedelta(minutes=settings.stale_claim_minutes)
            )

    scheduler.add_job(
        _reconcile_premium_flags,
        "interval",
        minutes=settings.premium_reconcile_minutes,
        id="reconcile_premium_flags",
        replace_existing=True,
    )
    scheduler.add_job(
        _fail_stale_claims,
        "interval",
        minutes=settings.premium_reconcile_minutes,
        id="fail_stale_claims",
        replace_existing=True,
    )

    return scheduler
