import asyncio
import logging
import os
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete
from clienthub_webhooks.db.session import AsyncSessionLocal, async_engine
from clienthub_webhooks.models.dispatcher_run import DispatcherRun

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

RUN_RETENTION_HOURS = int(os.getenv("RUN_RETENTION_HOURS", "72"))


async def purge_old_runs(db: AsyncSession | None = None) -> int:
    """
    Drop webhook_dispatcher_runs rows started more than RUN_RETENTION_HOURS ago
    and return how many went. The queue and delivery logs are left untouched.

    A caller-supplied session is flushed but not committed.
    """
    owns_session = db is None
    if owns_session:
        db = AsyncSessionLocal()

    cutoff = datetime.utcnow() - timedelta(hours=RUN_RETENTION_HOURS)
    try:
        result = await db.execute(
            delete(DispatcherRun).where(DispatcherRun.started_at < cutoff)
        )
        if owns_session:
            await db.commit()
    except Exception:
        if owns_session:
            await db.rollback()
        logger.exception(f"[Retention] Purge of dispatcher runs before {cutoff.isoformat()} failed")
        raise
    finally:
        if owns_session:
            await db.close()

    logger.info(f"[Retention] Removed {result.rowcount} dispatcher run(s) before {cutoff.isoformat()}")
    return result.rowcount


def purge_old_runs_sync() -> int:
    """Entry point for RQ / cron."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(purge_old_runs())
    finally:
        loop.run_until_complete(async_engine.dispose())
        loop.close()
