from datetime import datetime, timedelta
import uuid

from sqlalchemy import select

from clienthub_webhooks.models.dispatcher_run import DispatcherRun
from clienthub_webhooks.workers.run_retention import RUN_RETENTION_HOURS, purge_old_runs


async def test_purge_old_runs(async_db_session):
    old_id = uuid.uuid4()
    new_id = uuid.uuid4()

    old = DispatcherRun(
        id=old_id,
        triggered_by="cron",
        started_at=datetime.utcnow() - timedelta(hours=RUN_RETENTION_HOURS + 1),
        success=True,
    )
    new = DispatcherRun(
        id=new_id,
        triggered_by="http",
        started_at=datetime.utcnow() - timedelta(hours=1),
        success=True,
    )
    async_db_session.add_all([old, new])
    await async_db_session.flush()

    # Purge using the *same* async session
    deleted_count = await purge_old_runs(db=async_db_session)

    assert deleted_count == 1

    remaining = await async_db_session.execute(select(DispatcherRun.id))
    assert set(remaining.scalars().all()) == {new_id}


def test_purge_old_runs_sync_wraps_async_purge(mocker):
    from unittest.mock import AsyncMock, MagicMock
    from clienthub_webhooks.workers.run_retention import purge_old_runs_sync

    mock_purge = mocker.patch(
        "clienthub_webhooks.workers.run_retention.purge_old_runs",
        new=AsyncMock(return_value=4),
    )
    mock_engine = MagicMock()
    mock_engine.dispose = AsyncMock()
    mocker.patch("clienthub_webhooks.workers.run_retention.async_engine", mock_engine)

    assert purge_old_runs_sync() == 4
    mock_purge.assert_awaited_once_with()
