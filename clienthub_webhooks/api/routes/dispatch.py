import logging

import httpx
from fastapi import APIRouter, Depends, Header, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from clienthub_webhooks.api.dependencies import (
    get_async_db,
    get_outbound_client,
    get_session_factory,
    is_internal_call,
)
from clienthub_webhooks.api.schemas import DispatcherStatus
from clienthub_webhooks.models.dispatcher_run import DispatcherRun
from clienthub_webhooks.models.queued_event import QueuedEvent, STATUS_PENDING
from clienthub_webhooks.queue.redis_conn import DISPATCHER_ENABLED, DISPATCH_DEBOUNCE_SECONDS
from clienthub_webhooks.workers.dispatcher import execute_dispatch

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/dispatch",
    summary="Run one dispatch cycle over due webhook events",
)
async def dispatch_webhooks(
    request: Request,
    x_internal_secret: str | None = Header(None),
    session_factory=Depends(get_session_factory),
    client: httpx.AsyncClient = Depends(get_outbound_client),
):
    # Rejected before the queue is touched
    if not is_internal_call(x_internal_secret):
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"error": "Unauthorized: Invalid or missing internal secret"},
        )

    triggered_by = "http"
    try:
        body = await request.json()
        if isinstance(body, dict) and body.get("triggered_by"):
            triggered_by = str(body["triggered_by"])
    except ValueError:
        # body is optional
        pass

    try:
        summary = await execute_dispatch(triggered_by, session_factory, client)
    except Exception as exc:
        logger.error(f"Error in webhook dispatcher: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(exc) or "Unknown error"},
        )

    if summary.processed == 0:
        return {"message": "No pending webhook events", "processed": 0}
    return {"message": "Webhook events processed", "processed": summary.processed}


@router.get(
    "/dispatch/status",
    response_model=DispatcherStatus,
    summary="Pending queue size and the outcome of the latest dispatcher run",
)
async def get_dispatcher_status(
    db: AsyncSession = Depends(get_async_db),
):
    pending = await db.scalar(
        select(func.count(QueuedEvent.id))
        .where(QueuedEvent.status == STATUS_PENDING)
    )
    result = await db.execute(
        select(DispatcherRun)
        .order_by(DispatcherRun.started_at.desc())
        .limit(1)
    )
    last_run = result.scalar_one_or_none()

    return {
        "enabled": DISPATCHER_ENABLED,
        "pending_events": pending or 0,
        "last_run_at": last_run.started_at if last_run else None,
        "last_run_success": last_run.success if last_run else None,
        "last_run_error": last_run.error_message if last_run else None,
        "debounce_seconds": DISPATCH_DEBOUNCE_SECONDS,
    }
