from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from clienthub_webhooks.api.dependencies import get_async_db, is_internal_call
from clienthub_webhooks.api.schemas import EventIn, EventQueued
from clienthub_webhooks.queue.redis_conn import request_dispatch
from clienthub_webhooks.services.producer import emit_event

router = APIRouter()


@router.post(
    "/events",
    response_model=EventQueued,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record a client/meeting/task mutation and queue it for every subscribed webhook",
)
async def ingest_event(
    event_in: EventIn,
    x_internal_secret: str | None = Header(None),
    db: AsyncSession = Depends(get_async_db),
):
    if not is_internal_call(x_internal_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Invalid or missing internal secret",
        )

    # 1) One queue row per enabled, subscribed destination
    event_id, queued = await emit_event(
        db,
        event_in.event_type,
        event_in.data,
        event_in.previous_values,
    )
    await db.commit()

    # 2) Kick the dispatcher (debounced); scheduled runs cover a miss
    dispatch_requested = request_dispatch("producer") if queued else False

    return {
        "event_id": event_id,
        "queued": queued,
        "dispatch_requested": dispatch_requested,
    }
