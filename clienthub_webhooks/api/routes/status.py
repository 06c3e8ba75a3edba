from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import case, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from uuid import UUID
from typing import List

from clienthub_webhooks.api.dependencies import get_async_db
from clienthub_webhooks.models.delivery_log import DeliveryLog
from clienthub_webhooks.models.queued_event import QueuedEvent
from clienthub_webhooks.api.schemas import (
    DeliveryLogOut,
    DestinationStats,
    EventStatus,
    QueuedEventOut,
)

router = APIRouter()


@router.get(
    "/events/{event_id}/status",
    response_model=EventStatus,
    summary="Delivery attempts recorded for an event id",
)
async def get_event_status(
    event_id: str,
    db: AsyncSession = Depends(get_async_db),
):
    logs = await db.execute(
        select(DeliveryLog)
        .where(DeliveryLog.event_id == event_id)
        .order_by(DeliveryLog.created_at.desc())
    )
    logs = logs.scalars().all()
    if not logs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No delivery logs for given event_id",
        )

    last = logs[0]
    return {
        "event_id": event_id,
        "total_attempts": len(logs),
        "delivered": any(log.success for log in logs),
        "last_attempt_at": last.created_at,
        "last_status_code": last.status_code,
        "error": last.error_message,
        "attempts": logs,
    }


@router.get(
    "/webhooks/{webhook_id}/logs",
    response_model=List[DeliveryLogOut],
    summary="List recent delivery attempts for a webhook",
)
async def list_webhook_logs(
    webhook_id: UUID,
    limit: int = 100,
    db: AsyncSession = Depends(get_async_db),
):
    logs = await db.execute(
        select(DeliveryLog)
        .where(DeliveryLog.webhook_id == webhook_id)
        .order_by(DeliveryLog.created_at.desc())
        .limit(limit)
    )
    return logs.scalars().all()


@router.get(
    "/webhooks/{webhook_id}/queue",
    response_model=List[QueuedEventOut],
    summary="List queued events for a webhook, newest first",
)
async def list_webhook_queue(
    webhook_id: UUID,
    limit: int = 50,
    db: AsyncSession = Depends(get_async_db),
):
    events = await db.execute(
        select(QueuedEvent)
        .where(QueuedEvent.webhook_id == webhook_id)
        .order_by(QueuedEvent.created_at.desc())
        .limit(limit)
    )
    return events.scalars().all()


@router.get(
    "/webhooks/{webhook_id}/stats",
    response_model=DestinationStats,
    summary="Delivery success rate and average duration for a webhook",
)
async def get_webhook_stats(
    webhook_id: UUID,
    db: AsyncSession = Depends(get_async_db),
):
    row = (
        await db.execute(
            select(
                func.count(DeliveryLog.id),
                func.sum(case((DeliveryLog.success.is_(True), 1), else_=0)),
                func.avg(func.coalesce(DeliveryLog.duration_ms, 0)),
            )
            .where(DeliveryLog.webhook_id == webhook_id)
        )
    ).one()
    total, successes, average = row
    total = total or 0
    successes = int(successes or 0)

    if total == 0:
        return {
            "total_deliveries": 0,
            "success_count": 0,
            "failure_count": 0,
            "success_rate": 0.0,
            "average_duration_ms": 0,
        }
    return {
        "total_deliveries": total,
        "success_count": successes,
        "failure_count": total - successes,
        "success_rate": successes / total * 100,
        "average_duration_ms": round(float(average or 0)),
    }
