"""
Event emission: turns a record mutation into queued deliveries.

One QueuedEvent row is written per enabled destination subscribed to the
event type; every row carries the same payload and event_id so receivers
can deduplicate.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clienthub_webhooks.models.destination import WebhookDestination
from clienthub_webhooks.models.queued_event import QueuedEvent, STATUS_PENDING
from clienthub_webhooks.services.retry_policy import MAX_ATTEMPTS

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = (
    "client.created",
    "client.updated",
    "client.deleted",
    "client.status_changed",
    "client.metadata_updated",
    "meeting.created",
    "meeting.summary_generated",
    "email.generated",
    "task.created",
    "task.completed",
)
TEST_EVENT_TYPE = "test.webhook"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def isoformat_utc(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds") + "Z"


def build_event_payload(
    event_type: str,
    data: Any,
    previous_values: Any = None,
    test: bool = False,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    payload = {
        "event_id": event_id or new_event_id(),
        "event_type": event_type,
        "timestamp": isoformat_utc(datetime.utcnow()),
        "test": test,
        "data": data,
    }
    if previous_values is not None:
        payload["previous_values"] = previous_values
    return payload


async def emit_event(
    session: AsyncSession,
    event_type: str,
    data: Any,
    previous_values: Any = None,
) -> Tuple[str, int]:
    """
    Queue one delivery per subscribed, enabled destination.

    Returns (event_id, rows_queued). The caller owns the transaction.
    """
    result = await session.execute(
        select(WebhookDestination).where(WebhookDestination.enabled.is_(True))
    )
    destinations = [d for d in result.scalars().all() if d.subscribes_to(event_type)]

    payload = build_event_payload(event_type, data, previous_values)
    event_id = payload["event_id"]
    if not destinations:
        logger.info(f"[Producer] No destinations subscribed to {event_type}")
        return event_id, 0

    now = datetime.utcnow()
    for destination in destinations:
        session.add(
            QueuedEvent(
                webhook_id=destination.id,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
                status=STATUS_PENDING,
                scheduled_for=now,
                attempts=0,
                max_attempts=MAX_ATTEMPTS,
            )
        )
    await session.flush()

    logger.info(
        f"[Producer] Queued {event_type} {event_id} for {len(destinations)} destination(s)"
    )
    return event_id, len(destinations)
