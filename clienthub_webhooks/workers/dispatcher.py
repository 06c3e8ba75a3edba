import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clienthub_webhooks.db.session import AsyncSessionLocal, async_engine
from clienthub_webhooks.models.delivery_log import DeliveryLog
from clienthub_webhooks.models.destination import WebhookDestination
from clienthub_webhooks.models.dispatcher_run import DispatcherRun
from clienthub_webhooks.models.queued_event import (
    QueuedEvent,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from clienthub_webhooks.services.http_delivery import (
    AttemptResult,
    build_delivery_headers,
    canonical_json,
    send_request,
)
from clienthub_webhooks.services.retry_policy import (
    RetryDecision,
    is_circuit_open,
    next_state,
)
from clienthub_webhooks.services.signing import signature_header

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "10"))
BATCH_SIZE = int(os.getenv("DISPATCH_BATCH_SIZE", "50"))
CONCURRENCY = int(os.getenv("DISPATCH_CONCURRENCY", str(BATCH_SIZE)))

OUTCOME_COMPLETED = "completed"
OUTCOME_RESCHEDULED = "rescheduled"
OUTCOME_FAILED = "failed"
OUTCOME_ERROR = "error"

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class ClaimedEvent:
    """Snapshot of a queue row taken when it was claimed."""
    id: uuid.UUID
    webhook_id: uuid.UUID
    event_type: str
    event_id: str
    payload: Any
    attempts: int
    max_attempts: int
    scheduled_for: datetime


@dataclass
class DeliveryOutcome:
    queue_id: uuid.UUID
    event_id: str
    outcome: str
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DispatchSummary:
    processed: int
    outcomes: List[DeliveryOutcome] = field(default_factory=list)

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)


def build_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT)


async def claim_due_events(
    session: AsyncSession,
    limit: int = BATCH_SIZE,
    now: Optional[datetime] = None,
) -> List[ClaimedEvent]:
    """
    Move up to `limit` due rows from pending to processing in one statement
    and return what was claimed, oldest scheduled_for first.

    The outer status guard makes the transition a compare-and-swap, so an
    overlapping cycle can never claim the same row twice.
    """
    if now is None:
        now = datetime.utcnow()

    due = (
        select(QueuedEvent.id)
        .where(
            QueuedEvent.status == STATUS_PENDING,
            QueuedEvent.scheduled_for <= now,
        )
        .order_by(QueuedEvent.scheduled_for.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    stmt = (
        update(QueuedEvent)
        .where(
            QueuedEvent.id.in_(due),
            QueuedEvent.status == STATUS_PENDING,
        )
        .values(status=STATUS_PROCESSING)
        .returning(
            QueuedEvent.id,
            QueuedEvent.webhook_id,
            QueuedEvent.event_type,
            QueuedEvent.event_id,
            QueuedEvent.payload,
            QueuedEvent.attempts,
            QueuedEvent.max_attempts,
            QueuedEvent.scheduled_for,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    rows = result.all()
    await session.commit()

    claimed = [ClaimedEvent(**row._mapping) for row in rows]
    claimed.sort(key=lambda event: event.scheduled_for)
    return claimed


def _log_entry(claimed: ClaimedEvent, attempt: AttemptResult) -> DeliveryLog:
    return DeliveryLog(
        webhook_id=claimed.webhook_id,
        event_type=claimed.event_type,
        event_id=claimed.event_id,
        payload=claimed.payload,
        status_code=attempt.status_code,
        response_body=attempt.truncated_body,
        response_headers=attempt.headers or None,
        attempt_number=claimed.attempts + 1,
        error_message=attempt.describe_failure(),
        duration_ms=attempt.duration_ms,
        success=attempt.success,
    )


async def _apply_decision(
    session: AsyncSession,
    claimed: ClaimedEvent,
    decision: RetryDecision,
) -> None:
    values = {"status": decision.status, "attempts": decision.attempts}
    if decision.scheduled_for is not None:
        values["scheduled_for"] = decision.scheduled_for
    if decision.processed_at is not None:
        values["processed_at"] = decision.processed_at
    await session.execute(
        update(QueuedEvent)
        .where(
            QueuedEvent.id == claimed.id,
            QueuedEvent.status == STATUS_PROCESSING,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def _fail_without_attempt(
    session: AsyncSession,
    claimed: ClaimedEvent,
) -> None:
    await session.execute(
        update(QueuedEvent)
        .where(
            QueuedEvent.id == claimed.id,
            QueuedEvent.status == STATUS_PROCESSING,
        )
        .values(status=STATUS_FAILED, processed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def _record_success(
    session: AsyncSession,
    claimed: ClaimedEvent,
    attempt: AttemptResult,
) -> DeliveryOutcome:
    now = datetime.utcnow()
    await session.execute(
        update(WebhookDestination)
        .where(WebhookDestination.id == claimed.webhook_id)
        .values(failure_count=0, last_triggered_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(QueuedEvent)
        .where(
            QueuedEvent.id == claimed.id,
            QueuedEvent.status == STATUS_PROCESSING,
        )
        .values(status=STATUS_COMPLETED, processed_at=now)
        .execution_options(synchronize_session=False)
    )
    session.add(_log_entry(claimed, attempt))
    await session.commit()

    logger.info(
        f"[Dispatch] Delivered {claimed.event_id} to {claimed.webhook_id} "
        f"(HTTP {attempt.status_code}, {attempt.duration_ms}ms)"
    )
    return DeliveryOutcome(
        queue_id=claimed.id,
        event_id=claimed.event_id,
        outcome=OUTCOME_COMPLETED,
        status_code=attempt.status_code,
    )


async def _record_failure(
    session: AsyncSession,
    claimed: ClaimedEvent,
    attempt: AttemptResult,
) -> DeliveryOutcome:
    now = datetime.utcnow()
    result = await session.execute(
        update(WebhookDestination)
        .where(WebhookDestination.id == claimed.webhook_id)
        .values(failure_count=WebhookDestination.failure_count + 1)
        .returning(WebhookDestination.failure_count)
        .execution_options(synchronize_session=False)
    )
    failure_count = result.scalar_one_or_none()

    decision = next_state(claimed.attempts, claimed.max_attempts, now)
    if failure_count is not None and is_circuit_open(failure_count) and not decision.is_terminal:
        # circuit just opened: nothing left to retry against
        decision = RetryDecision(
            status=STATUS_FAILED,
            attempts=decision.attempts,
            scheduled_for=None,
            processed_at=now,
        )

    await _apply_decision(session, claimed, decision)
    session.add(_log_entry(claimed, attempt))
    await session.commit()

    error = attempt.describe_failure()
    if decision.is_terminal:
        logger.error(
            f"[Dispatch] {claimed.event_id} to {claimed.webhook_id} failed permanently "
            f"after attempt {decision.attempts}: {error}"
        )
        outcome = OUTCOME_FAILED
    else:
        logger.warning(
            f"[Dispatch] {claimed.event_id} to {claimed.webhook_id} failed ({error}), "
            f"retry {decision.attempts + 1} at {decision.scheduled_for.isoformat()}"
        )
        outcome = OUTCOME_RESCHEDULED
    return DeliveryOutcome(
        queue_id=claimed.id,
        event_id=claimed.event_id,
        outcome=outcome,
        status_code=attempt.status_code,
        error=error,
    )


async def deliver_event(
    claimed: ClaimedEvent,
    client: httpx.AsyncClient,
    session_factory: Optional[SessionFactory] = None,
) -> DeliveryOutcome:
    """
    1) Load the destination; fail at once if it is missing, disabled or
       circuit-broken (no network attempt, no delivery log).
    2) Sign the canonical payload and send it with the destination's method.
    3) Record the outcome, the destination health counter and exactly one
       delivery log in a single transaction.
    """
    if session_factory is None:
        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        destination = await session.get(WebhookDestination, claimed.webhook_id)
        if destination is None or not destination.enabled:
            logger.error(
                f"[Dispatch] Destination {claimed.webhook_id} not found or disabled, "
                f"failing {claimed.event_id}"
            )
            await _fail_without_attempt(session, claimed)
            return DeliveryOutcome(
                queue_id=claimed.id,
                event_id=claimed.event_id,
                outcome=OUTCOME_FAILED,
                error="destination missing or disabled",
            )
        if is_circuit_open(destination.failure_count):
            logger.warning(
                f"[Dispatch] Destination {destination.id} has {destination.failure_count} "
                f"consecutive failures, skipping {claimed.event_id}"
            )
            await _fail_without_attempt(session, claimed)
            return DeliveryOutcome(
                queue_id=claimed.id,
                event_id=claimed.event_id,
                outcome=OUTCOME_FAILED,
                error="circuit open",
            )

        url = destination.url
        method = destination.http_method or "POST"
        secret = destination.secret_key
        custom_headers = dict(destination.headers or {})

    body = canonical_json(claimed.payload)
    headers = build_delivery_headers(
        claimed.event_type,
        claimed.event_id,
        signature_header(body, secret),
        custom_headers,
    )
    logger.info(
        f"[Dispatch] Sending {claimed.event_type} {claimed.event_id} "
        f"to {url} ({method}, {len(body)} bytes)"
    )
    attempt = await send_request(client, method, url, body, headers, HTTP_TIMEOUT)

    async with session_factory() as session:
        if attempt.success:
            return await _record_success(session, claimed, attempt)
        return await _record_failure(session, claimed, attempt)


async def _release_after_error(
    claimed: ClaimedEvent,
    session_factory: SessionFactory,
) -> None:
    """Push an event that blew up mid-delivery back through the retry policy."""
    try:
        async with session_factory() as session:
            decision = next_state(claimed.attempts, claimed.max_attempts, datetime.utcnow())
            await _apply_decision(session, claimed, decision)
            await session.commit()
    except Exception:
        logger.exception(f"[Dispatch] Could not release {claimed.id}, it stays processing")


async def run_dispatch_cycle(
    session_factory: Optional[SessionFactory] = None,
    client: Optional[httpx.AsyncClient] = None,
    limit: int = BATCH_SIZE,
) -> DispatchSummary:
    """
    Claim due events and deliver them concurrently.

    Per-event failures are captured in the summary; only a failure of the
    claim itself propagates.
    """
    if session_factory is None:
        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        claimed = await claim_due_events(session, limit)

    if not claimed:
        return DispatchSummary(processed=0)

    logger.info(f"[Dispatch] Claimed {len(claimed)} event(s)")

    owns_client = client is None
    if owns_client:
        client = build_http_client()
    semaphore = asyncio.Semaphore(max(CONCURRENCY, 1))

    async def _guarded(event: ClaimedEvent) -> DeliveryOutcome:
        async with semaphore:
            try:
                return await deliver_event(event, client, session_factory)
            except Exception as exc:
                logger.exception(f"[Dispatch] Unexpected error delivering {event.event_id}")
                await _release_after_error(event, session_factory)
                return DeliveryOutcome(
                    queue_id=event.id,
                    event_id=event.event_id,
                    outcome=OUTCOME_ERROR,
                    error=str(exc),
                )

    try:
        outcomes = await asyncio.gather(*(_guarded(event) for event in claimed))
    finally:
        if owns_client:
            await client.aclose()

    summary = DispatchSummary(processed=len(claimed), outcomes=list(outcomes))
    logger.info(
        f"[Dispatch] Cycle done: {summary.count(OUTCOME_COMPLETED)} completed, "
        f"{summary.count(OUTCOME_RESCHEDULED)} rescheduled, "
        f"{summary.count(OUTCOME_FAILED)} failed, {summary.count(OUTCOME_ERROR)} errored"
    )
    return summary


async def _finish_run(
    session_factory: SessionFactory,
    run_id: uuid.UUID,
    success: bool,
    processed: int = 0,
    error: Optional[str] = None,
) -> None:
    async with session_factory() as session:
        await session.execute(
            update(DispatcherRun)
            .where(DispatcherRun.id == run_id)
            .values(
                completed_at=datetime.utcnow(),
                events_processed=processed,
                success=success,
                error_message=error,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()


async def execute_dispatch(
    triggered_by: str = "http",
    session_factory: Optional[SessionFactory] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> DispatchSummary:
    """Run one cycle and record it in webhook_dispatcher_runs."""
    if session_factory is None:
        session_factory = AsyncSessionLocal

    async with session_factory() as session:
        run = DispatcherRun(triggered_by=triggered_by, started_at=datetime.utcnow())
        session.add(run)
        await session.commit()
        run_id = run.id

    try:
        summary = await run_dispatch_cycle(session_factory, client)
    except Exception as exc:
        logger.exception("[Dispatch] Cycle failed")
        await _finish_run(session_factory, run_id, success=False, error=str(exc))
        raise

    await _finish_run(session_factory, run_id, success=True, processed=summary.processed)
    return summary


def run_dispatch_cycle_sync(triggered_by: str = "queue") -> int:
    """Synchronous wrapper for RQ worker compatibility."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        summary = loop.run_until_complete(execute_dispatch(triggered_by))
        return summary.processed
    finally:
        # pooled connections are bound to this loop
        loop.run_until_complete(async_engine.dispose())
        loop.close()
