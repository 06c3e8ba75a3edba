"""
Retry and circuit-breaker policy for queued webhook events.

A failed attempt either reschedules the event with a delay taken from
BACKOFF_SCHEDULE or, once max_attempts is reached, fails it for good.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from clienthub_webhooks.models.queued_event import STATUS_FAILED, STATUS_PENDING


MAX_ATTEMPTS = 5
BACKOFF_SCHEDULE = (60, 300, 1800, 7200, 43200)  # seconds
FAILURE_CEILING = 10


@dataclass(frozen=True)
class RetryDecision:
    status: str
    attempts: int
    scheduled_for: Optional[datetime]
    processed_at: Optional[datetime]

    @property
    def is_terminal(self) -> bool:
        return self.status == STATUS_FAILED


def delay_for(attempt: int) -> int:
    """Backoff delay in seconds for the given (1-based) attempt number."""
    index = min(max(attempt, 1), len(BACKOFF_SCHEDULE)) - 1
    return BACKOFF_SCHEDULE[index]


def next_state(attempts: int, max_attempts: int, now: datetime) -> RetryDecision:
    """Decide what happens to an event whose latest attempt just failed."""
    new_attempts = attempts + 1
    if new_attempts >= max_attempts:
        return RetryDecision(
            status=STATUS_FAILED,
            attempts=new_attempts,
            scheduled_for=None,
            processed_at=now,
        )
    return RetryDecision(
        status=STATUS_PENDING,
        attempts=new_attempts,
        scheduled_for=now + timedelta(seconds=delay_for(new_attempts)),
        processed_at=None,
    )


def is_circuit_open(failure_count: int) -> bool:
    return failure_count >= FAILURE_CEILING
