from datetime import datetime, timedelta

import pytest

from clienthub_webhooks.services.retry_policy import (
    BACKOFF_SCHEDULE,
    FAILURE_CEILING,
    MAX_ATTEMPTS,
    delay_for,
    is_circuit_open,
    next_state,
)

NOW = datetime(2026, 1, 1, 12, 0, 0)


@pytest.mark.parametrize(
    "attempt, expected",
    [(1, 60), (2, 300), (3, 1800), (4, 7200), (5, 43200)],
)
def test_delay_for_follows_schedule(attempt, expected):
    assert delay_for(attempt) == expected


def test_delay_for_clamps_out_of_range_attempts():
    assert delay_for(0) == BACKOFF_SCHEDULE[0]
    assert delay_for(-3) == BACKOFF_SCHEDULE[0]
    assert delay_for(12) == BACKOFF_SCHEDULE[-1]


def test_first_failure_reschedules_after_one_minute():
    decision = next_state(0, MAX_ATTEMPTS, NOW)
    assert decision.status == "pending"
    assert decision.attempts == 1
    assert decision.scheduled_for == NOW + timedelta(seconds=60)
    assert decision.processed_at is None
    assert not decision.is_terminal


def test_second_failure_waits_five_minutes():
    decision = next_state(1, MAX_ATTEMPTS, NOW)
    assert decision.attempts == 2
    assert decision.scheduled_for == NOW + timedelta(seconds=300)


def test_last_allowed_failure_is_terminal():
    decision = next_state(MAX_ATTEMPTS - 1, MAX_ATTEMPTS, NOW)
    assert decision.status == "failed"
    assert decision.attempts == MAX_ATTEMPTS
    assert decision.scheduled_for is None
    assert decision.processed_at == NOW
    assert decision.is_terminal


def test_custom_max_attempts_is_respected():
    assert next_state(0, 1, NOW).is_terminal
    assert not next_state(5, 10, NOW).is_terminal


def test_circuit_opens_at_ceiling():
    assert not is_circuit_open(FAILURE_CEILING - 1)
    assert is_circuit_open(FAILURE_CEILING)
    assert is_circuit_open(FAILURE_CEILING + 5)
