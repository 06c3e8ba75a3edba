import logging
import os
import redis
from rq import Queue

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL")
if REDIS_URL is None:
    raise ValueError("REDIS_URL environment variable not set")

DISPATCHER_ENABLED = os.getenv("DISPATCHER_ENABLED", "true").lower() == "true"
DISPATCH_DEBOUNCE_SECONDS = int(os.getenv("DISPATCH_DEBOUNCE_SECONDS", "2"))
DEBOUNCE_KEY = "webhook-dispatcher:debounce"

# Redis connection & RQ queue for dispatch cycles
redis_conn_global = redis.from_url(REDIS_URL, decode_responses=True)
dispatch_queue = Queue("dispatch", connection=redis_conn_global)


def request_dispatch(triggered_by: str = "producer") -> bool:
    """
    Enqueue a dispatch cycle unless one was requested within the debounce
    window. Returns True when a job was enqueued.

    Redis problems are logged and swallowed: queued rows stay pending and
    the next scheduled invocation picks them up.
    """
    if not DISPATCHER_ENABLED:
        return False
    try:
        acquired = redis_conn_global.set(
            DEBOUNCE_KEY,
            triggered_by,
            nx=True,
            ex=max(DISPATCH_DEBOUNCE_SECONDS, 1),
        )
        if not acquired:
            return False
        dispatch_queue.enqueue(
            "clienthub_webhooks.workers.dispatcher.run_dispatch_cycle_sync",
            triggered_by,
        )
        return True
    except redis.exceptions.RedisError as exc:
        logger.warning(f"[Queue] Could not request dispatch ({triggered_by}): {exc}")
        return False
