import hmac
import os

import httpx

from clienthub_webhooks.db.session import AsyncSessionLocal
from clienthub_webhooks.workers.dispatcher import HTTP_TIMEOUT

DISPATCHER_INTERNAL_SECRET = os.getenv("DISPATCHER_INTERNAL_SECRET")


async def get_async_db():
    async with AsyncSessionLocal() as session:
        yield session


def get_session_factory():
    """Session factory handed to the dispatcher, which opens one session per event."""
    return AsyncSessionLocal


async def get_outbound_client():
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
        yield client


def is_internal_call(provided_secret: str | None) -> bool:
    if not provided_secret or not DISPATCHER_INTERNAL_SECRET:
        return False
    return hmac.compare_digest(
        provided_secret.encode("utf-8"),
        DISPATCHER_INTERNAL_SECRET.encode("utf-8"),
    )
