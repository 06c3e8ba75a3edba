"""
Single, uninstrumented webhook delivery used by operators to validate an
endpoint before (or after) wiring it up.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Tuple

import httpx

from clienthub_webhooks.models.destination import WebhookDestination
from clienthub_webhooks.services.http_delivery import (
    AttemptResult,
    ERROR_DNS,
    ERROR_REQUEST,
    ERROR_SSL,
    ERROR_TIMEOUT,
    build_delivery_headers,
    canonical_json,
    merge_headers,
    send_request,
)
from clienthub_webhooks.services.producer import (
    TEST_EVENT_TYPE,
    build_event_payload,
    isoformat_utc,
)
from clienthub_webhooks.services.signing import signature_header

logger = logging.getLogger(__name__)

TEST_USER_AGENT = "Webhook-Test/1.0"
TEST_TIMEOUT = 10.0

ERROR_MESSAGES = {
    ERROR_TIMEOUT: "Request timed out after 10 seconds",
    ERROR_DNS: "Could not resolve hostname (DNS error)",
    ERROR_SSL: "SSL certificate error",
    ERROR_REQUEST: "Could not build the request (check custom headers)",
}
DEFAULT_ERROR_MESSAGE = "Failed to connect to webhook URL"


def default_test_payload() -> Dict[str, Any]:
    return {
        "event": "test",
        "timestamp": isoformat_utc(datetime.utcnow()),
        "message": "This is a test webhook from your application",
    }


def _parse_body(attempt: AttemptResult) -> Any:
    content_type = attempt.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return json.loads(attempt.text or "")
        except ValueError:
            return "(unable to parse response body)"
    return attempt.text


def render_attempt(attempt: AttemptResult) -> Dict[str, Any]:
    """Shape an attempt the way the test endpoint reports it."""
    if attempt.error_type:
        return {
            "success": False,
            "error": ERROR_MESSAGES.get(attempt.error_type, DEFAULT_ERROR_MESSAGE),
            "errorType": attempt.error_type,
            "details": attempt.error_message,
        }
    return {
        "success": attempt.success,
        "status": attempt.status_code,
        "statusText": attempt.reason,
        "responseTime": f"{attempt.duration_ms}ms",
        "body": _parse_body(attempt),
        "headers": attempt.headers,
    }


async def send_test_delivery(
    url: str,
    secret: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    custom_headers: Optional[Mapping[str, Any]] = None,
    http_method: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> AttemptResult:
    """
    Send one request to `url`. No queue row, no retry, no delivery log.

    When a secret is given the body is signed the same way real deliveries
    are, so receivers can exercise their verification code.
    """
    if payload is None:
        payload = default_test_payload()
    body = canonical_json(payload)

    fixed = {
        "Content-Type": "application/json",
        "User-Agent": TEST_USER_AGENT,
    }
    if secret:
        fixed["X-Webhook-Signature"] = signature_header(body, secret)
    headers = merge_headers(fixed, custom_headers)

    method = (http_method or "POST").upper()
    if client is None:
        async with httpx.AsyncClient(timeout=TEST_TIMEOUT) as owned:
            attempt = await send_request(owned, method, url, body, headers, TEST_TIMEOUT)
    else:
        attempt = await send_request(client, method, url, body, headers, TEST_TIMEOUT)

    logger.info(
        f"[TestDelivery] {method} {url} -> "
        f"{attempt.status_code if attempt.error_type is None else attempt.error_type}"
    )
    return attempt


async def send_destination_test(
    destination: WebhookDestination,
    client: httpx.AsyncClient,
) -> Tuple[Dict[str, Any], AttemptResult]:
    """
    Deliver a ``test.webhook`` event to a configured destination, signed and
    headed exactly like a queued delivery. The queue and the destination's
    failure counter are left alone.
    """
    payload = build_event_payload(
        TEST_EVENT_TYPE,
        {
            "message": "This is a test webhook from your application",
            "webhook_name": destination.name,
            "webhook_id": str(destination.id),
        },
        test=True,
    )
    body = canonical_json(payload)
    headers = build_delivery_headers(
        TEST_EVENT_TYPE,
        payload["event_id"],
        signature_header(body, destination.secret_key),
        destination.headers,
    )
    attempt = await send_request(
        client,
        destination.http_method or "POST",
        destination.url,
        body,
        headers,
        TEST_TIMEOUT,
    )
    return payload, attempt
