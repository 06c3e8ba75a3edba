"""
Outbound HTTP helpers shared by the dispatcher and the test-delivery tool.

Covers payload serialization, header assembly with reserved-name
protection, a single hard-timed-out request and classification of the
errors it can raise.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "ClientHub-Webhooks/1.0"
NO_BODY_METHODS = frozenset({"GET", "HEAD", "DELETE"})
RESERVED_HEADERS = frozenset({
    "content-type",
    "user-agent",
    "x-event-type",
    "x-delivery-id",
    "x-webhook-signature",
    "x-webhook-timestamp",
})
MAX_RESPONSE_BODY = 10_000  # characters kept in the delivery log

ERROR_TIMEOUT = "timeout"
ERROR_DNS = "dns_error"
ERROR_SSL = "ssl_error"
ERROR_CONNECTION = "connection_error"
ERROR_REQUEST = "request_error"


@dataclass
class AttemptResult:
    """Outcome of one HTTP attempt; exactly one of status_code/error_type is meaningful."""
    duration_ms: int
    status_code: Optional[int] = None
    reason: Optional[str] = None
    text: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    error_type: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    @property
    def truncated_body(self) -> Optional[str]:
        if self.text is None:
            return None
        return self.text[:MAX_RESPONSE_BODY]

    def describe_failure(self) -> Optional[str]:
        if self.error_type:
            return f"{self.error_type}: {self.error_message}"
        if not self.success:
            return f"HTTP {self.status_code}"
        return None


def canonical_json(payload: Any) -> str:
    """Serialize a payload exactly as it is signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def merge_headers(
    fixed: Mapping[str, str],
    custom: Optional[Mapping[str, Any]],
    reserved=RESERVED_HEADERS,
) -> Dict[str, str]:
    """
    Lay custom headers over the fixed ones without letting them replace a
    reserved name (case-insensitive).
    """
    headers = dict(fixed)
    blocked = {name.lower() for name in fixed} | set(reserved)
    for name, value in (custom or {}).items():
        if name.lower() in blocked:
            logger.debug(f"Dropping reserved custom header {name!r}")
            continue
        headers[name] = str(value)
    return headers


def build_delivery_headers(
    event_type: str,
    event_id: str,
    signature: str,
    custom: Optional[Mapping[str, Any]] = None,
    timestamp: Optional[int] = None,
) -> Dict[str, str]:
    if timestamp is None:
        timestamp = int(time.time())
    fixed = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Event-Type": event_type,
        "X-Delivery-ID": event_id,
        "X-Webhook-Signature": signature,
        "X-Webhook-Timestamp": str(timestamp),
    }
    return merge_headers(fixed, custom)


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return ERROR_TIMEOUT
    message = str(exc).lower()
    if any(marker in message for marker in (
        "getaddrinfo",
        "name or service not known",
        "nodename nor servname",
        "name resolution",
        "dns",
    )):
        return ERROR_DNS
    if "certificate" in message or "ssl" in message:
        return ERROR_SSL
    return ERROR_CONNECTION


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    body: Optional[str],
    headers: Mapping[str, str],
    timeout: float,
) -> AttemptResult:
    """
    Issue one request with a hard timeout.

    Never raises for request problems; they come back as an AttemptResult
    carrying error_type and error_message.
    """
    method = (method or "POST").upper()
    content = None
    if method not in NO_BODY_METHODS and body is not None:
        content = body.encode("utf-8")

    start = time.monotonic()
    try:
        response = await asyncio.wait_for(
            client.request(
                method,
                url,
                content=content,
                headers=dict(headers),
                timeout=timeout,
            ),
            timeout=timeout,
        )
    except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as exc:
        error_type = classify_error(exc)
        if error_type == ERROR_TIMEOUT:
            message = f"Request timed out after {timeout:g} seconds"
        else:
            message = str(exc) or exc.__class__.__name__
        return AttemptResult(
            duration_ms=int((time.monotonic() - start) * 1000),
            error_type=error_type,
            error_message=message,
        )
    except Exception as exc:
        # request could not be built or sent (bad header value, broken transport)
        logger.warning(f"Request to {url} failed before a response: {exc!r}")
        return AttemptResult(
            duration_ms=int((time.monotonic() - start) * 1000),
            error_type=ERROR_REQUEST,
            error_message=str(exc) or exc.__class__.__name__,
        )

    return AttemptResult(
        duration_ms=int((time.monotonic() - start) * 1000),
        status_code=response.status_code,
        reason=response.reason_phrase,
        text=response.text,
        headers=dict(response.headers),
    )
