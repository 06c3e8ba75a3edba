import ipaddress
import re
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID
from datetime import datetime
from pydantic import BaseModel, AnyHttpUrl, Field, field_validator

from clienthub_webhooks.models.destination import DEFAULT_EVENTS
from clienthub_webhooks.services.producer import WEBHOOK_EVENTS


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def is_public_host(host: Optional[str]) -> bool:
    """Reject hosts that can never be a public endpoint (no DNS lookup)."""
    if not host:
        return False
    host = host.strip("[]").lower()
    if host == "localhost" or host.endswith(".localhost") or host.endswith(".local"):
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return True
    return address.is_global


def check_destination_url(url: AnyHttpUrl) -> AnyHttpUrl:
    if url.scheme != "https":
        raise ValueError("Only HTTPS URLs are allowed for webhooks")
    if not is_public_host(url.host):
        raise ValueError("Webhook URL must point to a publicly reachable host")
    return url


HEADER_NAME_RE = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
HEADER_VALUE_RE = re.compile(r"[\t\x20-\x7e]*")


def check_custom_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Header names must be RFC 7230 tokens and values printable ASCII."""
    for name, value in headers.items():
        if not HEADER_NAME_RE.fullmatch(name):
            raise ValueError(f"Invalid header name: {name!r}")
        if not HEADER_VALUE_RE.fullmatch(value):
            raise ValueError(f"Header {name} must contain printable ASCII only")
    return headers


def check_event_types(events: List[str]) -> List[str]:
    unknown = [e for e in events if e not in WEBHOOK_EVENTS]
    if unknown:
        raise ValueError(f"Unknown event type(s): {', '.join(unknown)}")
    return events


class DestinationBase(BaseModel):
    name: str = Field(min_length=1)
    url: AnyHttpUrl
    events: List[str] = Field(default_factory=lambda: list(DEFAULT_EVENTS))
    headers: Dict[str, str] = Field(default_factory=dict)
    http_method: HttpMethod = "POST"

    @field_validator("url")
    @classmethod
    def validate_url(cls, value):
        return check_destination_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value):
        return check_event_types(value)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value):
        return check_custom_headers(value)


class DestinationCreate(DestinationBase):
    secret_key: Optional[str] = None


class DestinationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    url: Optional[AnyHttpUrl] = None
    events: Optional[List[str]] = None
    headers: Optional[Dict[str, str]] = None
    http_method: Optional[HttpMethod] = None
    enabled: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, value):
        return None if value is None else check_destination_url(value)

    @field_validator("events")
    @classmethod
    def validate_events(cls, value):
        return None if value is None else check_event_types(value)

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, value):
        return None if value is None else check_custom_headers(value)


class DestinationOut(BaseModel):
    id: UUID
    name: str
    url: str
    secret_key: str
    enabled: bool
    events: List[str]
    headers: Dict[str, str]
    http_method: str
    failure_count: int
    last_triggered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SecretOut(BaseModel):
    id: UUID
    secret_key: str


class EventIn(BaseModel):
    event_type: str
    data: Any
    previous_values: Optional[Any] = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, value):
        check_event_types([value])
        return value


class EventQueued(BaseModel):
    event_id: str
    queued: int
    dispatch_requested: bool


class DeliveryLogOut(BaseModel):
    id: UUID
    webhook_id: UUID
    event_type: str
    event_id: str
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    response_headers: Optional[Dict[str, Any]] = None
    attempt_number: int
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    success: bool
    created_at: datetime

    class Config:
        from_attributes = True


class QueuedEventOut(BaseModel):
    id: UUID
    webhook_id: UUID
    event_type: str
    event_id: str
    payload: Any
    scheduled_for: datetime
    attempts: int
    max_attempts: int
    status: str
    created_at: datetime
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DestinationStats(BaseModel):
    total_deliveries: int
    success_count: int
    failure_count: int
    success_rate: float
    average_duration_ms: int


class EventStatus(BaseModel):
    event_id: str
    total_attempts: int
    delivered: bool
    last_attempt_at: datetime
    last_status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: List[DeliveryLogOut]


class DispatcherStatus(BaseModel):
    enabled: bool
    pending_events: int
    last_run_at: Optional[datetime] = None
    last_run_success: Optional[bool] = None
    last_run_error: Optional[str] = None
    debounce_seconds: int


class WebhookTestRequest(BaseModel):
    url: str
    secret: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    custom_headers: Optional[Dict[str, str]] = Field(default=None, alias="customHeaders")
    http_method: Optional[HttpMethod] = Field(default=None, alias="httpMethod")

    @field_validator("custom_headers")
    @classmethod
    def validate_custom_headers(cls, value):
        return None if value is None else check_custom_headers(value)

    class Config:
        populate_by_name = True
