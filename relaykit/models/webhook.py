"""Webhook endpoint and delivery data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, field_validator

from .common import new_id, utc_now


MASKED_CREDENTIALS = "***"


class WebhookEvent(str, Enum):
    """Event types an endpoint can subscribe to."""

    CONTACT_CREATED = "contact_created"
    CONTACT_UPDATED = "contact_updated"
    CAMPAIGN_SENT = "campaign_sent"
    EMAIL_OPENED = "email_opened"
    EMAIL_CLICKED = "email_clicked"
    UNSUBSCRIBE = "unsubscribe"
    BOUNCE = "bounce"
    AB_TEST_COMPLETE = "ab_test_complete"
    # Manual test deliveries only; not subscribable
    TEST = "test"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class AuthType(str, Enum):
    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "api_key"
    NONE = "none"


class WebhookAuthentication(BaseModel):
    """
    Outbound authentication settings.

    Expected credential keys per type:
    - bearer: token
    - basic: username, password
    - api_key: key (header name), value
    """

    type: AuthType = AuthType.NONE
    credentials: Optional[Dict[str, str]] = None


class WebhookRetryPolicy(BaseModel):
    """Per-endpoint redelivery policy (retry_delay in ms)."""

    max_retries: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=1000, ge=0)
    exponential_backoff: bool = True


def _reject_test_event(events: Optional[List[WebhookEvent]]) -> Optional[List[WebhookEvent]]:
    if events and WebhookEvent.TEST in events:
        raise ValueError("'test' is reserved for manual deliveries and cannot be subscribed")
    return events


class WebhookEndpoint(BaseModel):
    """Registered webhook endpoint as persisted."""

    id: str = Field(default_factory=new_id)
    user_id: str
    integration_id: Optional[str] = None
    name: str
    url: str
    method: HttpMethod = HttpMethod.POST
    is_active: bool = True
    events: List[WebhookEvent] = []
    headers: Dict[str, str] = {}
    authentication: Optional[WebhookAuthentication] = None
    retry_policy: WebhookRetryPolicy = Field(default_factory=WebhookRetryPolicy)
    success_count: int = 0
    failure_count: int = 0
    last_triggered: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0

    def subscribes_to(self, event: str) -> bool:
        return any(subscribed.value == event for subscribed in self.events)


class WebhookEndpointCreate(BaseModel):
    """Webhook endpoint creation request model."""

    integration_id: Optional[str] = None
    name: str = Field(min_length=1)
    url: HttpUrl
    method: HttpMethod = HttpMethod.POST
    events: List[WebhookEvent]
    headers: Optional[Dict[str, str]] = None
    authentication: Optional[WebhookAuthentication] = None
    retry_policy: Optional[WebhookRetryPolicy] = None

    @field_validator("events")
    @classmethod
    def check_events(cls, events: List[WebhookEvent]) -> List[WebhookEvent]:
        return _reject_test_event(events)


class WebhookEndpointUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""

    name: Optional[str] = Field(default=None, min_length=1)
    url: Optional[HttpUrl] = None
    method: Optional[HttpMethod] = None
    is_active: Optional[bool] = None
    events: Optional[List[WebhookEvent]] = None
    headers: Optional[Dict[str, str]] = None
    authentication: Optional[WebhookAuthentication] = None
    retry_policy: Optional[WebhookRetryPolicy] = None

    @field_validator("events")
    @classmethod
    def check_events(cls, events: Optional[List[WebhookEvent]]) -> Optional[List[WebhookEvent]]:
        return _reject_test_event(events)


class MaskedAuthentication(BaseModel):
    type: AuthType
    credentials: Optional[str] = None


class WebhookEndpointView(BaseModel):
    """Read model of an endpoint with credentials masked."""

    id: str
    user_id: str
    integration_id: Optional[str] = None
    name: str
    url: str
    method: HttpMethod
    is_active: bool
    events: List[WebhookEvent]
    headers: Dict[str, str]
    authentication: Optional[MaskedAuthentication] = None
    retry_policy: WebhookRetryPolicy
    success_count: int
    failure_count: int
    last_triggered: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_endpoint(cls, endpoint: WebhookEndpoint) -> "WebhookEndpointView":
        data = endpoint.model_dump(exclude={"authentication", "version"})
        authentication = None
        if endpoint.authentication:
            authentication = MaskedAuthentication(
                type=endpoint.authentication.type,
                credentials=MASKED_CREDENTIALS if endpoint.authentication.credentials else None,
            )
        return cls(**data, authentication=authentication)


class DeliveryResponse(BaseModel):
    """Captured HTTP response of a delivery attempt."""

    status: int
    headers: Dict[str, str] = {}
    body: str = ""
    response_time_ms: int


class WebhookDeliveryLog(BaseModel):
    """One row per delivery attempt; append-only."""

    id: str = Field(default_factory=new_id)
    user_id: str
    webhook_endpoint_id: str
    event: str
    payload: Any = None
    response: Optional[DeliveryResponse] = None
    success: bool
    error: Optional[str] = None
    attempt: int = 1
    timestamp: datetime = Field(default_factory=utc_now)


class DeliveryResult(BaseModel):
    """Outcome of a single deliver() call."""

    success: bool
    attempt: int
    response: Optional[DeliveryResponse] = None
    error: Optional[str] = None
    log_id: Optional[str] = None
    retry_scheduled: bool = False
