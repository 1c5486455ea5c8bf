"""Pydantic models for the webhook delivery service.

Provides data models for subscriptions, events, deliveries, delivery logs
and the request/response bodies of the HTTP API. All models serialize to
JSON for API responses and storage.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from courier.config import MAX_TIMEOUT_SECONDS

__all__ = [
    "EVENT_CATALOG",
    "AnalyticsPeriod",
    "ApiKeyAuth",
    "AuthConfig",
    "AuthSummary",
    "AuthType",
    "BearerTokenAuth",
    "DeliveryLogRecord",
    "DeliveryRecord",
    "DeliveryStatus",
    "ErrorBreakdown",
    "EventTypeInfo",
    "FailingWebhook",
    "HealthAlert",
    "HealthAlertType",
    "HmacAuth",
    "ListOptions",
    "NoAuth",
    "OAuth2Auth",
    "ProcessorStats",
    "ProcessorStatus",
    "PublishEventRequest",
    "RetryRequest",
    "RetryResponse",
    "RetrySummary",
    "SystemHealth",
    "TestWebhookRequest",
    "TestWebhookResponse",
    "WebhookAnalytics",
    "WebhookCreateRequest",
    "WebhookCreateResponse",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookHealth",
    "WebhookHealthMetrics",
    "WebhookPage",
    "WebhookRecord",
    "WebhookResponse",
    "WebhookUpdateRequest",
    "WorkerInfo",
    "summarize_auth",
    "utc_now",
]


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class WebhookEventType(str, Enum):
    """Known event types published by the platform.

    Subscriptions may name any event type string; these are the ones the
    platform's producers emit and the typed publisher helpers accept.
    """

    # Document events
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_PROCESSING_STARTED = "document.processing.started"
    DOCUMENT_PROCESSING_COMPLETED = "document.processing.completed"
    DOCUMENT_PROCESSING_FAILED = "document.processing.failed"
    DOCUMENT_ANALYSIS_COMPLETED = "document.analysis.completed"
    DOCUMENT_DELETED = "document.deleted"

    # Chat events
    CHAT_CONVERSATION_CREATED = "chat.conversation.created"
    CHAT_MESSAGE_SENT = "chat.message.sent"
    CHAT_MESSAGE_RECEIVED = "chat.message.received"
    CHAT_AI_RESPONSE_GENERATED = "chat.ai.response.generated"
    CHAT_CONVERSATION_ARCHIVED = "chat.conversation.archived"

    # Analytics events
    ANALYTICS_USAGE_THRESHOLD = "analytics.usage.threshold"
    ANALYTICS_COST_ALERT = "analytics.cost.alert"
    ANALYTICS_PERFORMANCE_DEGRADED = "analytics.performance.degraded"
    ANALYTICS_QUOTA_EXCEEDED = "analytics.quota.exceeded"

    # Compliance events
    COMPLIANCE_POLICY_VIOLATION = "compliance.policy.violation"
    COMPLIANCE_AUDIT_TRIGGER = "compliance.audit.trigger"
    COMPLIANCE_REGULATORY_ALERT = "compliance.regulatory.alert"
    COMPLIANCE_DATA_BREACH_DETECTED = "compliance.data.breach.detected"

    # System events
    SYSTEM_HEALTH_ALERT = "system.health.alert"
    SYSTEM_ERROR_CRITICAL = "system.error.critical"
    SYSTEM_MAINTENANCE_SCHEDULED = "system.maintenance.scheduled"
    SYSTEM_MAINTENANCE_STARTED = "system.maintenance.started"
    SYSTEM_MAINTENANCE_COMPLETED = "system.maintenance.completed"
    SYSTEM_BACKUP_COMPLETED = "system.backup.completed"
    SYSTEM_BACKUP_FAILED = "system.backup.failed"


# Category and description for each known event type
EVENT_CATALOG: dict[WebhookEventType, tuple[str, str]] = {
    WebhookEventType.DOCUMENT_UPLOADED: (
        "document",
        "A new document was uploaded",
    ),
    WebhookEventType.DOCUMENT_PROCESSING_STARTED: (
        "document",
        "Document processing began",
    ),
    WebhookEventType.DOCUMENT_PROCESSING_COMPLETED: (
        "document",
        "Document processing completed successfully",
    ),
    WebhookEventType.DOCUMENT_PROCESSING_FAILED: (
        "document",
        "Document processing failed",
    ),
    WebhookEventType.DOCUMENT_ANALYSIS_COMPLETED: (
        "document",
        "Analysis of a document completed",
    ),
    WebhookEventType.DOCUMENT_DELETED: (
        "document",
        "A document was deleted",
    ),
    WebhookEventType.CHAT_CONVERSATION_CREATED: (
        "chat",
        "A new conversation was started",
    ),
    WebhookEventType.CHAT_MESSAGE_SENT: (
        "chat",
        "A user sent a message",
    ),
    WebhookEventType.CHAT_MESSAGE_RECEIVED: (
        "chat",
        "A message was received for processing",
    ),
    WebhookEventType.CHAT_AI_RESPONSE_GENERATED: (
        "chat",
        "A response was generated for a user message",
    ),
    WebhookEventType.CHAT_CONVERSATION_ARCHIVED: (
        "chat",
        "A conversation was archived",
    ),
    WebhookEventType.ANALYTICS_USAGE_THRESHOLD: (
        "analytics",
        "A usage metric crossed its configured threshold",
    ),
    WebhookEventType.ANALYTICS_COST_ALERT: (
        "analytics",
        "Spend crossed a cost alert level",
    ),
    WebhookEventType.ANALYTICS_PERFORMANCE_DEGRADED: (
        "analytics",
        "A performance metric degraded",
    ),
    WebhookEventType.ANALYTICS_QUOTA_EXCEEDED: (
        "analytics",
        "A quota was exceeded",
    ),
    WebhookEventType.COMPLIANCE_POLICY_VIOLATION: (
        "compliance",
        "A policy violation was detected",
    ),
    WebhookEventType.COMPLIANCE_AUDIT_TRIGGER: (
        "compliance",
        "An audit was triggered",
    ),
    WebhookEventType.COMPLIANCE_REGULATORY_ALERT: (
        "compliance",
        "A regulatory alert was raised",
    ),
    WebhookEventType.COMPLIANCE_DATA_BREACH_DETECTED: (
        "compliance",
        "A potential data breach was detected",
    ),
    WebhookEventType.SYSTEM_HEALTH_ALERT: (
        "system",
        "A component reported a health problem",
    ),
    WebhookEventType.SYSTEM_ERROR_CRITICAL: (
        "system",
        "A critical system error occurred",
    ),
    WebhookEventType.SYSTEM_MAINTENANCE_SCHEDULED: (
        "system",
        "Maintenance was scheduled",
    ),
    WebhookEventType.SYSTEM_MAINTENANCE_STARTED: (
        "system",
        "Maintenance started",
    ),
    WebhookEventType.SYSTEM_MAINTENANCE_COMPLETED: (
        "system",
        "Maintenance completed",
    ),
    WebhookEventType.SYSTEM_BACKUP_COMPLETED: (
        "system",
        "A backup completed",
    ),
    WebhookEventType.SYSTEM_BACKUP_FAILED: (
        "system",
        "A backup failed",
    ),
}


class DeliveryStatus(str, Enum):
    """Delivery status.

    ``pending`` and ``retrying`` are worked by the pool, ``delivered`` and
    ``abandoned`` are terminal, ``failed`` parks a delivery stopped by a
    permanent error until it is retried manually or dead-lettered.
    """

    PENDING = "pending"
    RETRYING = "retrying"
    DELIVERED = "delivered"
    FAILED = "failed"
    ABANDONED = "abandoned"


class AuthType(str, Enum):
    """Authentication modes for outbound deliveries."""

    NONE = "none"
    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    HMAC_SHA256 = "hmac_sha256"
    OAUTH2 = "oauth2"


# =============================================================================
# Authentication Config (tagged union keyed by ``type``)
# =============================================================================


class NoAuth(BaseModel):
    """Deliveries carry no authentication."""

    type: Literal["none"] = "none"


class ApiKeyAuth(BaseModel):
    """Send a static API key in a request header."""

    type: Literal["api_key"] = "api_key"
    api_key: str = Field(
        description="API key sent with every delivery",
        min_length=8,
        max_length=1000,
    )
    header_name: str = Field(
        default="X-API-Key",
        description="Header carrying the API key",
        min_length=1,
        max_length=100,
    )


class BearerTokenAuth(BaseModel):
    """Send ``Authorization: Bearer <token>``."""

    type: Literal["bearer_token"] = "bearer_token"
    token: str = Field(
        description="Bearer token sent with every delivery",
        min_length=16,
        max_length=4096,
    )


class HmacAuth(BaseModel):
    """Sign each request body with HMAC.

    The secret is generated at registration when not supplied.
    """

    type: Literal["hmac_sha256"] = "hmac_sha256"
    secret: str | None = Field(
        default=None,
        description="Signing secret (generated when omitted)",
        min_length=16,
        max_length=512,
    )
    algorithm: Literal["sha256", "sha1", "sha512"] = Field(
        default="sha256",
        description="HMAC digest algorithm",
    )


class OAuth2Auth(BaseModel):
    """Send an OAuth2 access token obtained out of band."""

    type: Literal["oauth2"] = "oauth2"
    client_id: str = Field(min_length=1, description="OAuth2 client id")
    client_secret: str = Field(min_length=1, description="OAuth2 client secret")
    access_token: str = Field(min_length=1, description="Current access token")
    refresh_token: str | None = Field(default=None, description="Refresh token")
    token_expires_at: datetime | None = Field(
        default=None,
        description="When the access token expires",
    )


AuthConfig = Annotated[
    Union[NoAuth, ApiKeyAuth, BearerTokenAuth, HmacAuth, OAuth2Auth],
    Field(discriminator="type"),
]


class AuthSummary(BaseModel):
    """Public view of an auth config (never contains credentials)."""

    type: AuthType = Field(description="Authentication mode")
    hint: str | None = Field(
        default=None,
        description="Masked hint of the configured credential",
        examples=["****9f2c"],
    )


def _mask(value: str | None) -> str | None:
    if not value:
        return None
    return f"****{value[-4:]}" if len(value) > 8 else "****"


def summarize_auth(auth: AuthConfig) -> AuthSummary:
    """Build the masked public view of an auth config."""
    if isinstance(auth, ApiKeyAuth):
        hint = _mask(auth.api_key)
    elif isinstance(auth, BearerTokenAuth):
        hint = _mask(auth.token)
    elif isinstance(auth, HmacAuth):
        hint = _mask(auth.secret)
    elif isinstance(auth, OAuth2Auth):
        hint = auth.client_id
    else:
        hint = None
    return AuthSummary(type=AuthType(auth.type), hint=hint)


# =============================================================================
# Request/Response Models (API)
# =============================================================================


class WebhookCreateRequest(BaseModel):
    """Request body for webhook registration.

    Policy fields left unset take the service defaults.

    Example:
        >>> request = WebhookCreateRequest(
        ...     name="Document sync",
        ...     url="https://example.com/webhook",
        ...     event_types=["document.uploaded"],
        ... )
    """

    name: str = Field(
        description="Human-readable name",
        min_length=1,
        max_length=255,
        examples=["Document sync"],
    )
    description: str | None = Field(
        default=None,
        description="Optional description",
        max_length=1000,
    )
    url: str = Field(
        description="HTTP(S) URL to receive webhook events",
        max_length=2048,
        examples=["https://example.com/webhooks/courier"],
    )
    event_types: list[str] = Field(
        description="Event types to subscribe to",
        min_length=1,
        examples=[["document.uploaded", "document.deleted"]],
    )
    filters: dict[str, Any] | None = Field(
        default=None,
        description="Predicate over event payload fields",
        examples=[{"mimeType": "application/pdf", "fileSize": {"$lt": 1048576}}],
    )
    auth: AuthConfig = Field(
        default_factory=HmacAuth,
        description="Authentication mode and credentials",
    )
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Custom headers sent with every delivery",
    )
    payload_template: dict[str, Any] | None = Field(
        default=None,
        description="Extra payload fields; string values may use {{path}} placeholders",
        examples=[{"source": "courier", "doc": "{{data.documentId}}"}],
    )
    is_active: bool = Field(default=True, description="Whether the webhook is active")
    timeout_seconds: int | None = Field(default=None, ge=1, le=MAX_TIMEOUT_SECONDS)
    max_attempts: int | None = Field(default=None, ge=1, le=10)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    max_backoff_seconds: int = Field(default=3600, ge=1, le=86400)
    rate_limit_per_hour: int = Field(default=1000)
    rate_limit_per_day: int = Field(default=10000)


class WebhookUpdateRequest(BaseModel):
    """Request body for updating a webhook.

    All fields are optional; only provided fields are updated.
    """

    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    url: str | None = Field(default=None, max_length=2048)
    event_types: list[str] | None = Field(default=None, min_length=1)
    filters: dict[str, Any] | None = None
    auth: AuthConfig | None = None
    headers: dict[str, str] | None = None
    payload_template: dict[str, Any] | None = None
    is_active: bool | None = None
    timeout_seconds: int | None = Field(default=None, ge=1, le=MAX_TIMEOUT_SECONDS)
    max_attempts: int | None = Field(default=None, ge=1, le=10)
    backoff_multiplier: float | None = Field(default=None, ge=1.0, le=10.0)
    max_backoff_seconds: int | None = Field(default=None, ge=1, le=86400)
    rate_limit_per_hour: int | None = None
    rate_limit_per_day: int | None = None


class WebhookResponse(BaseModel):
    """Webhook details returned by API.

    Note:
        Credentials are never included; ``auth`` is a masked summary.
    """

    id: str = Field(description="Unique webhook identifier", examples=["wh_abc123def456"])
    name: str
    description: str | None = None
    url: str
    event_types: list[str]
    filters: dict[str, Any] | None = None
    auth: AuthSummary
    headers: dict[str, str] = Field(default_factory=dict)
    payload_template: dict[str, Any] | None = None
    is_active: bool
    timeout_seconds: int
    max_attempts: int
    backoff_multiplier: float
    max_backoff_seconds: int
    rate_limit_per_hour: int
    rate_limit_per_day: int
    created_at: datetime
    updated_at: datetime
    last_delivery_at: datetime | None = None


class WebhookCreateResponse(WebhookResponse):
    """Webhook details plus the signing secret, shown once."""

    signing_secret: str | None = Field(
        default=None,
        description="HMAC signing secret; store it now, it is not shown again",
    )


class WebhookPage(BaseModel):
    """One page of a webhook listing."""

    items: list[WebhookResponse]
    total: int
    page: int
    limit: int
    pages: int


class ListOptions(BaseModel):
    """Pagination, sorting and equality filters for listing webhooks."""

    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    sort_by: Literal["created_at", "updated_at", "name", "url", "is_active"] = (
        "created_at"
    )
    sort_order: Literal["asc", "desc"] = "desc"
    is_active: bool | None = None
    auth_type: AuthType | None = None
    url: str | None = None
    name: str | None = None
    event_type: str | None = None


class PublishEventRequest(BaseModel):
    """Request body for publishing an event through the API."""

    type: str = Field(min_length=1, max_length=255, examples=["document.uploaded"])
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    id: str | None = Field(default=None, max_length=255)
    resource_id: str | None = None
    resource_type: str | None = None


class EventTypeInfo(BaseModel):
    """Catalog entry for a known event type."""

    type: str
    category: str
    description: str


class TestWebhookRequest(BaseModel):
    """Request body for sending a test delivery."""

    event_type: str | None = Field(
        default=None,
        description="Event type to simulate (defaults to the first subscribed type)",
    )
    data: dict[str, Any] | None = Field(default=None, description="Test payload")


class TestWebhookResponse(BaseModel):
    """Result of a synchronous test delivery."""

    success: bool
    delivery_id: str
    event_id: str
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None
    message: str


class RetryRequest(BaseModel):
    """Request body for ``POST /webhooks/retry``.

    Exactly one of ``webhookId`` and ``deliveryIds`` must be provided.
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    webhook_id: str | None = Field(default=None, alias="webhookId", min_length=1)
    delivery_ids: list[str] | None = Field(
        default=None,
        alias="deliveryIds",
        min_length=1,
        max_length=1000,
    )
    status: Literal["failed", "abandoned"] = "failed"
    max_age: int = Field(default=24, alias="maxAge", ge=1, le=168)

    @model_validator(mode="after")
    def _exactly_one_selector(self) -> RetryRequest:
        if (self.webhook_id is None) == (self.delivery_ids is None):
            raise ValueError("Exactly one of webhookId or deliveryIds must be provided")
        return self


class RetrySummary(BaseModel):
    """Outcome counts of a manual retry."""

    total: int = 0
    success: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class RetryResponse(BaseModel):
    """Response body for ``POST /webhooks/retry``."""

    message: str
    results: RetrySummary


AnalyticsPeriod = Literal["1h", "24h", "7d", "30d"]


class WebhookAnalytics(BaseModel):
    """Delivery statistics for one webhook over a time window."""

    webhook_id: str
    period_start: datetime
    period_end: datetime
    total: int
    succeeded: int
    failed: int
    success_rate: float = Field(description="Percentage of delivered deliveries")
    event_breakdown: dict[str, int]
    status_breakdown: dict[str, int]
    average_response_time_ms: float | None = None


class ErrorBreakdown(BaseModel):
    """Failed attempts of one webhook grouped by error type."""

    webhook_id: str
    period_start: datetime
    period_end: datetime
    total_errors: int
    error_types: dict[str, int] = Field(
        description="Failed attempts per error type, ``unknown`` when untyped"
    )


HealthAlertType = Literal[
    "success_rate", "response_time", "consecutive_failures", "endpoint_down"
]


class HealthAlert(BaseModel):
    """A threshold breached by one webhook."""

    webhook_id: str
    type: HealthAlertType
    severity: Literal["medium", "high", "critical"]
    message: str
    threshold: float | None = None
    current_value: float | None = None
    created_at: datetime = Field(default_factory=utc_now)


class WebhookHealthMetrics(BaseModel):
    """Delivery health figures behind a health report."""

    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float = Field(
        description="Delivered percentage of settled deliveries, 100 when none settled"
    )
    error_rate: float = Field(description="Failed percentage of settled deliveries")
    average_response_time_ms: float | None = None
    consecutive_failures: int
    last_successful_delivery: datetime | None = None


class WebhookHealth(BaseModel):
    """Health report for one webhook over a time window."""

    webhook_id: str
    webhook_name: str
    is_healthy: bool
    period_start: datetime
    period_end: datetime
    metrics: WebhookHealthMetrics
    alerts: list[HealthAlert] = Field(default_factory=list)

    @property
    def severity(self) -> str | None:
        """Worst alert severity, None when there are no alerts."""
        for level in ("critical", "high", "medium"):
            if any(alert.severity == level for alert in self.alerts):
                return level
        return None


class FailingWebhook(BaseModel):
    """Dashboard entry for an unhealthy webhook."""

    webhook_id: str
    name: str
    error_rate: float
    consecutive_failures: int


class SystemHealth(BaseModel):
    """Health of every active webhook of an owner, rolled up."""

    overall_health: Literal["healthy", "degraded", "critical"]
    period_start: datetime
    period_end: datetime
    active_webhooks: int
    healthy_webhooks: int
    degraded_webhooks: int
    critical_webhooks: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float
    top_failing_webhooks: list[FailingWebhook] = Field(default_factory=list)
    recent_alerts: list[HealthAlert] = Field(default_factory=list)


class WorkerInfo(BaseModel):
    """Snapshot of one logical worker."""

    id: str
    status: Literal["idle", "busy", "error"]
    current_delivery: str | None = None
    last_activity: datetime | None = None
    last_error: str | None = None
    processed: int = 0


class ProcessorStats(BaseModel):
    """Counters kept by the worker pool since start."""

    processed: int = 0
    delivered: int = 0
    failed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    uptime_seconds: float = 0.0
    current_load: float = 0.0
    queue_size: int = 0


class ProcessorStatus(BaseModel):
    """Health and load of the worker pool."""

    running: bool
    healthy: bool
    workers: list[WorkerInfo]
    stats: ProcessorStats
    last_alert: dict[str, Any] | None = None


# =============================================================================
# Internal Models (Storage)
# =============================================================================


class WebhookRecord(BaseModel):
    """Internal webhook record.

    Extends WebhookResponse with the owner and the full auth config.
    """

    id: str
    owner_id: str | None = Field(
        default=None,
        description="Hashed API key that owns this webhook (None for system-wide)",
    )
    name: str
    description: str | None = None
    url: str
    event_types: list[str]
    filters: dict[str, Any] | None = None
    auth: AuthConfig = Field(default_factory=NoAuth)
    headers: dict[str, str] = Field(default_factory=dict)
    payload_template: dict[str, Any] | None = None
    is_active: bool = True
    timeout_seconds: int = 30
    max_attempts: int = 5
    backoff_multiplier: float = 2.0
    max_backoff_seconds: int = 3600
    rate_limit_per_hour: int = 1000
    rate_limit_per_day: int = 10000
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_delivery_at: datetime | None = None

    @property
    def auth_type(self) -> AuthType:
        return AuthType(self.auth.type)

    def to_response(self) -> WebhookResponse:
        """Convert to API response (excludes credentials and owner)."""
        data = self.model_dump(exclude={"owner_id", "auth"})
        return WebhookResponse(**data, auth=summarize_auth(self.auth))


class WebhookEvent(BaseModel):
    """An immutable domain event."""

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=255)
    user_id: str | None = None
    resource_id: str | None = None
    resource_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    owner_id: str | None = Field(
        default=None,
        description="Restricts fan-out to this owner's webhooks when set",
    )
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_test(self) -> bool:
        return bool(self.metadata.get("is_test"))


class DeliveryRecord(BaseModel):
    """One notification of one event to one webhook."""

    id: str
    webhook_id: str
    event_id: str
    event_type: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=5, ge=1)
    next_retry_at: datetime | None = None
    response_status: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    delivered_at: datetime | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None


class DeliveryLogRecord(BaseModel):
    """One outbound HTTP attempt."""

    id: str
    delivery_id: str
    webhook_id: str
    attempt_number: int
    request_url: str
    request_headers: dict[str, str] = Field(default_factory=dict)
    request_body_size: int = 0
    response_status: int | None = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    response_body: str | None = None
    response_time_ms: float | None = None
    error_type: str | None = None
    error_message: str | None = None
    is_success: bool = False
    attempted_at: datetime = Field(default_factory=utc_now)
