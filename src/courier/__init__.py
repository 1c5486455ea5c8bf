"""Courier - webhook event delivery service.

Pushes internal domain events to externally registered HTTP endpoints with
at-least-once delivery, exponential backoff retries, dead-lettering, SSRF
protection and HMAC payload signatures.

Quick Start:
    >>> from courier import CourierConfig, create_app
    >>> app = create_app(CourierConfig(storage="memory"))
    >>> publisher = app.state.publisher
"""

__version__ = "0.1.0"

from courier.config import CourierConfig
from courier.errors import (
    WEBHOOK_ERROR_REGISTRY,
    DeliveryNotFoundError,
    StoreError,
    WebhookError,
    WebhookErrorCode,
    WebhookForbiddenError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from courier.factory import create_app
from courier.models import (
    DeliveryRecord,
    DeliveryStatus,
    WebhookCreateRequest,
    WebhookEvent,
    WebhookEventType,
    WebhookRecord,
)
from courier.publisher import EventPublisher
from courier.signature import sign_payload, verify_signature

__all__ = [
    "WEBHOOK_ERROR_REGISTRY",
    "CourierConfig",
    "DeliveryNotFoundError",
    "DeliveryRecord",
    "DeliveryStatus",
    "EventPublisher",
    "StoreError",
    "WebhookCreateRequest",
    "WebhookError",
    "WebhookErrorCode",
    "WebhookEvent",
    "WebhookEventType",
    "WebhookForbiddenError",
    "WebhookNotFoundError",
    "WebhookRecord",
    "WebhookValidationError",
    "__version__",
    "create_app",
    "sign_payload",
    "verify_signature",
]
