"""Webhook error codes and exceptions.

Error codes in the E4xx range for webhook operations. Services raise
``WebhookError`` subclasses; the router turns them into structured
HTTP errors using the registry below.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

__all__ = [
    "WEBHOOK_ERROR_REGISTRY",
    "DeliveryNotFoundError",
    "StoreError",
    "WebhookError",
    "WebhookErrorCode",
    "WebhookForbiddenError",
    "WebhookNotFoundError",
    "WebhookValidationError",
    "get_webhook_error_message",
    "get_webhook_error_status",
]


class WebhookErrorCode(str, Enum):
    """Webhook-specific error codes (E4xx range)."""

    # E40x - Webhook resource errors
    WEBHOOK_NOT_FOUND = "E400"
    WEBHOOK_URL_INVALID = "E401"
    WEBHOOK_SSRF_BLOCKED = "E402"
    WEBHOOK_AUTH_INVALID = "E403"
    WEBHOOK_VALIDATION_FAILED = "E404"
    WEBHOOK_FORBIDDEN = "E405"

    # E41x - Request errors
    UNAUTHENTICATED = "E410"
    INVALID_REQUEST = "E411"
    PAYLOAD_TOO_LARGE = "E412"
    HEADERS_INVALID = "E413"

    # E42x - Delivery errors
    DELIVERY_NOT_FOUND = "E420"
    DELIVERY_RETRY_FAILED = "E421"
    SERVICE_UNAVAILABLE = "E422"


# Error registry mapping codes to HTTP status and metadata
WEBHOOK_ERROR_REGISTRY: dict[WebhookErrorCode, dict[str, Any]] = {
    # E40x - Resource errors
    WebhookErrorCode.WEBHOOK_NOT_FOUND: {
        "error": "webhook_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Webhook not found",
    },
    WebhookErrorCode.WEBHOOK_URL_INVALID: {
        "error": "webhook_url_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook URL is invalid",
    },
    WebhookErrorCode.WEBHOOK_SSRF_BLOCKED: {
        "error": "webhook_ssrf_blocked",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook URL blocked for security reasons",
    },
    WebhookErrorCode.WEBHOOK_AUTH_INVALID: {
        "error": "webhook_auth_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook authentication configuration is incomplete",
    },
    WebhookErrorCode.WEBHOOK_VALIDATION_FAILED: {
        "error": "webhook_validation_failed",
        "http_status": 400,
        "recoverable": False,
        "message": "Webhook configuration is invalid",
    },
    WebhookErrorCode.WEBHOOK_FORBIDDEN: {
        "error": "webhook_forbidden",
        "http_status": 403,
        "recoverable": False,
        "message": "You do not have permission to access this webhook",
    },
    # E41x - Request errors
    WebhookErrorCode.UNAUTHENTICATED: {
        "error": "unauthenticated",
        "http_status": 401,
        "recoverable": False,
        "message": "API key required",
    },
    WebhookErrorCode.INVALID_REQUEST: {
        "error": "invalid_request",
        "http_status": 400,
        "recoverable": False,
        "message": "Invalid request data",
    },
    WebhookErrorCode.PAYLOAD_TOO_LARGE: {
        "error": "payload_too_large",
        "http_status": 413,
        "recoverable": False,
        "message": "Event payload exceeds the maximum size",
    },
    WebhookErrorCode.HEADERS_INVALID: {
        "error": "headers_invalid",
        "http_status": 400,
        "recoverable": False,
        "message": "Custom headers are not allowed",
    },
    # E42x - Delivery errors
    WebhookErrorCode.DELIVERY_NOT_FOUND: {
        "error": "delivery_not_found",
        "http_status": 404,
        "recoverable": False,
        "message": "Delivery record not found",
    },
    WebhookErrorCode.DELIVERY_RETRY_FAILED: {
        "error": "delivery_retry_failed",
        "http_status": 500,
        "recoverable": True,
        "message": "Failed to retry deliveries, try again later",
    },
    WebhookErrorCode.SERVICE_UNAVAILABLE: {
        "error": "service_unavailable",
        "http_status": 503,
        "recoverable": True,
        "message": "Webhook delivery service not available",
    },
}


def get_webhook_error_status(code: WebhookErrorCode) -> int:
    """Get HTTP status for a webhook error code."""
    entry = WEBHOOK_ERROR_REGISTRY.get(code)
    if entry is None:
        return 500
    status = entry.get("http_status")
    return int(status) if status is not None else 500


def get_webhook_error_message(code: WebhookErrorCode) -> str:
    """Get default message for a webhook error code."""
    entry = WEBHOOK_ERROR_REGISTRY.get(code)
    if entry is None:
        return "Unknown webhook error"
    message = entry.get("message")
    return str(message) if message is not None else "Unknown webhook error"


# =============================================================================
# Exceptions
# =============================================================================


class WebhookError(Exception):
    """Base exception for webhook operations.

    Attributes:
        code: Error code from the registry
        message: Human-readable message
        details: Optional machine-readable details
    """

    default_code = WebhookErrorCode.WEBHOOK_VALIDATION_FAILED

    def __init__(
        self,
        message: str | None = None,
        code: WebhookErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or get_webhook_error_message(self.code)
        self.details = details or {}
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        """HTTP status for this error."""
        return get_webhook_error_status(self.code)

    def to_detail(self) -> dict[str, Any]:
        """Build the ``detail`` body used in HTTP error responses."""
        entry = WEBHOOK_ERROR_REGISTRY.get(self.code, {})
        detail: dict[str, Any] = {
            "code": self.code.value,
            "error": entry.get("error", "webhook_error"),
            "message": self.message,
        }
        if self.details:
            detail["details"] = self.details
        return detail


class WebhookValidationError(WebhookError):
    """Raised when a subscription, event or request fails validation."""

    default_code = WebhookErrorCode.WEBHOOK_VALIDATION_FAILED


class WebhookNotFoundError(WebhookError):
    """Raised when a webhook does not exist."""

    default_code = WebhookErrorCode.WEBHOOK_NOT_FOUND


class WebhookForbiddenError(WebhookError):
    """Raised when the caller does not own the webhook."""

    default_code = WebhookErrorCode.WEBHOOK_FORBIDDEN


class DeliveryNotFoundError(WebhookError):
    """Raised when a delivery does not exist."""

    default_code = WebhookErrorCode.DELIVERY_NOT_FOUND


class StoreError(Exception):
    """Base exception for storage backend failures."""

    pass
