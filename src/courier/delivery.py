"""Webhook delivery service using httpx.

Handles the HTTP delivery of a single attempt: payload envelope, headers
and authentication, outbound SSRF re-validation, and result
classification. Retry scheduling helpers live here too; state changes are
made by the worker pool.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx

from courier import __version__
from courier.models import (
    ApiKeyAuth,
    BearerTokenAuth,
    HmacAuth,
    OAuth2Auth,
    utc_now,
)
from courier.security import URLValidationError, validate_headers, validate_payload_size
from courier.signature import SIGNATURE_HEADER, TIMESTAMP_HEADER, format_signature, sign_payload

if TYPE_CHECKING:
    from courier.config import CourierConfig
    from courier.models import DeliveryRecord, WebhookEvent, WebhookRecord
    from courier.security import SecurityValidator

logger = logging.getLogger(__name__)

__all__ = [
    "DeliveryResult",
    "WebhookDeliveryService",
    "calculate_backoff",
    "redact_headers",
    "render_template",
]

USER_AGENT = f"Courier-Webhooks/{__version__}"

# Header values replaced with a marker in delivery logs
SENSITIVE_HEADERS = frozenset({"authorization", "x-api-key", SIGNATURE_HEADER.lower()})

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
_MISSING = object()


@dataclass
class DeliveryResult:
    """Result of a webhook delivery attempt.

    ``error_type`` is one of ``timeout``, ``connection``, ``http_status``,
    ``security`` or ``unexpected`` when the attempt did not succeed.
    """

    success: bool
    status_code: int | None = None
    response_body: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    should_retry: bool = False
    duration_ms: float = 0.0
    request_url: str = ""
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body_size: int = 0


def calculate_backoff(
    attempts: int,
    multiplier: float,
    cap: float,
    base: float = 1.0,
) -> float:
    """Delay before the next attempt: ``min(cap, base * multiplier ** attempts)``.

    Example:
        >>> [calculate_backoff(n, 2.0, 60) for n in range(1, 7)]
        [2.0, 4.0, 8.0, 16.0, 32.0, 60]
    """
    try:
        delay = base * multiplier**attempts
    except OverflowError:
        return cap
    return min(cap, delay)


def redact_headers(headers: dict[str, str]) -> dict[str, str]:
    """Copy headers with credential values masked."""
    return {
        name: "[REDACTED]" if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def _lookup(context: dict[str, Any], path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def render_template(template: Any, context: dict[str, Any]) -> Any:
    """Fill ``{{path}}`` placeholders in a payload template.

    A string that is exactly one placeholder takes the referenced value
    with its type; placeholders inside longer strings are substituted as
    text. Unknown paths render as an empty string (or None when whole).
    """
    if isinstance(template, dict):
        return {key: render_template(value, context) for key, value in template.items()}
    if isinstance(template, list):
        return [render_template(item, context) for item in template]
    if not isinstance(template, str):
        return template

    whole = _PLACEHOLDER_RE.fullmatch(template.strip())
    if whole:
        value = _lookup(context, whole.group(1))
        return None if value is _MISSING else value

    def substitute(match: re.Match[str]) -> str:
        value = _lookup(context, match.group(1))
        if value is _MISSING or value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return str(value)

    return _PLACEHOLDER_RE.sub(substitute, template)


class WebhookDeliveryService:
    """Handles webhook HTTP delivery.

    Uses httpx.AsyncClient for efficient connection pooling and
    async HTTP requests.

    Example:
        >>> service = WebhookDeliveryService(config, validator)
        >>> result = await service.deliver(webhook, event, delivery, attempt=1)
        >>> if result.success:
        ...     print("Delivered successfully")
        ... elif result.should_retry:
        ...     print(f"Retry needed: {result.error}")
    """

    def __init__(
        self,
        config: CourierConfig,
        validator: SecurityValidator,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize delivery service.

        Args:
            config: Service configuration
            validator: Security validator used for outbound re-validation
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.config = config
        self.validator = validator
        self.max_response_size = config.max_response_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.default_timeout),
                follow_redirects=False,  # Redirects could point at internal hosts
                http2=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # =========================================================================
    # Request building
    # =========================================================================

    def build_payload(
        self,
        event: WebhookEvent,
        webhook: WebhookRecord,
        delivery: DeliveryRecord,
        attempt: int,
        timestamp: datetime | None = None,
    ) -> dict[str, Any]:
        """Build the JSON envelope sent to the subscriber."""
        sent_at = (timestamp or utc_now()).isoformat()
        data: dict[str, Any] = dict(event.payload)
        if webhook.payload_template:
            context = {
                "event": {
                    "id": event.id,
                    "type": event.type,
                    "timestamp": event.created_at.isoformat(),
                    "user_id": event.user_id,
                    "resource_id": event.resource_id,
                    "resource_type": event.resource_type,
                },
                "data": event.payload,
                "webhook": {"id": webhook.id, "name": webhook.name},
            }
            rendered = render_template(webhook.payload_template, context)
            if isinstance(rendered, dict):
                data.update(rendered)

        return {
            "event": {
                "id": event.id,
                "type": event.type,
                "timestamp": event.created_at.isoformat(),
            },
            "webhook": {
                "id": webhook.id,
                "name": webhook.name,
                "timestamp": sent_at,
                "delivery_id": delivery.id,
                "attempt": attempt,
            },
            "data": data,
            "metadata": event.metadata,
        }

    def build_headers(
        self,
        webhook: WebhookRecord,
        body: bytes,
        delivery: DeliveryRecord,
        event: WebhookEvent,
        attempt: int,
        timestamp: datetime,
    ) -> dict[str, str]:
        """Build outbound headers: fixed headers, custom headers, then auth.

        Raises:
            ValueError: If the auth config cannot produce credentials
        """
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Source": "courier",
            "X-Webhook-ID": webhook.id,
            "X-Webhook-Event": event.type,
            "X-Webhook-Delivery": delivery.id,
            TIMESTAMP_HEADER: str(int(timestamp.timestamp())),
            "X-Webhook-Attempt": str(attempt),
        }
        headers.update(webhook.headers)

        auth = webhook.auth
        if isinstance(auth, ApiKeyAuth):
            headers[auth.header_name] = auth.api_key
        elif isinstance(auth, BearerTokenAuth):
            headers["Authorization"] = f"Bearer {auth.token}"
        elif isinstance(auth, HmacAuth):
            if not auth.secret:
                raise ValueError("HMAC auth has no signing secret")
            digest = sign_payload(body, auth.secret, auth.algorithm)
            headers[SIGNATURE_HEADER] = format_signature(digest, auth.algorithm)
        elif isinstance(auth, OAuth2Auth):
            if auth.token_expires_at is not None and auth.token_expires_at <= timestamp:
                logger.warning(f"OAuth2 access token for webhook {webhook.id} has expired")
            headers["Authorization"] = f"Bearer {auth.access_token}"
        return headers

    async def _check_url(self, url: str) -> None:
        validator = self.validator.url_validator
        if validator.resolve_dns:
            await asyncio.to_thread(validator.validate, url)
        else:
            validator.validate(url)

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(
        self,
        webhook: WebhookRecord,
        event: WebhookEvent,
        delivery: DeliveryRecord,
        attempt: int,
    ) -> DeliveryResult:
        """Deliver one attempt of a webhook event.

        Args:
            webhook: The webhook to deliver to
            event: The event being delivered
            delivery: The delivery record
            attempt: Attempt number of this request (1-indexed)

        Returns:
            DeliveryResult with success status and details
        """
        start_time = time.monotonic()
        timestamp = utc_now()

        def security_failure(reason: str) -> DeliveryResult:
            return DeliveryResult(
                success=False,
                error=reason,
                error_type="security",
                should_retry=False,  # Security failures are never retried
                duration_ms=(time.monotonic() - start_time) * 1000,
                request_url=webhook.url,
            )

        # Re-validate at delivery time for DNS rebinding protection
        try:
            await self._check_url(webhook.url)
        except URLValidationError as e:
            return security_failure(f"URL validation failed: {e.reason}")

        header_check = validate_headers(webhook.headers)
        if not header_check.valid:
            return security_failure(f"Header validation failed: {header_check.reason}")

        payload = self.build_payload(event, webhook, delivery, attempt, timestamp)
        body = json.dumps(payload, default=str).encode("utf-8")

        size_check = validate_payload_size(body, self.config.max_payload_size)
        if not size_check.valid:
            return security_failure(str(size_check.reason))

        try:
            headers = self.build_headers(webhook, body, delivery, event, attempt, timestamp)
        except ValueError as e:
            return security_failure(f"Authentication failed: {e}")

        logged_headers = redact_headers(headers)

        def finish(**kwargs: Any) -> DeliveryResult:
            return DeliveryResult(
                duration_ms=(time.monotonic() - start_time) * 1000,
                request_url=webhook.url,
                request_headers=logged_headers,
                request_body_size=len(body),
                **kwargs,
            )

        try:
            client = await self._get_client()
            response = await client.post(
                webhook.url,
                content=body,
                headers=headers,
                timeout=webhook.timeout_seconds,
            )

            # Truncate response body
            response_body = response.text[: self.max_response_size]
            response_headers = dict(response.headers)

            # Check success (2xx status codes)
            if 200 <= response.status_code < 300:
                return finish(
                    success=True,
                    status_code=response.status_code,
                    response_body=response_body,
                    response_headers=response_headers,
                )

            return finish(
                success=False,
                status_code=response.status_code,
                response_body=response_body,
                response_headers=response_headers,
                error=f"HTTP {response.status_code}",
                error_type="http_status",
                should_retry=True,
            )

        except httpx.TimeoutException as e:
            return finish(
                success=False,
                error=f"Timeout: {e}",
                error_type="timeout",
                should_retry=True,
            )

        except httpx.ConnectError as e:
            return finish(
                success=False,
                error=f"Connection error: {e}",
                error_type="connection",
                should_retry=True,
            )

        except httpx.HTTPError as e:
            return finish(
                success=False,
                error=f"HTTP error: {e}",
                error_type="connection",
                should_retry=True,
            )

        except Exception as e:
            logger.exception(f"Unexpected error delivering webhook: {e}")
            return finish(
                success=False,
                error=f"Unexpected error: {type(e).__name__}: {e}",
                error_type="unexpected",
                should_retry=False,
            )

    # =========================================================================
    # Retry scheduling
    # =========================================================================

    def calculate_backoff(self, attempts: int, webhook: WebhookRecord) -> float:
        """Backoff delay in seconds after ``attempts`` attempts."""
        return calculate_backoff(
            attempts,
            webhook.backoff_multiplier,
            webhook.max_backoff_seconds,
            self.config.retry_base_delay,
        )

    def calculate_next_retry(
        self,
        attempts: int,
        webhook: WebhookRecord,
        now: datetime | None = None,
    ) -> datetime:
        """Calculate when to schedule the next retry.

        Args:
            attempts: Attempts made so far (after the failed one)
            webhook: Webhook whose backoff policy applies
            now: Reference time (defaults to now)

        Returns:
            datetime for next retry
        """
        delay = self.calculate_backoff(attempts, webhook)
        return (now or utc_now()) + timedelta(seconds=delay)
