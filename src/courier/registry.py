"""Subscription registry.

Validates and persists webhook subscriptions, enforces ownership and runs
synchronous test deliveries.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from typing import TYPE_CHECKING, Any

from courier.errors import (
    WebhookError,
    WebhookErrorCode,
    WebhookForbiddenError,
    WebhookNotFoundError,
)
from courier.filters import validate_filters
from courier.models import (
    DeliveryRecord,
    HmacAuth,
    TestWebhookResponse,
    WebhookEvent,
    WebhookPage,
    WebhookRecord,
    utc_now,
)
from courier.security import ValidationResult, generate_webhook_secret
from courier.store import (
    generate_delivery_id,
    generate_event_id,
    generate_webhook_id,
)
from courier.worker import DeliveryOutcome

if TYPE_CHECKING:
    from courier.config import CourierConfig
    from courier.models import (
        AuthConfig,
        ListOptions,
        WebhookCreateRequest,
        WebhookUpdateRequest,
    )
    from courier.security import SecurityValidator
    from courier.store import WebhookStoreProtocol
    from courier.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)

__all__ = ["SubscriptionRegistry", "get_owned_webhook"]

# URL rejection reasons that mean "points somewhere it must not"
SSRF_REASON_CODES = frozenset(
    {
        "blocked_hostname",
        "localhost_blocked",
        "metadata_blocked",
        "private_ip_blocked",
        "link_local_blocked",
        "reserved_ip_blocked",
        "suspicious_tld",
    }
)

# Fields an update may set back to None
NULLABLE_FIELDS = frozenset({"description", "filters", "payload_template"})


def get_owned_webhook(
    store: WebhookStoreProtocol, webhook_id: str, owner_id: str | None
) -> WebhookRecord:
    """Load a webhook, checking ownership when ``owner_id`` is given.

    Raises:
        WebhookNotFoundError: If the webhook does not exist
        WebhookForbiddenError: If it belongs to another owner
    """
    record = store.get_webhook(webhook_id)
    if record is None:
        raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
    if owner_id is not None and record.owner_id != owner_id:
        raise WebhookForbiddenError(
            f"You do not have permission to access webhook {webhook_id}"
        )
    return record


class SubscriptionRegistry:
    """CRUD for webhook subscriptions.

    Every operation taking an ``owner_id`` checks the webhook belongs to
    that owner (hashed API key) before touching it.

    Example:
        >>> registry = SubscriptionRegistry(store, validator, config, pool)
        >>> record, secret = registry.create(owner_id, request)
    """

    def __init__(
        self,
        store: WebhookStoreProtocol,
        validator: SecurityValidator,
        config: CourierConfig,
        pool: DeliveryWorkerPool | None = None,
    ) -> None:
        """Initialize registry.

        Args:
            store: Webhook storage
            validator: Security checks
            config: Service configuration (policy defaults)
            pool: Worker pool used to run test deliveries
        """
        self.store = store
        self.validator = validator
        self.config = config
        self.pool = pool

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def _validate(
        self,
        url: str,
        event_types: list[str],
        filters: dict[str, Any] | None,
        rate_limit_per_hour: int,
        rate_limit_per_day: int,
        headers: dict[str, str],
        auth: AuthConfig,
    ) -> None:
        url_result = self.validator.validate_target_url(url)
        if not url_result.valid:
            code = (
                WebhookErrorCode.WEBHOOK_SSRF_BLOCKED
                if url_result.code in SSRF_REASON_CODES
                else WebhookErrorCode.WEBHOOK_URL_INVALID
            )
            url_result.raise_for_invalid(code)

        if not event_types or any(
            not isinstance(t, str) or not t.strip() for t in event_types
        ):
            ValidationResult.fail(
                "At least one non-empty event type is required",
                "invalid_event_types",
            ).raise_for_invalid()

        validate_filters(filters).raise_for_invalid()
        self.validator.validate_rate_limits(
            rate_limit_per_hour, rate_limit_per_day
        ).raise_for_invalid()
        self.validator.validate_headers(headers).raise_for_invalid(
            WebhookErrorCode.HEADERS_INVALID
        )
        self.validator.validate_auth_config(auth).raise_for_invalid(
            WebhookErrorCode.WEBHOOK_AUTH_INVALID
        )

    def _validate_record(self, record: WebhookRecord) -> None:
        self._validate(
            record.url,
            record.event_types,
            record.filters,
            record.rate_limit_per_hour,
            record.rate_limit_per_day,
            record.headers,
            record.auth,
        )

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(
        self, owner_id: str | None, request: WebhookCreateRequest
    ) -> tuple[WebhookRecord, str | None]:
        """Register a webhook.

        Returns:
            Tuple of (stored record, generated HMAC secret or None)

        Raises:
            WebhookValidationError: If any field fails validation
        """
        self._validate(
            request.url,
            request.event_types,
            request.filters,
            request.rate_limit_per_hour,
            request.rate_limit_per_day,
            request.headers,
            request.auth,
        )

        auth = request.auth
        generated_secret = None
        if isinstance(auth, HmacAuth) and not auth.secret:
            generated_secret = generate_webhook_secret()
            auth = auth.model_copy(update={"secret": generated_secret})

        now = utc_now()
        record = WebhookRecord(
            id=generate_webhook_id(),
            owner_id=owner_id,
            name=request.name,
            description=request.description,
            url=request.url,
            event_types=[t.strip() for t in request.event_types],
            filters=request.filters or None,
            auth=auth,
            headers=request.headers,
            payload_template=request.payload_template,
            is_active=request.is_active,
            timeout_seconds=request.timeout_seconds or self.config.default_timeout,
            max_attempts=request.max_attempts or self.config.default_max_attempts,
            backoff_multiplier=request.backoff_multiplier,
            max_backoff_seconds=request.max_backoff_seconds,
            rate_limit_per_hour=request.rate_limit_per_hour,
            rate_limit_per_day=request.rate_limit_per_day,
            created_at=now,
            updated_at=now,
        )
        self.store.create_webhook(record)

        logger.info(f"Created webhook {record.id} for {record.url}")
        return record, generated_secret

    def get(self, webhook_id: str, owner_id: str | None = None) -> WebhookRecord:
        """Get a webhook, checking ownership when ``owner_id`` is given.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
            WebhookForbiddenError: If it belongs to another owner
        """
        return get_owned_webhook(self.store, webhook_id, owner_id)

    def list(self, owner_id: str | None, options: ListOptions) -> WebhookPage:
        """List one page of an owner's webhooks."""
        records, total = self.store.list_webhooks(owner_id, options)
        return WebhookPage(
            items=[r.to_response() for r in records],
            total=total,
            page=options.page,
            limit=options.limit,
            pages=math.ceil(total / options.limit) if total else 0,
        )

    def update(
        self,
        webhook_id: str,
        owner_id: str | None,
        request: WebhookUpdateRequest,
    ) -> tuple[WebhookRecord, str | None]:
        """Patch the fields present in the request.

        Switching auth to HMAC keeps the existing secret, or generates one
        when there is none; switching away drops it.

        Returns:
            Tuple of (updated record, newly generated HMAC secret or None)
        """
        current = self.get(webhook_id, owner_id)

        changes = {
            name: getattr(request, name)
            for name in request.model_fields_set
            if getattr(request, name) is not None or name in NULLABLE_FIELDS
        }

        generated_secret = None
        new_auth = changes.get("auth")
        if isinstance(new_auth, HmacAuth) and not new_auth.secret:
            if isinstance(current.auth, HmacAuth) and current.auth.secret:
                secret = current.auth.secret
            else:
                secret = generated_secret = generate_webhook_secret()
            changes["auth"] = new_auth.model_copy(update={"secret": secret})

        if "event_types" in changes:
            changes["event_types"] = [t.strip() for t in changes["event_types"]]

        merged = WebhookRecord.model_validate(
            {**current.model_dump(), **changes, "updated_at": utc_now()}
        )
        self._validate_record(merged)
        self.store.update_webhook(merged)

        logger.info(
            f"Updated webhook {webhook_id} ({', '.join(sorted(changes)) or 'no changes'})"
        )
        return merged, generated_secret

    def delete(self, webhook_id: str, owner_id: str | None) -> None:
        """Delete a webhook with its deliveries and logs."""
        self.get(webhook_id, owner_id)
        self.store.delete_webhook(webhook_id)
        logger.info(f"Deleted webhook {webhook_id}")

    # -------------------------------------------------------------------------
    # Test delivery
    # -------------------------------------------------------------------------

    async def test(
        self,
        webhook_id: str,
        owner_id: str | None,
        event_type: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> TestWebhookResponse:
        """Send one test event to this webhook only and wait for the result.

        The delivery gets a single attempt and is created already claimed,
        so the pool's loops never pick it up.
        """
        if self.pool is None:
            raise WebhookError(code=WebhookErrorCode.SERVICE_UNAVAILABLE)

        webhook = await asyncio.to_thread(self.get, webhook_id, owner_id)
        event_type = event_type or webhook.event_types[0]
        payload = (
            data
            if data is not None
            else {
                "test": True,
                "webhook_id": webhook.id,
                "message": "This is a test webhook delivery",
            }
        )

        now = utc_now()
        event = WebhookEvent(
            id=generate_event_id(event_type),
            type=event_type,
            payload=self.validator.sanitize_payload(payload),
            metadata={
                "source": "webhook_test",
                "timestamp": now.isoformat(),
                "is_test": True,
            },
            owner_id=owner_id,
            created_at=now,
        )
        delivery = DeliveryRecord(
            id=generate_delivery_id(),
            webhook_id=webhook.id,
            event_id=event.id,
            event_type=event_type,
            max_attempts=1,
            created_at=now,
            updated_at=now,
            claimed_by=f"test-{secrets.token_hex(4)}",
            claimed_at=now,
        )
        await asyncio.to_thread(self.store.save_event, event)
        await asyncio.to_thread(self.store.create_delivery, delivery)

        outcome = await self.pool.process_delivery(delivery.id)

        final = await asyncio.to_thread(self.store.get_delivery, delivery.id)
        logs = await asyncio.to_thread(self.store.list_delivery_logs, delivery.id)
        last_log = logs[-1] if logs else None
        error = final.error_message if final else None

        if outcome is DeliveryOutcome.DELIVERED:
            message = "Test delivery succeeded"
        elif outcome is DeliveryOutcome.DEFERRED:
            message = "Test delivery deferred: webhook is at its rate limit"
        else:
            message = f"Test delivery failed: {error or outcome.value}"

        logger.info(f"Test delivery {delivery.id} to webhook {webhook.id}: {outcome.value}")
        return TestWebhookResponse(
            success=outcome is DeliveryOutcome.DELIVERED,
            delivery_id=delivery.id,
            event_id=event.id,
            status_code=final.response_status if final else None,
            response_time_ms=last_log.response_time_ms if last_log else None,
            error=error,
            message=message,
        )
