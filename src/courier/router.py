"""FastAPI router for webhook management endpoints.

Provides REST API endpoints for webhook CRUD operations, delivery
history, test sends, analytics, health monitoring, manual retries and
event publishing.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from courier.errors import (
    DeliveryNotFoundError,
    WebhookError,
    WebhookErrorCode,
    get_webhook_error_message,
)
from courier.models import (
    EVENT_CATALOG,
    DeliveryLogRecord,
    DeliveryRecord,
    DeliveryStatus,
    ErrorBreakdown,
    EventTypeInfo,
    ListOptions,
    ProcessorStatus,
    PublishEventRequest,
    RetryRequest,
    RetryResponse,
    SystemHealth,
    TestWebhookRequest,
    TestWebhookResponse,
    WebhookAnalytics,
    WebhookCreateRequest,
    WebhookCreateResponse,
    WebhookEvent,
    WebhookHealth,
    WebhookPage,
    WebhookResponse,
    WebhookUpdateRequest,
    utc_now,
)
from courier.registry import get_owned_webhook
from courier.store import generate_event_id, hash_owner_id

if TYPE_CHECKING:
    from courier.analytics import AnalyticsService, ManualRetryService
    from courier.config import CourierConfig
    from courier.monitoring import WebhookMonitor
    from courier.publisher import EventPublisher
    from courier.registry import SubscriptionRegistry
    from courier.store import WebhookStoreProtocol
    from courier.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)

__all__ = [
    "DeleteResponse",
    "DeliveryListResponse",
    "DeliveryLogListResponse",
    "PublishEventResponse",
    "create_webhook_router",
    "http_error",
]


# =============================================================================
# Response Models
# =============================================================================


class DeliveryListResponse(BaseModel):
    """Response for listing deliveries."""

    deliveries: list[DeliveryRecord] = Field(description="Delivery records, newest first")
    count: int = Field(description="Number of records returned")


class DeliveryLogListResponse(BaseModel):
    """Response for listing the attempts of one delivery."""

    logs: list[DeliveryLogRecord] = Field(description="Attempt logs, oldest first")
    count: int = Field(description="Number of records returned")


class DeleteResponse(BaseModel):
    """Response for delete endpoint."""

    success: bool = Field(description="Whether deletion was successful")
    message: str = Field(description="Status message")


class PublishEventResponse(BaseModel):
    """Response for publishing an event."""

    event_id: str = Field(description="ID of the published event")
    delivery_ids: list[str] = Field(description="Deliveries created by fan-out")
    count: int = Field(description="Number of deliveries created")


# =============================================================================
# Error helpers
# =============================================================================


def http_error(error: WebhookError) -> HTTPException:
    """Convert a service error into a structured HTTP error."""
    return HTTPException(status_code=error.status_code, detail=error.to_detail())


def _request_error(code: WebhookErrorCode, message: str, **details: Any) -> HTTPException:
    return http_error(WebhookError(message, code=code, details=details or None))


# =============================================================================
# Router Factory
# =============================================================================


def create_webhook_router(
    config: CourierConfig,
    store: WebhookStoreProtocol,
    registry: SubscriptionRegistry,
    publisher: EventPublisher,
    pool: DeliveryWorkerPool,
    analytics: AnalyticsService,
    retry_service: ManualRetryService,
    monitor: WebhookMonitor,
) -> APIRouter:
    """Create FastAPI router for webhook endpoints.

    Mount it under ``/webhooks``.

    Args:
        config: Service configuration (accepted API keys)
        store: Webhook storage for delivery history lookups
        registry: Subscription registry
        publisher: Event publisher for API-published events
        pool: Worker pool (status endpoint)
        analytics: Analytics service
        retry_service: Manual retry service
        monitor: Per-webhook health reports

    Returns:
        Configured APIRouter
    """
    router = APIRouter(tags=["webhooks"])

    # -------------------------------------------------------------------------
    # Dependency: Authenticate and resolve owner
    # -------------------------------------------------------------------------

    async def get_owner_id(request: Request) -> str:
        """Authenticate the X-API-Key header and return the hashed owner ID."""
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            raise _request_error(
                WebhookErrorCode.UNAUTHENTICATED,
                get_webhook_error_message(WebhookErrorCode.UNAUTHENTICATED),
            )
        if config.api_keys and api_key not in config.api_keys:
            raise _request_error(WebhookErrorCode.UNAUTHENTICATED, "Invalid API key")
        return hash_owner_id(api_key)

    # -------------------------------------------------------------------------
    # Event catalog and publishing
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/events",
        response_model=list[EventTypeInfo],
        summary="List known event types",
    )
    async def list_event_types(
        owner_id: str = Depends(get_owner_id),
    ) -> list[EventTypeInfo]:
        """Catalog of event types with category and description."""
        return [
            EventTypeInfo(type=event_type.value, category=category, description=text)
            for event_type, (category, text) in EVENT_CATALOG.items()
        ]

    @router.post(  # type: ignore[misc]
        "/events",
        response_model=PublishEventResponse,
        status_code=202,
        summary="Publish an event",
        responses={
            202: {"description": "Event accepted and deliveries created"},
            400: {"description": "Invalid event"},
            401: {"description": "Authentication required"},
            413: {"description": "Payload too large"},
        },
    )
    async def publish_event(
        body: PublishEventRequest,
        owner_id: str = Depends(get_owner_id),
    ) -> PublishEventResponse:
        """Publish an event to the caller's own subscriptions."""
        event = WebhookEvent(
            id=body.id or generate_event_id(body.type),
            type=body.type,
            resource_id=body.resource_id,
            resource_type=body.resource_type,
            payload=body.payload,
            metadata={"source": "api", "timestamp": utc_now().isoformat(), **body.metadata},
        )
        try:
            delivery_ids = await publisher.publish(event, owner_id=owner_id)
        except WebhookError as e:
            raise http_error(e) from e

        return PublishEventResponse(
            event_id=event.id,
            delivery_ids=delivery_ids,
            count=len(delivery_ids),
        )

    # -------------------------------------------------------------------------
    # POST /webhooks/retry - Manual retry
    # -------------------------------------------------------------------------

    @router.post(  # type: ignore[misc]
        "/retry",
        response_model=RetryResponse,
        summary="Retry failed or abandoned deliveries",
        responses={
            200: {"description": "Retry results"},
            400: {"description": "Invalid request"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to retry these deliveries"},
            404: {"description": "Webhook or delivery not found"},
        },
    )
    async def retry_deliveries(
        request: Request,
        owner_id: str = Depends(get_owner_id),
    ) -> RetryResponse:
        """Reset deliveries to pending and run them again right away.

        Body: ``{webhookId?, deliveryIds?, status?, maxAge?}`` with exactly
        one of ``webhookId`` and ``deliveryIds``.
        """
        try:
            raw = await request.json()
        except json.JSONDecodeError as e:
            raise _request_error(
                WebhookErrorCode.INVALID_REQUEST, "Request body must be valid JSON"
            ) from e

        try:
            retry_request = RetryRequest.model_validate(raw)
        except ValidationError as e:
            raise _request_error(
                WebhookErrorCode.INVALID_REQUEST,
                "Invalid retry request",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

        try:
            return await retry_service.manual_retry(owner_id, retry_request)
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # GET /webhooks/system/status - Worker pool status
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/system/status",
        response_model=ProcessorStatus,
        summary="Delivery worker pool status",
    )
    async def system_status(
        owner_id: str = Depends(get_owner_id),
    ) -> ProcessorStatus:
        """Health, worker states and counters of the delivery pool."""
        return await pool.get_status()

    # -------------------------------------------------------------------------
    # GET /webhooks/system/health - Health of the caller's webhooks
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/system/health",
        response_model=SystemHealth,
        summary="Health dashboard of the caller's webhooks",
        responses={
            200: {"description": "Rolled up webhook health"},
            400: {"description": "Invalid period or range"},
            401: {"description": "Authentication required"},
        },
    )
    async def system_health(
        period: str = "1h",
        start: datetime | None = None,
        end: datetime | None = None,
        owner_id: str = Depends(get_owner_id),
    ) -> SystemHealth:
        """Overall state, failing webhooks and recent alerts across active webhooks."""
        try:
            return await asyncio.to_thread(
                monitor.system_health,
                owner_id,
                period,  # type: ignore[arg-type]
                start,
                end,
            )
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # GET /webhooks/deliveries/{delivery_id}/logs - Attempt logs
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/deliveries/{delivery_id}/logs",
        response_model=DeliveryLogListResponse,
        summary="Get attempt logs of a delivery",
        responses={
            200: {"description": "Attempt logs"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this delivery"},
            404: {"description": "Delivery not found"},
        },
    )
    async def get_delivery_logs(
        delivery_id: str,
        limit: int = 100,
        owner_id: str = Depends(get_owner_id),
    ) -> DeliveryLogListResponse:
        """Every outbound attempt of one delivery, oldest first."""
        try:
            delivery = store.get_delivery(delivery_id)
            if delivery is None:
                raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
            get_owned_webhook(store, delivery.webhook_id, owner_id)
        except WebhookError as e:
            raise http_error(e) from e

        logs = store.list_delivery_logs(delivery_id, limit=max(1, min(limit, 100)))
        return DeliveryLogListResponse(logs=logs, count=len(logs))

    # -------------------------------------------------------------------------
    # POST /webhooks - Register webhook
    # -------------------------------------------------------------------------

    @router.post(  # type: ignore[misc]
        "",
        response_model=WebhookCreateResponse,
        status_code=201,
        summary="Register a new webhook",
        responses={
            201: {"description": "Webhook created successfully"},
            400: {"description": "Invalid URL or request"},
            401: {"description": "Authentication required"},
        },
    )
    async def create_webhook(
        body: WebhookCreateRequest,
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookCreateResponse:
        """Register a new webhook.

        The generated HMAC signing secret is returned in this response only.
        """
        try:
            record, secret = registry.create(owner_id, body)
        except WebhookError as e:
            raise http_error(e) from e

        return WebhookCreateResponse(
            **record.to_response().model_dump(),
            signing_secret=secret,
        )

    # -------------------------------------------------------------------------
    # GET /webhooks - List webhooks
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "",
        response_model=WebhookPage,
        summary="List webhooks",
        responses={
            200: {"description": "One page of webhooks"},
            401: {"description": "Authentication required"},
        },
    )
    async def list_webhooks(
        options: ListOptions = Depends(),
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookPage:
        """List the webhooks owned by the authenticated API key."""
        return registry.list(owner_id, options)

    # -------------------------------------------------------------------------
    # GET /webhooks/{id} - Get webhook details
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{webhook_id}",
        response_model=WebhookResponse,
        summary="Get webhook details",
        responses={
            200: {"description": "Webhook details"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def get_webhook(
        webhook_id: str,
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookResponse:
        """Get details for a specific webhook."""
        try:
            return registry.get(webhook_id, owner_id).to_response()
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # PATCH /webhooks/{id} - Update webhook
    # -------------------------------------------------------------------------

    @router.patch(  # type: ignore[misc]
        "/{webhook_id}",
        response_model=WebhookCreateResponse,
        summary="Update webhook",
        responses={
            200: {"description": "Webhook updated"},
            400: {"description": "Invalid URL or request"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def update_webhook(
        webhook_id: str,
        body: WebhookUpdateRequest,
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookCreateResponse:
        """Update a webhook.

        Only provided fields are updated. ``signing_secret`` is set when the
        update generated a new HMAC secret.
        """
        try:
            record, secret = registry.update(webhook_id, owner_id, body)
        except WebhookError as e:
            raise http_error(e) from e

        return WebhookCreateResponse(
            **record.to_response().model_dump(),
            signing_secret=secret,
        )

    # -------------------------------------------------------------------------
    # DELETE /webhooks/{id} - Delete webhook
    # -------------------------------------------------------------------------

    @router.delete(  # type: ignore[misc]
        "/{webhook_id}",
        response_model=DeleteResponse,
        summary="Delete webhook",
        responses={
            200: {"description": "Webhook deleted"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def delete_webhook(
        webhook_id: str,
        owner_id: str = Depends(get_owner_id),
    ) -> DeleteResponse:
        """Delete a webhook with its deliveries and their logs."""
        try:
            registry.delete(webhook_id, owner_id)
        except WebhookError as e:
            raise http_error(e) from e

        return DeleteResponse(success=True, message=f"Webhook {webhook_id} deleted")

    # -------------------------------------------------------------------------
    # GET /webhooks/{id}/deliveries - Delivery history
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{webhook_id}/deliveries",
        response_model=DeliveryListResponse,
        summary="Get delivery history",
        responses={
            200: {"description": "Delivery history"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def get_deliveries(
        webhook_id: str,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        owner_id: str = Depends(get_owner_id),
    ) -> DeliveryListResponse:
        """Most recent deliveries of a webhook, optionally in one status."""
        try:
            registry.get(webhook_id, owner_id)
        except WebhookError as e:
            raise http_error(e) from e

        deliveries = store.list_deliveries(
            webhook_id=webhook_id,
            status=status,
            limit=max(1, min(limit, 100)),
        )
        return DeliveryListResponse(deliveries=deliveries, count=len(deliveries))

    # -------------------------------------------------------------------------
    # POST /webhooks/{id}/test - Send test event
    # -------------------------------------------------------------------------

    @router.post(  # type: ignore[misc]
        "/{webhook_id}/test",
        response_model=TestWebhookResponse,
        summary="Send test event",
        responses={
            200: {"description": "Test delivery result"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
            503: {"description": "Webhook delivery not available"},
        },
    )
    async def test_webhook(
        webhook_id: str,
        body: TestWebhookRequest | None = Body(default=None),
        owner_id: str = Depends(get_owner_id),
    ) -> TestWebhookResponse:
        """Send a test event to this webhook and wait for the attempt to finish."""
        body = body or TestWebhookRequest()
        try:
            return await registry.test(
                webhook_id,
                owner_id,
                event_type=body.event_type,
                data=body.data,
            )
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # GET /webhooks/{id}/analytics - Delivery statistics
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{webhook_id}/analytics",
        response_model=WebhookAnalytics,
        summary="Get delivery analytics",
        responses={
            200: {"description": "Delivery statistics"},
            400: {"description": "Invalid period or range"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def get_analytics(
        webhook_id: str,
        period: str = "24h",
        start: datetime | None = None,
        end: datetime | None = None,
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookAnalytics:
        """Success rate, breakdowns and latency over a period or explicit range."""
        try:
            return await asyncio.to_thread(
                analytics.analytics,
                webhook_id,
                owner_id,
                period,  # type: ignore[arg-type]
                start,
                end,
            )
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # GET /webhooks/{id}/errors - Failed attempts by error type
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{webhook_id}/errors",
        response_model=ErrorBreakdown,
        summary="Get failed attempts by error type",
        responses={
            200: {"description": "Error type breakdown"},
            400: {"description": "Invalid period or range"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def get_error_breakdown(
        webhook_id: str,
        period: str = "24h",
        start: datetime | None = None,
        end: datetime | None = None,
        owner_id: str = Depends(get_owner_id),
    ) -> ErrorBreakdown:
        """Failed attempts grouped by error type over a period or explicit range."""
        try:
            return await asyncio.to_thread(
                analytics.error_breakdown,
                webhook_id,
                owner_id,
                period,  # type: ignore[arg-type]
                start,
                end,
            )
        except WebhookError as e:
            raise http_error(e) from e

    # -------------------------------------------------------------------------
    # GET /webhooks/{id}/health - Health report with alerts
    # -------------------------------------------------------------------------

    @router.get(  # type: ignore[misc]
        "/{webhook_id}/health",
        response_model=WebhookHealth,
        summary="Get webhook health",
        responses={
            200: {"description": "Health metrics and active alerts"},
            400: {"description": "Invalid period or range"},
            401: {"description": "Authentication required"},
            403: {"description": "Not authorized to access this webhook"},
            404: {"description": "Webhook not found"},
        },
    )
    async def get_webhook_health(
        webhook_id: str,
        period: str = "1h",
        start: datetime | None = None,
        end: datetime | None = None,
        owner_id: str = Depends(get_owner_id),
    ) -> WebhookHealth:
        """Success rate, failure streak, latency and breached thresholds."""
        try:
            return await asyncio.to_thread(
                monitor.webhook_health,
                webhook_id,
                owner_id,
                period,  # type: ignore[arg-type]
                start,
                end,
            )
        except WebhookError as e:
            raise http_error(e) from e

    return router

