"""Event publisher for triggering webhook deliveries.

Provides a centralized interface for publishing domain events from the
rest of the platform (document processing, chat, analytics, compliance,
system monitoring). Publishing persists the event, fans it out to every
matching subscription as a pending delivery and nudges the worker pool
through a :class:`DeliveryChannel`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from courier.errors import WebhookErrorCode, WebhookValidationError
from courier.filters import matches_filters
from courier.models import (
    DeliveryRecord,
    DeliveryStatus,
    WebhookEvent,
    WebhookEventType,
    utc_now,
)
from courier.store import generate_delivery_id, generate_event_id

if TYPE_CHECKING:
    from collections.abc import Callable

    from courier.config import CourierConfig
    from courier.metrics import MetricsCollector
    from courier.security import SecurityValidator
    from courier.store import WebhookStoreProtocol

logger = logging.getLogger(__name__)

__all__ = [
    "DeliveryChannel",
    "EventPublisher",
    "QueuedEvent",
    "generate_event_id",
]


class DeliveryChannel:
    """Bounded hint channel from the publisher to the worker pool.

    A hint only wakes the poll loop early; the poll loop still finds work
    on its own, so a hint is dropped when the channel is full.
    """

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def notify(self, hint: str = "deliveries") -> bool:
        """Post a hint without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(hint)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for a hint.

        Drains every pending hint so a burst of publishes wakes the poll
        loop once. Returns True if a hint arrived.
        """
        try:
            await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return False
        while not self._queue.empty():
            self._queue.get_nowait()
        return True

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass
class QueuedEvent:
    """An event waiting in the publisher's buffer."""

    event: WebhookEvent
    owner_id: str | None = None
    queued_at: float = field(default_factory=time.time)
    retry_count: int = 0


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


class EventPublisher:
    """Centralized event publishing.

    Example:
        >>> publisher = EventPublisher(store, validator, config, channel, metrics)
        >>> delivery_ids = await publisher.publish(
        ...     WebhookEvent(
        ...         id=generate_event_id("document.uploaded"),
        ...         type="document.uploaded",
        ...         payload={"documentId": "doc-1", "mimeType": "application/pdf"},
        ...     )
        ... )
    """

    def __init__(
        self,
        store: WebhookStoreProtocol,
        validator: SecurityValidator,
        config: CourierConfig,
        channel: DeliveryChannel | None = None,
        metrics: MetricsCollector | None = None,
        on_failure: Callable[[WebhookEvent, Exception], None] | None = None,
    ) -> None:
        """Initialize event publisher.

        Args:
            store: Storage for events, webhooks and deliveries
            validator: Security validator for payload checks
            config: Service configuration
            channel: Channel used to wake the worker pool
            metrics: Optional metrics collector
            on_failure: Called with events dropped after exhausting retries
        """
        self._store = store
        self._validator = validator
        self._config = config
        self._channel = channel
        self._metrics = metrics
        self._on_failure = on_failure

        self._queue: list[QueuedEvent] = []
        self._flush_lock = asyncio.Lock()
        self._flush_task: asyncio.Task[None] | None = None
        self.failed_events: list[QueuedEvent] = []

    # =========================================================================
    # Immediate publishing
    # =========================================================================

    def _prepare(self, event: WebhookEvent, owner_id: str | None) -> WebhookEvent:
        """Validate the envelope and return a sanitized copy of the event.

        Raises:
            WebhookValidationError: If the envelope or payload is invalid
        """
        if not event.type.strip():
            raise WebhookValidationError("Event type is required")
        if not event.id.strip():
            raise WebhookValidationError("Event ID is required")
        if not isinstance(event.payload, dict):
            raise WebhookValidationError("Event payload must be an object")

        try:
            size = len(json.dumps(event.payload, default=str).encode("utf-8"))
        except (TypeError, ValueError) as e:
            raise WebhookValidationError(f"Event payload is not serializable: {e}") from e
        self._validator.validate_payload_size(size).raise_for_invalid(
            WebhookErrorCode.PAYLOAD_TOO_LARGE
        )

        return event.model_copy(
            update={
                "payload": self._validator.sanitize_payload(event.payload),
                "owner_id": owner_id if owner_id is not None else event.owner_id,
            }
        )

    def _fan_out(self, event: WebhookEvent) -> list[str]:
        """Store the event and one delivery per matching webhook.

        Safe to repeat for the same event: a stored event is kept and
        webhooks that already hold a delivery for it are not given another.
        """
        existing: dict[str, str] = {}
        if self._store.get_event(event.id) is None:
            self._store.save_event(event)
        else:
            existing = {
                d.webhook_id: d.id for d in self._store.list_event_deliveries(event.id)
            }

        webhooks = self._store.find_matching_webhooks(event.type, event.owner_id)
        delivery_ids: list[str] = []
        for webhook in webhooks:
            if not matches_filters(webhook.filters, event.payload):
                continue
            if webhook.id in existing:
                delivery_ids.append(existing[webhook.id])
                continue
            now = utc_now()
            record = DeliveryRecord(
                id=generate_delivery_id(),
                webhook_id=webhook.id,
                event_id=event.id,
                event_type=event.type,
                status=DeliveryStatus.PENDING,
                max_attempts=webhook.max_attempts,
                created_at=now,
                updated_at=now,
            )
            self._store.create_delivery(record)
            delivery_ids.append(record.id)
        return delivery_ids

    async def publish(
        self, event: WebhookEvent, owner_id: str | None = None
    ) -> list[str]:
        """Publish an event now.

        Persists the event and creates one pending delivery per matching
        subscription (active, subscribed to the type, filters satisfied).

        Args:
            event: The event to publish
            owner_id: Restrict fan-out to this owner's webhooks

        Returns:
            IDs of the deliveries created

        Raises:
            WebhookValidationError: If the event is invalid
        """
        prepared = self._prepare(event, owner_id)
        delivery_ids = await asyncio.to_thread(self._fan_out, prepared)

        if delivery_ids:
            logger.info(
                f"Published {prepared.type} ({prepared.id}) to "
                f"{len(delivery_ids)} webhook(s)"
            )
            if self._channel is not None:
                self._channel.notify(prepared.id)
        else:
            logger.debug(f"No webhooks matched {prepared.type} ({prepared.id})")

        if self._metrics:
            self._metrics.record_event_published(prepared.type, len(delivery_ids))
        return delivery_ids

    # =========================================================================
    # Buffered publishing
    # =========================================================================

    async def publish_async(
        self, event: WebhookEvent, owner_id: str | None = None
    ) -> None:
        """Buffer an event for the next flush.

        The buffer flushes immediately once it holds ``publisher_batch_size``
        events, otherwise on the flush timer.

        Raises:
            WebhookValidationError: If the event is invalid
        """
        self._prepare(event, owner_id)
        self._queue.append(QueuedEvent(event=event, owner_id=owner_id))
        if len(self._queue) >= self._config.publisher_batch_size:
            await self.flush()

    async def _publish_queued(self, entry: QueuedEvent) -> None:
        try:
            await self.publish(entry.event, entry.owner_id)
        except Exception as e:
            if entry.retry_count < self._config.publisher_retry_attempts:
                entry.retry_count += 1
                self._queue.append(entry)
                logger.warning(
                    f"Failed to publish {entry.event.id}, re-queued "
                    f"(retry {entry.retry_count}/{self._config.publisher_retry_attempts}): {e}"
                )
                return

            logger.error(
                f"Permanently failed to publish {entry.event.id} after "
                f"{entry.retry_count} retries: {e}"
            )
            self.failed_events.append(entry)
            if self._metrics:
                self._metrics.record_publish_failure()
            if self._on_failure:
                self._on_failure(entry.event, e)

    async def flush(self) -> None:
        """Publish everything currently buffered.

        Each event is published on its own; a failure re-queues only that
        event for the next flush.
        """
        async with self._flush_lock:
            pending, self._queue = self._queue, []
            batch_size = self._config.publisher_batch_size
            for start in range(0, len(pending), batch_size):
                batch = pending[start : start + batch_size]
                await asyncio.gather(*(self._publish_queued(entry) for entry in batch))

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.publisher_flush_interval)
            try:
                if self._queue:
                    await self.flush()
            except Exception as e:
                logger.error(f"Event flush error: {e}")

    def start(self) -> None:
        """Start the periodic flush timer."""
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())
            logger.info("Event publisher started")

    async def stop(self) -> None:
        """Stop the flush timer and flush what is left."""
        if self._flush_task:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        if self._queue:
            await self.flush()
        logger.info("Event publisher stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get buffer statistics."""
        return {
            "queue_size": len(self._queue),
            "is_processing": self._flush_lock.locked(),
            "running": self._flush_task is not None,
            "failed_events": len(self.failed_events),
            "batch_size": self._config.publisher_batch_size,
            "flush_interval": self._config.publisher_flush_interval,
            "retry_attempts": self._config.publisher_retry_attempts,
        }

    def clear_queue(self) -> None:
        """Drop every buffered event."""
        self._queue = []

    # =========================================================================
    # Typed helpers
    # =========================================================================

    async def _publish_typed(
        self,
        event_type: WebhookEventType,
        payload: dict[str, Any],
        source: str,
        metadata: dict[str, Any] | None,
        user_id: str | None = None,
        resource_id: str | None = None,
        resource_type: str | None = None,
    ) -> WebhookEvent:
        event = WebhookEvent(
            id=generate_event_id(event_type.value),
            type=event_type.value,
            user_id=user_id,
            resource_id=resource_id,
            resource_type=resource_type,
            payload=_compact(payload),
            metadata={
                "source": source,
                "timestamp": utc_now().isoformat(),
                **(metadata or {}),
            },
        )
        await self.publish_async(event)
        return event

    async def publish_document_event(
        self,
        event_type: WebhookEventType,
        document_id: str,
        file_name: str | None = None,
        file_size: int | None = None,
        mime_type: str | None = None,
        user_id: str | None = None,
        status: str | None = None,
        processing_result: Any = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """Buffer a document lifecycle event.

        Args:
            event_type: One of the ``document.*`` event types
            document_id: Document the event is about
            file_name: Original file name
            file_size: Size in bytes
            mime_type: Document MIME type
            user_id: User who triggered the event
            status: Processing status
            processing_result: Result summary of processing
            error: Error message for failures
            metadata: Extra metadata merged over the defaults

        Returns:
            The buffered event
        """
        return await self._publish_typed(
            event_type,
            {
                "documentId": document_id,
                "fileName": file_name,
                "fileSize": file_size,
                "mimeType": mime_type,
                "status": status,
                "processingResult": processing_result,
                "error": error,
            },
            source="document_service",
            metadata=metadata,
            user_id=user_id,
            resource_id=document_id,
            resource_type="document",
        )

    async def publish_chat_event(
        self,
        event_type: WebhookEventType,
        conversation_id: str,
        message_id: str | None = None,
        content: str | None = None,
        role: str | None = None,
        user_id: str | None = None,
        processing_time_ms: float | None = None,
        model_used: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """Buffer a conversation event."""
        return await self._publish_typed(
            event_type,
            {
                "conversationId": conversation_id,
                "messageId": message_id,
                "content": content,
                "role": role,
                "processingTimeMs": processing_time_ms,
                "modelUsed": model_used,
            },
            source="chat_service",
            metadata=metadata,
            user_id=user_id,
            resource_id=conversation_id,
            resource_type="conversation",
        )

    async def publish_analytics_event(
        self,
        event_type: WebhookEventType,
        metric: str,
        value: float,
        severity: str,
        threshold: float | None = None,
        user_id: str | None = None,
        period: str | None = None,
        service: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """Buffer an analytics threshold event."""
        return await self._publish_typed(
            event_type,
            {
                "metric": metric,
                "value": value,
                "threshold": threshold,
                "severity": severity,
                "period": period,
                "service": service,
            },
            source="analytics_service",
            metadata=metadata,
            user_id=user_id,
            resource_type="analytics",
        )

    async def publish_compliance_event(
        self,
        event_type: WebhookEventType,
        severity: str,
        violation_type: str | None = None,
        resource_id: str | None = None,
        resource_type: str | None = None,
        user_id: str | None = None,
        audit_type: str | None = None,
        action: str | None = None,
        regulation: str | None = None,
        recommended_actions: list[str] | None = None,
        affected_users: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """Buffer a compliance finding."""
        return await self._publish_typed(
            event_type,
            {
                "violationType": violation_type,
                "severity": severity,
                "auditType": audit_type,
                "action": action,
                "regulation": regulation,
                "recommendedActions": recommended_actions,
                "affectedUsers": affected_users,
            },
            source="compliance_service",
            metadata=metadata,
            user_id=user_id,
            resource_id=resource_id,
            resource_type=resource_type or "compliance",
        )

    async def publish_system_event(
        self,
        event_type: WebhookEventType,
        component: str,
        severity: str,
        message: str,
        affected_services: list[str] | None = None,
        error_code: str | None = None,
        maintenance_id: str | None = None,
        scheduled_time: str | None = None,
        duration: int | None = None,
        backup_id: str | None = None,
        backup_type: str | None = None,
        size: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WebhookEvent:
        """Buffer a system health, maintenance or backup event."""
        return await self._publish_typed(
            event_type,
            {
                "component": component,
                "severity": severity,
                "message": message,
                "affectedServices": affected_services,
                "errorCode": error_code,
                "maintenanceId": maintenance_id,
                "scheduledTime": scheduled_time,
                "duration": duration,
                "backupId": backup_id,
                "backupType": backup_type,
                "size": size,
            },
            source="system_monitor",
            metadata=metadata,
            resource_type="system",
        )
