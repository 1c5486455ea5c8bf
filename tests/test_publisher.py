"""Tests for event publishing and fan-out."""

from __future__ import annotations

from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pytest

from courier.config import CourierConfig
from courier.errors import WebhookErrorCode, WebhookValidationError
from courier.metrics import MetricsCollector
from courier.models import (
    DeliveryRecord,
    DeliveryStatus,
    WebhookEvent,
    WebhookEventType,
    WebhookRecord,
)
from courier.publisher import DeliveryChannel, EventPublisher
from courier.security import SecurityValidator
from courier.store import MemoryWebhookStore, WebhookStoreProtocol


@pytest.fixture
def channel() -> DeliveryChannel:
    return DeliveryChannel(maxsize=10)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector()


@pytest.fixture
def publisher(
    store: WebhookStoreProtocol,
    validator: SecurityValidator,
    config: CourierConfig,
    channel: DeliveryChannel,
    metrics: MetricsCollector,
) -> EventPublisher:
    return EventPublisher(store, validator, config, channel, metrics)


class TestDeliveryChannel:
    """Tests for DeliveryChannel."""

    @pytest.mark.asyncio
    async def test_wait_drains_burst(self) -> None:
        """Test one wait consumes every pending hint."""
        channel = DeliveryChannel(maxsize=5)
        for _ in range(3):
            channel.notify()

        assert await channel.wait(0.1) is True
        assert channel.qsize() == 0
        assert await channel.wait(0.01) is False

    @pytest.mark.asyncio
    async def test_full_channel_drops(self) -> None:
        """Test hints are dropped instead of blocking when full."""
        channel = DeliveryChannel(maxsize=1)

        assert channel.notify() is True
        assert channel.notify() is False
        assert channel.dropped == 1


class TestPublish:
    """Tests for immediate publishing."""

    @pytest.mark.asyncio
    async def test_fans_out_to_matching_webhooks(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        channel: DeliveryChannel,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test one pending delivery per active, subscribed, matching webhook."""
        match = store.create_webhook(make_webhook(max_attempts=3))
        store.create_webhook(make_webhook(is_active=False))
        store.create_webhook(make_webhook(event_types=["chat.message.sent"]))
        store.create_webhook(make_webhook(filters={"mimeType": "image/png"}))
        event = make_event()

        delivery_ids = await publisher.publish(event)

        assert len(delivery_ids) == 1
        delivery = store.get_delivery(delivery_ids[0])
        assert delivery is not None
        assert delivery.webhook_id == match.id
        assert delivery.event_id == event.id
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 0
        assert delivery.max_attempts == 3
        assert store.get_event(event.id) is not None
        assert channel.qsize() == 1

    @pytest.mark.asyncio
    async def test_no_match_still_saves_event(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        channel: DeliveryChannel,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test events without subscribers are kept and nobody is woken."""
        event = make_event()

        assert await publisher.publish(event) == []
        assert store.get_event(event.id) is not None
        assert channel.qsize() == 0

    @pytest.mark.asyncio
    async def test_owner_scoped(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test an owner restricts fan-out to that owner's webhooks."""
        mine = store.create_webhook(make_webhook())
        store.create_webhook(make_webhook(owner_id="owner-2"))

        delivery_ids = await publisher.publish(make_event(), owner_id="owner-1")

        assert len(delivery_ids) == 1
        assert store.get_delivery(delivery_ids[0]).webhook_id == mine.id

    @pytest.mark.asyncio
    async def test_payload_sanitized(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test stored payloads are sanitized."""
        event = make_event(payload={"title": "<script>x</script>Report"})

        await publisher.publish(event)
        stored = store.get_event(event.id)

        assert stored is not None
        assert stored.payload == {"title": "xReport"}

    @pytest.mark.asyncio
    async def test_oversized_payload_rejected(
        self,
        store: WebhookStoreProtocol,
        validator: SecurityValidator,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test payloads over the size limit are rejected before storage."""
        small = CourierConfig(_env_file=None, storage="memory", max_payload_size=1024)
        publisher = EventPublisher(store, SecurityValidator(small), small)
        event = make_event(payload={"blob": "x" * 2048})

        with pytest.raises(WebhookValidationError, match="exceeds") as exc_info:
            await publisher.publish(event)

        assert exc_info.value.code == WebhookErrorCode.PAYLOAD_TOO_LARGE
        assert exc_info.value.status_code == 413
        assert store.get_event(event.id) is None

    @pytest.mark.asyncio
    async def test_blank_type_rejected(
        self,
        publisher: EventPublisher,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test blank event types are rejected."""
        with pytest.raises(WebhookValidationError, match="Event type is required"):
            await publisher.publish(make_event(event_type="   "))

    @pytest.mark.asyncio
    async def test_records_metrics(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        metrics: MetricsCollector,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test publishing counts events and created deliveries."""
        store.create_webhook(make_webhook())
        store.create_webhook(make_webhook())

        await publisher.publish(make_event())

        assert (
            metrics.registry.get_sample_value(
                "courier_events_published_total", {"event_type": "document.uploaded"}
            )
            == 1.0
        )
        assert metrics.registry.get_sample_value("courier_deliveries_created_total") == 2.0


class TestBufferedPublish:
    """Tests for buffered publishing and flushing."""

    @pytest.mark.asyncio
    async def test_buffers_until_flush(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test buffered events are published on flush."""
        store.create_webhook(make_webhook())

        await publisher.publish_async(make_event())
        assert publisher.get_stats()["queue_size"] == 1
        assert store.count_deliveries() == 0

        await publisher.flush()

        assert publisher.get_stats()["queue_size"] == 0
        assert store.count_deliveries() == 1

    @pytest.mark.asyncio
    async def test_batch_size_triggers_flush(
        self,
        store: WebhookStoreProtocol,
        validator: SecurityValidator,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test reaching the batch size flushes immediately."""
        config = CourierConfig(_env_file=None, storage="memory", publisher_batch_size=2)
        publisher = EventPublisher(store, validator, config)
        store.create_webhook(make_webhook())

        await publisher.publish_async(make_event())
        await publisher.publish_async(make_event())

        assert store.count_deliveries() == 2

    @pytest.mark.asyncio
    async def test_invalid_event_not_buffered(
        self,
        publisher: EventPublisher,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test validation happens before buffering."""
        with pytest.raises(WebhookValidationError):
            await publisher.publish_async(make_event(id="   "))

        assert publisher.get_stats()["queue_size"] == 0

    @pytest.mark.asyncio
    async def test_failed_event_requeued_then_dropped(
        self,
        validator: SecurityValidator,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test a failing event is re-queued, then dropped and reported."""
        config = CourierConfig(
            _env_file=None, storage="memory", publisher_retry_attempts=1
        )
        store = MemoryWebhookStore()
        metrics = MetricsCollector()
        on_failure = MagicMock()
        publisher = EventPublisher(
            store, validator, config, metrics=metrics, on_failure=on_failure
        )
        event = make_event()

        with patch.object(store, "save_event", side_effect=RuntimeError("db down")):
            await publisher.publish_async(event)
            await publisher.flush()
            assert publisher.get_stats()["queue_size"] == 1

            await publisher.flush()

        assert publisher.get_stats()["queue_size"] == 0
        assert publisher.get_stats()["failed_events"] == 1
        on_failure.assert_called_once()
        assert on_failure.call_args.args[0] is event
        assert metrics.registry.get_sample_value("courier_publish_failures_total") == 1.0

    @pytest.mark.asyncio
    async def test_requeued_event_resumes_fan_out(
        self,
        store: WebhookStoreProtocol,
        validator: SecurityValidator,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test a retried event only adds the deliveries its failed pass missed."""
        config = CourierConfig(
            _env_file=None, storage="memory", publisher_retry_attempts=1
        )
        publisher = EventPublisher(store, validator, config)
        first = store.create_webhook(make_webhook())
        second = store.create_webhook(make_webhook())
        event = make_event()
        create_delivery = store.create_delivery
        attempted: list[str] = []

        def fail_second_once(record: DeliveryRecord) -> DeliveryRecord:
            attempted.append(record.webhook_id)
            if len(attempted) == 2:
                raise RuntimeError("db down")
            return create_delivery(record)

        with patch.object(store, "create_delivery", side_effect=fail_second_once):
            await publisher.publish_async(event)
            await publisher.flush()
            assert publisher.get_stats()["queue_size"] == 1

            await publisher.flush()

        deliveries = store.list_event_deliveries(event.id)
        assert publisher.get_stats()["queue_size"] == 0
        assert publisher.failed_events == []
        assert len(deliveries) == 2
        assert {d.webhook_id for d in deliveries} == {first.id, second.id}
        assert len(attempted) == 3

    @pytest.mark.asyncio
    async def test_republish_returns_existing_deliveries(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test publishing the same event twice does not duplicate deliveries."""
        store.create_webhook(make_webhook())
        event = make_event()

        first = await publisher.publish(event)
        again = await publisher.publish(event)

        assert again == first
        assert store.count_deliveries() == 1

    @pytest.mark.asyncio
    async def test_start_and_stop_flushes(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test stopping the publisher flushes the buffer."""
        store.create_webhook(make_webhook())
        publisher.start()
        assert publisher.get_stats()["running"] is True

        await publisher.publish_async(make_event())
        await publisher.stop()

        assert publisher.get_stats()["running"] is False
        assert store.count_deliveries() == 1

    @pytest.mark.asyncio
    async def test_clear_queue(
        self,
        publisher: EventPublisher,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test clearing drops buffered events."""
        await publisher.publish_async(make_event())

        publisher.clear_queue()

        assert publisher.get_stats()["queue_size"] == 0


class TestTypedHelpers:
    """Tests for the typed publishing helpers."""

    @pytest.mark.asyncio
    async def test_document_event(
        self,
        publisher: EventPublisher,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test document helpers build a compact payload and metadata."""
        store.create_webhook(make_webhook())

        event = await publisher.publish_document_event(
            WebhookEventType.DOCUMENT_UPLOADED,
            document_id="doc-42",
            file_name="report.pdf",
            mime_type="application/pdf",
            user_id="user-1",
        )
        await publisher.flush()

        assert event.type == "document.uploaded"
        assert event.id.startswith("document.uploaded-")
        assert event.payload == {
            "documentId": "doc-42",
            "fileName": "report.pdf",
            "mimeType": "application/pdf",
        }
        assert event.resource_type == "document"
        assert event.metadata["source"] == "document_service"
        assert store.count_deliveries() == 1

    @pytest.mark.asyncio
    async def test_system_event(self, publisher: EventPublisher) -> None:
        """Test system helpers tag the system resource type."""
        event = await publisher.publish_system_event(
            WebhookEventType.SYSTEM_HEALTH_ALERT,
            component="worker-pool",
            severity="high",
            message="Failure rate above threshold",
        )

        assert event.resource_type == "system"
        assert event.payload["component"] == "worker-pool"
        assert "errorCode" not in event.payload
