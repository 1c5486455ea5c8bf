"""Tests for the subscription registry."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

import pytest

from courier.config import CourierConfig
from courier.delivery import WebhookDeliveryService
from courier.errors import (
    WebhookError,
    WebhookErrorCode,
    WebhookForbiddenError,
    WebhookNotFoundError,
    WebhookValidationError,
)
from courier.models import (
    ApiKeyAuth,
    DeliveryStatus,
    HmacAuth,
    ListOptions,
    NoAuth,
    WebhookCreateRequest,
    WebhookUpdateRequest,
)
from courier.registry import SubscriptionRegistry
from courier.security import SecurityValidator
from courier.store import WebhookStoreProtocol
from courier.worker import DeliveryWorkerPool

if TYPE_CHECKING:
    from conftest import Subscriber

OWNER = "owner-1"


def _request(**overrides: Any) -> WebhookCreateRequest:
    values: dict[str, Any] = {
        "name": "Document sync",
        "url": "https://hooks.example.com/courier",
        "event_types": ["document.uploaded"],
    }
    values.update(overrides)
    return WebhookCreateRequest(**values)


@pytest.fixture
def registry(
    store: WebhookStoreProtocol,
    validator: SecurityValidator,
    config: CourierConfig,
) -> SubscriptionRegistry:
    return SubscriptionRegistry(store, validator, config)


@pytest.fixture
async def make_registry(
    store: WebhookStoreProtocol,
    validator: SecurityValidator,
    config: CourierConfig,
) -> AsyncIterator[Callable[[Subscriber], SubscriptionRegistry]]:
    """Provide registries whose pool delivers to a fake subscriber."""
    services: list[WebhookDeliveryService] = []

    def factory(subscriber: Subscriber) -> SubscriptionRegistry:
        service = WebhookDeliveryService(config, validator, transport=subscriber.transport)
        services.append(service)
        pool = DeliveryWorkerPool(store, service, config)
        return SubscriptionRegistry(store, validator, config, pool)

    yield factory

    for service in services:
        await service.close()


# =============================================================================
# Create
# =============================================================================


class TestCreate:
    """Tests for webhook registration."""

    def test_generates_hmac_secret(
        self, registry: SubscriptionRegistry, store: WebhookStoreProtocol
    ) -> None:
        """Test HMAC webhooks without a secret get a generated one."""
        record, secret = registry.create(OWNER, _request())

        assert secret is not None
        assert len(secret) == 64
        assert isinstance(record.auth, HmacAuth)
        assert record.auth.secret == secret
        stored = store.get_webhook(record.id)
        assert stored is not None
        assert stored.owner_id == OWNER

    def test_keeps_provided_secret(self, registry: SubscriptionRegistry) -> None:
        """Test a caller-supplied secret is stored and not echoed back."""
        auth = HmacAuth(secret="s" * 32)

        record, secret = registry.create(OWNER, _request(auth=auth))

        assert secret is None
        assert record.auth.secret == "s" * 32

    def test_applies_config_defaults(
        self, registry: SubscriptionRegistry, config: CourierConfig
    ) -> None:
        """Test unset timeout and attempt limits take the service defaults."""
        record, _ = registry.create(OWNER, _request())

        assert record.timeout_seconds == config.default_timeout
        assert record.max_attempts == config.default_max_attempts

    def test_strips_event_types(self, registry: SubscriptionRegistry) -> None:
        """Test event types are stored trimmed."""
        record, _ = registry.create(OWNER, _request(event_types=[" document.deleted "]))

        assert record.event_types == ["document.deleted"]

    def test_private_address_is_ssrf(self, registry: SubscriptionRegistry) -> None:
        """Test URLs to internal addresses are reported as SSRF."""
        with pytest.raises(WebhookValidationError) as exc_info:
            registry.create(OWNER, _request(url="https://10.0.0.5/hook"))

        assert exc_info.value.code == WebhookErrorCode.WEBHOOK_SSRF_BLOCKED
        assert exc_info.value.details["reason_code"] == "private_ip_blocked"

    def test_bad_scheme_is_invalid_url(self, registry: SubscriptionRegistry) -> None:
        """Test malformed URLs are reported as invalid, not SSRF."""
        with pytest.raises(WebhookValidationError) as exc_info:
            registry.create(OWNER, _request(url="ftp://hooks.example.com/x"))

        assert exc_info.value.code == WebhookErrorCode.WEBHOOK_URL_INVALID

    def test_blank_event_type(self, registry: SubscriptionRegistry) -> None:
        """Test blank event types are rejected."""
        with pytest.raises(WebhookValidationError) as exc_info:
            registry.create(OWNER, _request(event_types=["  "]))

        assert exc_info.value.details["reason_code"] == "invalid_event_types"

    def test_dangerous_header(self, registry: SubscriptionRegistry) -> None:
        """Test custom headers may not override sensitive ones."""
        with pytest.raises(WebhookValidationError) as exc_info:
            registry.create(OWNER, _request(headers={"Host": "evil.example.com"}))

        assert exc_info.value.code == WebhookErrorCode.HEADERS_INVALID

    def test_inconsistent_rate_limits(self, registry: SubscriptionRegistry) -> None:
        """Test a daily limit below the hourly one is rejected."""
        with pytest.raises(WebhookValidationError) as exc_info:
            registry.create(
                OWNER, _request(rate_limit_per_hour=500, rate_limit_per_day=100)
            )

        assert exc_info.value.details["reason_code"] == "rate_limit_inconsistent"

    def test_invalid_filters(self, registry: SubscriptionRegistry) -> None:
        """Test malformed filters are rejected."""
        with pytest.raises(WebhookValidationError, match="operator"):
            registry.create(OWNER, _request(filters={"size": {"$regex": ".*"}}))

    def test_rejected_webhook_not_stored(
        self, registry: SubscriptionRegistry, store: WebhookStoreProtocol
    ) -> None:
        """Test nothing is stored when validation fails."""
        with pytest.raises(WebhookValidationError):
            registry.create(OWNER, _request(url="https://127.0.0.1/hook"))

        assert store.list_webhooks(OWNER, ListOptions())[1] == 0


# =============================================================================
# Read, update, delete
# =============================================================================


class TestOwnership:
    """Tests for ownership checks."""

    def test_get_own(self, registry: SubscriptionRegistry) -> None:
        """Test owners can read their webhooks."""
        record, _ = registry.create(OWNER, _request())

        assert registry.get(record.id, OWNER).id == record.id

    def test_get_missing(self, registry: SubscriptionRegistry) -> None:
        """Test unknown IDs raise not found."""
        with pytest.raises(WebhookNotFoundError, match="wh_missing"):
            registry.get("wh_missing", OWNER)

    def test_get_foreign(self, registry: SubscriptionRegistry) -> None:
        """Test other owners' webhooks are forbidden."""
        record, _ = registry.create(OWNER, _request())

        with pytest.raises(WebhookForbiddenError) as exc_info:
            registry.get(record.id, "owner-2")

        assert exc_info.value.status_code == 403

    def test_delete_foreign(
        self, registry: SubscriptionRegistry, store: WebhookStoreProtocol
    ) -> None:
        """Test other owners cannot delete a webhook."""
        record, _ = registry.create(OWNER, _request())

        with pytest.raises(WebhookForbiddenError):
            registry.delete(record.id, "owner-2")

        assert store.get_webhook(record.id) is not None


class TestList:
    """Tests for listing."""

    def test_pages(self, registry: SubscriptionRegistry) -> None:
        """Test listing returns one page and the page count."""
        for i in range(5):
            registry.create(OWNER, _request(name=f"hook-{i}"))
        registry.create("owner-2", _request())

        page = registry.list(OWNER, ListOptions(page=2, limit=2))

        assert page.total == 5
        assert page.pages == 3
        assert page.page == 2
        assert len(page.items) == 2

    def test_responses_hide_credentials(self, registry: SubscriptionRegistry) -> None:
        """Test listed webhooks carry only a masked auth summary."""
        registry.create(OWNER, _request(auth=ApiKeyAuth(api_key="key-123456789")))

        item = registry.list(OWNER, ListOptions()).items[0]

        assert item.auth.hint == "****6789"
        assert "key-123456789" not in item.model_dump_json()

    def test_empty(self, registry: SubscriptionRegistry) -> None:
        """Test an empty listing has zero pages."""
        page = registry.list(OWNER, ListOptions())

        assert page.total == 0
        assert page.pages == 0


class TestUpdate:
    """Tests for partial updates."""

    def test_patches_given_fields(self, registry: SubscriptionRegistry) -> None:
        """Test only provided fields change."""
        record, _ = registry.create(OWNER, _request(description="first"))

        updated, secret = registry.update(
            record.id, OWNER, WebhookUpdateRequest(name="Renamed", is_active=False)
        )

        assert secret is None
        assert updated.name == "Renamed"
        assert updated.is_active is False
        assert updated.description == "first"
        assert updated.url == record.url
        assert updated.updated_at >= record.updated_at

    def test_clears_nullable_field(self, registry: SubscriptionRegistry) -> None:
        """Test nullable fields can be cleared with an explicit None."""
        record, _ = registry.create(
            OWNER, _request(description="first", filters={"mimeType": "application/pdf"})
        )

        updated, _ = registry.update(
            record.id, OWNER, WebhookUpdateRequest(description=None, filters=None)
        )

        assert updated.description is None
        assert updated.filters is None

    def test_explicit_none_ignored_for_required(
        self, registry: SubscriptionRegistry
    ) -> None:
        """Test an explicit None on a required field leaves it unchanged."""
        record, _ = registry.create(OWNER, _request())

        updated, _ = registry.update(record.id, OWNER, WebhookUpdateRequest(name=None))

        assert updated.name == record.name

    def test_hmac_switch_keeps_secret(self, registry: SubscriptionRegistry) -> None:
        """Test re-sending HMAC auth without a secret keeps the current one."""
        record, original = registry.create(OWNER, _request())

        updated, secret = registry.update(
            record.id, OWNER, WebhookUpdateRequest(auth=HmacAuth())
        )

        assert secret is None
        assert updated.auth.secret == original

    def test_hmac_switch_generates_secret(self, registry: SubscriptionRegistry) -> None:
        """Test switching to HMAC from another mode generates a secret."""
        record, _ = registry.create(OWNER, _request(auth=NoAuth()))

        updated, secret = registry.update(
            record.id, OWNER, WebhookUpdateRequest(auth=HmacAuth())
        )

        assert secret is not None
        assert updated.auth.secret == secret

    def test_revalidates_url(
        self, registry: SubscriptionRegistry, store: WebhookStoreProtocol
    ) -> None:
        """Test updated URLs pass the same checks as new ones."""
        record, _ = registry.create(OWNER, _request())

        with pytest.raises(WebhookValidationError) as exc_info:
            registry.update(
                record.id,
                OWNER,
                WebhookUpdateRequest(url="http://169.254.169.254/latest"),
            )

        assert exc_info.value.code == WebhookErrorCode.WEBHOOK_SSRF_BLOCKED
        assert store.get_webhook(record.id).url == record.url


class TestDelete:
    """Tests for deletion."""

    def test_delete(
        self, registry: SubscriptionRegistry, store: WebhookStoreProtocol
    ) -> None:
        """Test deleting removes the webhook."""
        record, _ = registry.create(OWNER, _request())

        registry.delete(record.id, OWNER)

        assert store.get_webhook(record.id) is None

    def test_delete_missing(self, registry: SubscriptionRegistry) -> None:
        """Test deleting an unknown webhook raises not found."""
        with pytest.raises(WebhookNotFoundError):
            registry.delete("wh_missing", OWNER)


# =============================================================================
# Test delivery
# =============================================================================


class TestTestDelivery:
    """Tests for synchronous test sends."""

    @pytest.mark.asyncio
    async def test_success(
        self,
        make_registry: Callable[[Subscriber], SubscriptionRegistry],
        subscriber: Subscriber,
        store: WebhookStoreProtocol,
    ) -> None:
        """Test a test send reaches only this webhook and reports success."""
        registry = make_registry(subscriber)
        record, _ = registry.create(OWNER, _request())
        registry.create(OWNER, _request(name="other"))

        result = await registry.test(record.id, OWNER)

        assert result.success is True
        assert result.status_code == 200
        assert result.message == "Test delivery succeeded"
        assert result.response_time_ms is not None
        assert len(subscriber.requests) == 1
        assert subscriber.requests[0].headers["X-Webhook-Event"] == "document.uploaded"
        delivery = store.get_delivery(result.delivery_id)
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.claimed_by is None
        event = store.get_event(result.event_id)
        assert event.is_test
        assert event.payload["webhook_id"] == record.id

    @pytest.mark.asyncio
    async def test_custom_event(
        self,
        make_registry: Callable[[Subscriber], SubscriptionRegistry],
        subscriber: Subscriber,
        store: WebhookStoreProtocol,
    ) -> None:
        """Test a caller-chosen event type and payload are sent."""
        registry = make_registry(subscriber)
        record, _ = registry.create(OWNER, _request())

        result = await registry.test(
            record.id, OWNER, event_type="document.deleted", data={"documentId": "d9"}
        )

        event = store.get_event(result.event_id)
        assert event.type == "document.deleted"
        assert event.payload == {"documentId": "d9"}

    @pytest.mark.asyncio
    async def test_failure_single_attempt(
        self,
        make_registry: Callable[[Subscriber], SubscriptionRegistry],
        make_subscriber: type[Subscriber],
        store: WebhookStoreProtocol,
    ) -> None:
        """Test a failing test send is not retried and reports the error."""
        subscriber = make_subscriber(default=500)
        registry = make_registry(subscriber)
        record, _ = registry.create(OWNER, _request())

        result = await registry.test(record.id, OWNER)

        assert result.success is False
        assert result.status_code == 500
        assert "HTTP 500" in result.message
        assert len(subscriber.requests) == 1
        delivery = store.get_delivery(result.delivery_id)
        assert delivery.status == DeliveryStatus.ABANDONED
        assert delivery.next_retry_at is None

    @pytest.mark.asyncio
    async def test_foreign_webhook(
        self,
        make_registry: Callable[[Subscriber], SubscriptionRegistry],
        subscriber: Subscriber,
    ) -> None:
        """Test test sends check ownership."""
        registry = make_registry(subscriber)
        record, _ = registry.create(OWNER, _request())

        with pytest.raises(WebhookForbiddenError):
            await registry.test(record.id, "owner-2")

        assert subscriber.requests == []

    @pytest.mark.asyncio
    async def test_without_pool(self, registry: SubscriptionRegistry) -> None:
        """Test test sends need a running delivery pool."""
        record, _ = registry.create(OWNER, _request())

        with pytest.raises(WebhookError) as exc_info:
            await registry.test(record.id, OWNER)

        assert exc_info.value.code == WebhookErrorCode.SERVICE_UNAVAILABLE
