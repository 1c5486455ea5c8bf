"""Tests for the webhook storage backends.

Every test runs against both the in-memory and the SQLite store.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from courier.config import CourierConfig
from courier.models import (
    DeliveryLogRecord,
    DeliveryRecord,
    DeliveryStatus,
    ListOptions,
    NoAuth,
    WebhookEvent,
    WebhookRecord,
)
from courier.store import (
    MemoryWebhookStore,
    SQLiteWebhookStore,
    WebhookStoreProtocol,
    create_store,
    generate_delivery_id,
    generate_event_id,
    generate_log_id,
    generate_webhook_id,
    hash_owner_id,
    to_utc,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def seeded(
    store: WebhookStoreProtocol,
    make_webhook: Callable[..., WebhookRecord],
    make_event: Callable[..., WebhookEvent],
) -> tuple[WebhookRecord, WebhookEvent]:
    """Store one webhook and one event for delivery tests."""
    webhook = store.create_webhook(make_webhook())
    event = make_event()
    store.save_event(event)
    return webhook, event


def _delivery(
    store: WebhookStoreProtocol,
    webhook: WebhookRecord,
    event: WebhookEvent,
    **overrides: Any,
) -> DeliveryRecord:
    values: dict[str, Any] = {
        "id": generate_delivery_id(),
        "webhook_id": webhook.id,
        "event_id": event.id,
        "event_type": event.type,
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return store.create_delivery(DeliveryRecord(**values))


def _log(
    store: WebhookStoreProtocol,
    delivery: DeliveryRecord,
    **overrides: Any,
) -> DeliveryLogRecord:
    values: dict[str, Any] = {
        "id": generate_log_id(),
        "delivery_id": delivery.id,
        "webhook_id": delivery.webhook_id,
        "attempt_number": 1,
        "request_url": "https://hooks.example.com/courier",
        "attempted_at": NOW,
    }
    values.update(overrides)
    log = DeliveryLogRecord(**values)
    store.add_delivery_log(log)
    return log


# =============================================================================
# Identifiers
# =============================================================================


class TestIdentifiers:
    """Tests for identifier and time helpers."""

    def test_prefixes(self) -> None:
        """Test generated identifiers carry their prefixes."""
        assert generate_webhook_id().startswith("wh_")
        assert generate_delivery_id().startswith("del_")
        assert generate_log_id().startswith("log_")
        assert generate_event_id("document.uploaded").startswith("document.uploaded-")

    def test_ids_unique(self) -> None:
        """Test identifiers do not repeat."""
        assert len({generate_webhook_id() for _ in range(100)}) == 100

    def test_hash_owner_id(self) -> None:
        """Test owner hashes are stable and do not expose the key."""
        hashed = hash_owner_id("secret-api-key")

        assert hashed == hash_owner_id("secret-api-key")
        assert hashed != hash_owner_id("other-api-key")
        assert "secret" not in hashed
        assert len(hashed) == 16

    def test_to_utc_naive(self) -> None:
        """Test naive datetimes are taken as UTC."""
        assert to_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc


class TestCreateStore:
    """Tests for create_store."""

    def test_memory(self) -> None:
        """Test the memory backend is selected by config."""
        store = create_store(CourierConfig(_env_file=None, storage="memory"))

        assert isinstance(store, MemoryWebhookStore)

    def test_sqlite(self, tmp_path: Any) -> None:
        """Test the SQLite backend creates its database file."""
        path = tmp_path / "nested" / "courier.db"
        store = create_store(
            CourierConfig(_env_file=None, storage="sqlite", database_path=str(path))
        )

        assert isinstance(store, SQLiteWebhookStore)
        assert path.exists()

    def test_sqlite_in_memory(self) -> None:
        """Test ':memory:' keeps data for the store's lifetime."""
        store = SQLiteWebhookStore(":memory:")
        try:
            webhook = WebhookRecord(
                id=generate_webhook_id(),
                name="In memory",
                url="https://hooks.example.com/a",
                event_types=["document.uploaded"],
            )
            store.create_webhook(webhook)

            assert store.db_path is None
            assert store.get_webhook(webhook.id) is not None
        finally:
            store.close()


# =============================================================================
# Webhooks
# =============================================================================


class TestWebhookStorage:
    """Tests for webhook CRUD and listing."""

    def test_create_and_get(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test a stored webhook reads back intact."""
        webhook = make_webhook(
            filters={"mimeType": "application/pdf"},
            headers={"X-Tenant": "acme"},
            payload_template={"doc": "{{event.payload.documentId}}"},
        )
        store.create_webhook(webhook)

        loaded = store.get_webhook(webhook.id)

        assert loaded is not None
        assert loaded.owner_id == "owner-1"
        assert loaded.filters == {"mimeType": "application/pdf"}
        assert loaded.headers == {"X-Tenant": "acme"}
        assert loaded.auth == webhook.auth
        assert loaded.payload_template == webhook.payload_template

    def test_get_missing(self, store: WebhookStoreProtocol) -> None:
        """Test missing webhooks return None."""
        assert store.get_webhook("wh_missing") is None

    def test_update(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test updates replace the stored record."""
        webhook = store.create_webhook(make_webhook())

        store.update_webhook(
            webhook.model_copy(update={"name": "Renamed", "auth": NoAuth()})
        )
        loaded = store.get_webhook(webhook.id)

        assert loaded is not None
        assert loaded.name == "Renamed"
        assert loaded.auth == NoAuth()

    def test_delete_cascades(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test deleting a webhook removes its deliveries and logs."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery)

        assert store.delete_webhook(webhook.id) is True
        assert store.get_webhook(webhook.id) is None
        assert store.get_delivery(delivery.id) is None
        assert store.list_delivery_logs(delivery.id) == []
        assert store.delete_webhook(webhook.id) is False

    def test_list_scoped_to_owner(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test listing only returns the owner's webhooks."""
        store.create_webhook(make_webhook())
        store.create_webhook(make_webhook(owner_id="owner-2"))

        items, total = store.list_webhooks("owner-1", ListOptions())

        assert total == 1
        assert items[0].owner_id == "owner-1"

    def test_list_paging_and_sort(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test pages are cut after sorting."""
        for index in range(5):
            store.create_webhook(
                make_webhook(
                    name=f"hook-{index}",
                    created_at=NOW + timedelta(minutes=index),
                )
            )

        first, total = store.list_webhooks(
            "owner-1", ListOptions(page=1, limit=2, sort_by="name", sort_order="asc")
        )
        last, _ = store.list_webhooks(
            "owner-1", ListOptions(page=3, limit=2, sort_by="name", sort_order="asc")
        )

        assert total == 5
        assert [w.name for w in first] == ["hook-0", "hook-1"]
        assert [w.name for w in last] == ["hook-4"]

    def test_list_filters(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test list filters on active flag and event type."""
        store.create_webhook(make_webhook(is_active=False))
        store.create_webhook(make_webhook(event_types=["chat.message.sent"]))

        inactive, _ = store.list_webhooks("owner-1", ListOptions(is_active=False))
        chat, _ = store.list_webhooks(
            "owner-1", ListOptions(event_type="chat.message.sent")
        )

        assert len(inactive) == 1
        assert not inactive[0].is_active
        assert len(chat) == 1
        assert chat[0].event_types == ["chat.message.sent"]

    def test_find_matching(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test only active subscribers of the type are returned."""
        active = store.create_webhook(make_webhook())
        store.create_webhook(make_webhook(is_active=False))
        store.create_webhook(make_webhook(event_types=["chat.message.sent"]))
        other = store.create_webhook(make_webhook(owner_id="owner-2"))

        everyone = store.find_matching_webhooks("document.uploaded")
        scoped = store.find_matching_webhooks("document.uploaded", owner_id="owner-1")

        assert {w.id for w in everyone} == {active.id, other.id}
        assert [w.id for w in scoped] == [active.id]

    def test_set_last_delivery(
        self,
        store: WebhookStoreProtocol,
        make_webhook: Callable[..., WebhookRecord],
    ) -> None:
        """Test the last delivery time is recorded."""
        webhook = store.create_webhook(make_webhook())

        store.set_last_delivery(webhook.id, NOW)
        loaded = store.get_webhook(webhook.id)

        assert loaded is not None
        assert loaded.last_delivery_at == NOW


# =============================================================================
# Events and deliveries
# =============================================================================


class TestEventStorage:
    """Tests for event persistence."""

    def test_round_trip(
        self,
        store: WebhookStoreProtocol,
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test events keep payload and metadata."""
        event = make_event(owner_id="owner-1", resource_id="doc-1")
        store.save_event(event)

        loaded = store.get_event(event.id)

        assert loaded is not None
        assert loaded.payload == event.payload
        assert loaded.metadata == {"source": "tests"}
        assert loaded.owner_id == "owner-1"
        assert store.get_event("missing") is None


class TestDeliveryStorage:
    """Tests for delivery rows, claims and retries."""

    def test_list_newest_first(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test deliveries list newest first and honour filters."""
        webhook, event = seeded
        old = _delivery(store, webhook, event, created_at=NOW - timedelta(hours=2))
        new = _delivery(
            store, webhook, event, status=DeliveryStatus.FAILED, created_at=NOW
        )

        listed = store.list_deliveries(webhook_id=webhook.id)
        failed = store.list_deliveries(status=DeliveryStatus.FAILED)
        recent = store.list_deliveries(since=NOW - timedelta(hours=1))

        assert [d.id for d in listed] == [new.id, old.id]
        assert [d.id for d in failed] == [new.id]
        assert [d.id for d in recent] == [new.id]

    def test_event_deliveries_oldest_first(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test deliveries of one event list oldest first."""
        webhook, event = seeded
        other = make_event()
        store.save_event(other)
        new = _delivery(store, webhook, event, created_at=NOW)
        old = _delivery(store, webhook, event, created_at=NOW - timedelta(hours=1))
        _delivery(store, webhook, other)

        listed = store.list_event_deliveries(event.id)

        assert [d.id for d in listed] == [old.id, new.id]
        assert store.list_event_deliveries("evt_missing") == []

    def test_claim_due_only(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test claims skip rows scheduled in the future."""
        webhook, event = seeded
        due = _delivery(store, webhook, event)
        _delivery(store, webhook, event, next_retry_at=NOW + timedelta(minutes=5))

        claimed = store.claim_deliveries(
            DeliveryStatus.PENDING, 10, NOW, "pool-a", lease_seconds=300
        )

        assert [d.id for d in claimed] == [due.id]
        assert claimed[0].claimed_by == "pool-a"

    def test_claim_is_exclusive(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test a live claim hides the row from other callers."""
        webhook, event = seeded
        _delivery(store, webhook, event)

        first = store.claim_deliveries(DeliveryStatus.PENDING, 10, NOW, "pool-a", 300)
        second = store.claim_deliveries(DeliveryStatus.PENDING, 10, NOW, "pool-b", 300)

        assert len(first) == 1
        assert second == []

    def test_expired_claim_is_reclaimable(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test rows whose lease ran out can be claimed again."""
        webhook, event = seeded
        _delivery(store, webhook, event)

        store.claim_deliveries(DeliveryStatus.PENDING, 10, NOW, "pool-a", 300)
        later = store.claim_deliveries(
            DeliveryStatus.PENDING, 10, NOW + timedelta(seconds=301), "pool-b", 300
        )

        assert [d.claimed_by for d in later] == ["pool-b"]

    def test_claim_oldest_first_with_limit(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test the oldest rows win when the limit cuts the batch."""
        webhook, event = seeded
        newer = _delivery(store, webhook, event, created_at=NOW - timedelta(minutes=1))
        older = _delivery(store, webhook, event, created_at=NOW - timedelta(minutes=2))

        claimed = store.claim_deliveries(DeliveryStatus.PENDING, 1, NOW, "pool-a", 300)

        assert [d.id for d in claimed] == [older.id]
        assert newer.id != older.id

    def test_release_claim(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test released rows can be claimed immediately."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        store.claim_deliveries(DeliveryStatus.PENDING, 10, NOW, "pool-a", 300)

        store.release_claim(delivery.id)
        again = store.claim_deliveries(DeliveryStatus.PENDING, 10, NOW, "pool-b", 300)

        assert [d.id for d in again] == [delivery.id]

    def test_claimed_write_applies_for_holder(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test the claim holder can write its result back."""
        webhook, event = seeded
        _delivery(store, webhook, event)
        (claimed,) = store.claim_deliveries(
            DeliveryStatus.PENDING, 10, NOW, "pool-a", 300
        )
        done = claimed.model_copy(
            update={
                "status": DeliveryStatus.DELIVERED,
                "attempts": 1,
                "claimed_by": None,
                "claimed_at": None,
            }
        )

        assert store.update_claimed_delivery(done, "pool-a") is True
        assert store.get_delivery(claimed.id).status == DeliveryStatus.DELIVERED

    def test_claimed_write_refused_after_reclaim(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test a late writer cannot overwrite a row another caller reclaimed."""
        webhook, event = seeded
        _delivery(store, webhook, event)
        (stale,) = store.claim_deliveries(
            DeliveryStatus.PENDING, 10, NOW, "pool-a", 300
        )
        store.claim_deliveries(
            DeliveryStatus.PENDING, 10, NOW + timedelta(seconds=301), "pool-b", 300
        )
        late = stale.model_copy(
            update={"status": DeliveryStatus.RETRYING, "attempts": 1}
        )

        assert store.update_claimed_delivery(late, "pool-a") is False
        current = store.get_delivery(stale.id)
        assert current.status == DeliveryStatus.PENDING
        assert current.claimed_by == "pool-b"
        assert current.attempts == 0

    def test_claimed_write_refused_after_finish(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test a finished row is never reopened by a late result."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event, status=DeliveryStatus.DELIVERED)
        late = delivery.model_copy(update={"status": DeliveryStatus.RETRYING})

        assert store.update_claimed_delivery(late, None) is False
        assert store.get_delivery(delivery.id).status == DeliveryStatus.DELIVERED

    @pytest.mark.parametrize(
        "status",
        [DeliveryStatus.FAILED, DeliveryStatus.ABANDONED, DeliveryStatus.RETRYING],
    )
    def test_reset_for_retry(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
        status: DeliveryStatus,
    ) -> None:
        """Test terminal and retrying rows reset to pending under a new claim."""
        webhook, event = seeded
        delivery = _delivery(
            store,
            webhook,
            event,
            status=status,
            attempts=5,
            error_message="HTTP 500",
            next_retry_at=NOW + timedelta(hours=1),
        )

        reset = store.reset_for_retry(delivery.id, "retry-1", NOW, 300)

        assert reset is not None
        assert reset.status == DeliveryStatus.PENDING
        assert reset.attempts == 0
        assert reset.error_message is None
        assert reset.next_retry_at is None
        assert reset.claimed_by == "retry-1"

    def test_reset_rejects_delivered_and_claimed(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test delivered rows and rows under a live claim are not reset."""
        webhook, event = seeded
        delivered = _delivery(store, webhook, event, status=DeliveryStatus.DELIVERED)
        leased = _delivery(
            store,
            webhook,
            event,
            status=DeliveryStatus.RETRYING,
            claimed_by="pool-a",
            claimed_at=NOW,
        )

        assert store.reset_for_retry(delivered.id, "retry-1", NOW, 300) is None
        assert store.reset_for_retry(leased.id, "retry-1", NOW, 300) is None
        assert store.reset_for_retry("del_missing", "retry-1", NOW, 300) is None

    def test_count_deliveries(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test counts by status."""
        webhook, event = seeded
        _delivery(store, webhook, event)
        _delivery(store, webhook, event, status=DeliveryStatus.DELIVERED)

        assert store.count_deliveries() == 2
        assert store.count_deliveries(DeliveryStatus.DELIVERED) == 1


# =============================================================================
# Logs, maintenance, stats
# =============================================================================


class TestDeliveryLogs:
    """Tests for attempt logs."""

    def test_oldest_first(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test logs list in attempt order."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery, attempt_number=2, attempted_at=NOW + timedelta(seconds=2))
        _log(store, delivery, attempt_number=1, attempted_at=NOW)

        logs = store.list_delivery_logs(delivery.id)

        assert [log.attempt_number for log in logs] == [1, 2]

    def test_attempt_window_queries(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test window counts and the oldest attempt in a window."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery, attempted_at=NOW - timedelta(hours=2))
        _log(store, delivery, attempted_at=NOW - timedelta(minutes=30))
        _log(store, delivery, attempted_at=NOW, is_success=True)

        since = NOW - timedelta(hours=1)

        assert store.count_attempts(webhook.id, since) == 2
        assert store.oldest_attempt_since(webhook.id, since) == NOW - timedelta(
            minutes=30
        )
        assert store.count_failed_attempts(since) == 1
        assert store.oldest_attempt_since("wh_other", since) is None

    def test_webhook_logs_newest_first(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test a webhook's attempts in a window list newest first."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery, attempted_at=NOW - timedelta(hours=2))
        older = _log(store, delivery, attempted_at=NOW - timedelta(minutes=30))
        newer = _log(store, delivery, attempted_at=NOW)

        logs = store.list_webhook_logs(webhook.id, NOW - timedelta(hours=1))
        limited = store.list_webhook_logs(webhook.id, NOW - timedelta(hours=1), limit=1)

        assert [log.id for log in logs] == [newer.id, older.id]
        assert [log.id for log in limited] == [newer.id]

    def test_error_type_breakdown(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test failed attempts in a range are grouped by error type."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery, error_type="timeout")
        _log(store, delivery, error_type="timeout")
        _log(store, delivery, error_type="http_status")
        _log(store, delivery)
        _log(store, delivery, is_success=True)
        stale = NOW - timedelta(days=2)
        _log(store, delivery, error_type="connection", attempted_at=stale)

        breakdown = store.error_type_breakdown(
            webhook.id, NOW - timedelta(hours=1), NOW + timedelta(hours=1)
        )

        assert breakdown == {"timeout": 2, "http_status": 1, "unknown": 1}


class TestMaintenance:
    """Tests for dead-lettering and purges."""

    def test_abandon_stale(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test old failing rows are abandoned and young ones kept."""
        webhook, event = seeded
        cutoff = NOW - timedelta(hours=24)
        stale = _delivery(
            store,
            webhook,
            event,
            status=DeliveryStatus.RETRYING,
            created_at=cutoff - timedelta(hours=1),
        )
        young = _delivery(store, webhook, event, status=DeliveryStatus.FAILED)
        pending = _delivery(
            store, webhook, event, created_at=cutoff - timedelta(hours=1)
        )

        changed = store.abandon_stale_deliveries(cutoff, "too old")

        assert changed == 1
        abandoned = store.get_delivery(stale.id)
        assert abandoned is not None
        assert abandoned.status == DeliveryStatus.ABANDONED
        assert abandoned.error_message == "too old"
        assert store.get_delivery(young.id).status == DeliveryStatus.FAILED
        assert store.get_delivery(pending.id).status == DeliveryStatus.PENDING

    def test_purge_delivered(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test only old delivered rows are purged."""
        webhook, event = seeded
        old = _delivery(
            store,
            webhook,
            event,
            status=DeliveryStatus.DELIVERED,
            updated_at=NOW - timedelta(days=10),
        )
        fresh = _delivery(store, webhook, event, status=DeliveryStatus.DELIVERED)

        assert store.purge_delivered(NOW - timedelta(days=7)) == 1
        assert store.get_delivery(old.id) is None
        assert store.get_delivery(fresh.id) is not None

    def test_purge_logs(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test old logs are purged."""
        webhook, event = seeded
        delivery = _delivery(store, webhook, event)
        _log(store, delivery, attempted_at=NOW - timedelta(days=40))
        _log(store, delivery, attempted_at=NOW)

        assert store.purge_logs(NOW - timedelta(days=30)) == 1
        assert len(store.list_delivery_logs(delivery.id)) == 1

    def test_purge_events_keeps_referenced(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
        make_event: Callable[..., WebhookEvent],
    ) -> None:
        """Test events still referenced by a delivery survive the purge."""
        webhook, referenced = seeded
        orphan = make_event(created_at=NOW - timedelta(days=40))
        store.save_event(orphan)
        _delivery(store, webhook, referenced)

        purged = store.purge_events(datetime.now(timezone.utc) + timedelta(days=1))

        assert purged == 1
        assert store.get_event(orphan.id) is None
        assert store.get_event(referenced.id) is not None


class TestDeliveryStats:
    """Tests for delivery_stats."""

    def test_breakdowns(
        self,
        store: WebhookStoreProtocol,
        seeded: tuple[WebhookRecord, WebhookEvent],
    ) -> None:
        """Test status and event breakdowns with average response time."""
        webhook, event = seeded
        ok = _delivery(store, webhook, event, status=DeliveryStatus.DELIVERED)
        _delivery(store, webhook, event, status=DeliveryStatus.FAILED)
        _delivery(
            store,
            webhook,
            event,
            status=DeliveryStatus.DELIVERED,
            created_at=NOW - timedelta(days=3),
        )
        _log(store, ok, response_time_ms=100.0)
        _log(store, ok, response_time_ms=300.0, attempt_number=2)

        stats = store.delivery_stats(webhook.id, NOW - timedelta(days=1), NOW)

        assert stats.total == 2
        assert stats.status_breakdown == {"delivered": 1, "failed": 1}
        assert stats.event_breakdown == {"document.uploaded": 2}
        assert stats.average_response_time_ms == pytest.approx(200.0)
