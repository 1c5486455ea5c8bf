"""In-memory webhook storage (non-persistent, for development/testing)."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from courier.models import DeliveryStatus, utc_now
from courier.store.base import DeliveryStats, WebhookStoreProtocol, to_utc

if TYPE_CHECKING:
    from courier.models import (
        DeliveryLogRecord,
        DeliveryRecord,
        ListOptions,
        WebhookEvent,
        WebhookRecord,
    )

__all__ = ["MemoryWebhookStore"]

_RESETTABLE = (DeliveryStatus.FAILED, DeliveryStatus.ABANDONED, DeliveryStatus.RETRYING)
_IN_FLIGHT = (DeliveryStatus.PENDING, DeliveryStatus.RETRYING)


def _claim_expired(record: DeliveryRecord, now: datetime, lease_seconds: int) -> bool:
    if record.claimed_by is None or record.claimed_at is None:
        return True
    return record.claimed_at <= now - timedelta(seconds=lease_seconds)


class MemoryWebhookStore(WebhookStoreProtocol):
    """In-memory webhook storage.

    Records are copied on the way in and out so callers never share
    mutable state with the store. A lock makes claims atomic.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._webhooks: dict[str, WebhookRecord] = {}
        self._events: dict[str, WebhookEvent] = {}
        self._deliveries: dict[str, DeliveryRecord] = {}
        self._logs: dict[str, DeliveryLogRecord] = {}

    # Webhooks

    def create_webhook(self, record: WebhookRecord) -> WebhookRecord:
        with self._lock:
            self._webhooks[record.id] = record.model_copy(deep=True)
        return record

    def get_webhook(self, webhook_id: str) -> WebhookRecord | None:
        with self._lock:
            record = self._webhooks.get(webhook_id)
            return record.model_copy(deep=True) if record else None

    def update_webhook(self, record: WebhookRecord) -> WebhookRecord:
        with self._lock:
            self._webhooks[record.id] = record.model_copy(deep=True)
        return record

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._lock:
            if self._webhooks.pop(webhook_id, None) is None:
                return False
            delivery_ids = {
                d.id for d in self._deliveries.values() if d.webhook_id == webhook_id
            }
            for delivery_id in delivery_ids:
                del self._deliveries[delivery_id]
            self._logs = {
                log_id: log
                for log_id, log in self._logs.items()
                if log.delivery_id not in delivery_ids
            }
            return True

    def list_webhooks(
        self, owner_id: str | None, options: ListOptions
    ) -> tuple[list[WebhookRecord], int]:
        with self._lock:
            records = [
                r
                for r in self._webhooks.values()
                if (owner_id is None or r.owner_id == owner_id)
                and (options.is_active is None or r.is_active == options.is_active)
                and (options.auth_type is None or r.auth_type == options.auth_type)
                and (options.url is None or r.url == options.url)
                and (options.name is None or r.name == options.name)
                and (options.event_type is None or options.event_type in r.event_types)
            ]
            records.sort(
                key=lambda r: getattr(r, options.sort_by),
                reverse=options.sort_order == "desc",
            )
            offset = (options.page - 1) * options.limit
            page = records[offset : offset + options.limit]
            return [r.model_copy(deep=True) for r in page], len(records)

    def find_matching_webhooks(
        self, event_type: str, owner_id: str | None = None
    ) -> list[WebhookRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._webhooks.values()
                if r.is_active
                and event_type in r.event_types
                and (owner_id is None or r.owner_id == owner_id)
            ]

    def set_last_delivery(self, webhook_id: str, when: datetime) -> None:
        with self._lock:
            record = self._webhooks.get(webhook_id)
            if record:
                record.last_delivery_at = to_utc(when)

    # Events

    def save_event(self, event: WebhookEvent) -> None:
        with self._lock:
            self._events[event.id] = event.model_copy(deep=True)

    def get_event(self, event_id: str) -> WebhookEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    # Deliveries

    def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        with self._lock:
            self._deliveries[record.id] = record.model_copy(deep=True)
        return record

    def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        with self._lock:
            record = self._deliveries.get(delivery_id)
            return record.model_copy(deep=True) if record else None

    def update_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        with self._lock:
            self._deliveries[record.id] = record.model_copy(deep=True)
        return record

    def update_claimed_delivery(
        self, record: DeliveryRecord, owner: str | None
    ) -> bool:
        with self._lock:
            current = self._deliveries.get(record.id)
            if (
                current is None
                or current.claimed_by != owner
                or current.status not in _IN_FLIGHT
            ):
                return False
            self._deliveries[record.id] = record.model_copy(deep=True)
        return True

    def list_deliveries(
        self,
        webhook_id: str | None = None,
        status: DeliveryStatus | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        with self._lock:
            records = [
                d
                for d in self._deliveries.values()
                if (webhook_id is None or d.webhook_id == webhook_id)
                and (status is None or d.status == status)
                and (since is None or d.created_at >= to_utc(since))
            ]
            records.sort(key=lambda d: d.created_at, reverse=True)
            return [d.model_copy(deep=True) for d in records[:limit]]

    def list_event_deliveries(self, event_id: str) -> list[DeliveryRecord]:
        with self._lock:
            records = [d for d in self._deliveries.values() if d.event_id == event_id]
            records.sort(key=lambda d: d.created_at)
            return [d.model_copy(deep=True) for d in records]

    def claim_deliveries(
        self,
        status: DeliveryStatus,
        limit: int,
        now: datetime,
        owner: str,
        lease_seconds: int,
    ) -> list[DeliveryRecord]:
        now = to_utc(now)
        with self._lock:
            due = [
                d
                for d in self._deliveries.values()
                if d.status == status
                and (d.next_retry_at is None or d.next_retry_at <= now)
                and _claim_expired(d, now, lease_seconds)
            ]
            due.sort(key=lambda d: d.created_at)
            claimed = []
            for record in due[:limit]:
                record.claimed_by = owner
                record.claimed_at = now
                claimed.append(record.model_copy(deep=True))
            return claimed

    def release_claim(self, delivery_id: str) -> None:
        with self._lock:
            record = self._deliveries.get(delivery_id)
            if record:
                record.claimed_by = None
                record.claimed_at = None

    def reset_for_retry(
        self,
        delivery_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
    ) -> DeliveryRecord | None:
        now = to_utc(now)
        with self._lock:
            record = self._deliveries.get(delivery_id)
            if record is None or record.status not in _RESETTABLE:
                return None
            if not _claim_expired(record, now, lease_seconds):
                return None
            record.status = DeliveryStatus.PENDING
            record.attempts = 0
            record.error_message = None
            record.next_retry_at = None
            record.updated_at = now
            record.claimed_by = owner
            record.claimed_at = now
            return record.model_copy(deep=True)

    def count_deliveries(self, status: DeliveryStatus | None = None) -> int:
        with self._lock:
            return sum(
                1
                for d in self._deliveries.values()
                if status is None or d.status == status
            )

    # Delivery logs

    def add_delivery_log(self, log: DeliveryLogRecord) -> None:
        with self._lock:
            self._logs[log.id] = log.model_copy(deep=True)

    def list_delivery_logs(
        self, delivery_id: str, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        with self._lock:
            logs = [log for log in self._logs.values() if log.delivery_id == delivery_id]
            logs.sort(key=lambda log: (log.attempted_at, log.attempt_number))
            return [log.model_copy(deep=True) for log in logs[:limit]]

    def count_attempts(self, webhook_id: str, since: datetime) -> int:
        since = to_utc(since)
        with self._lock:
            return sum(
                1
                for log in self._logs.values()
                if log.webhook_id == webhook_id and log.attempted_at >= since
            )

    def oldest_attempt_since(self, webhook_id: str, since: datetime) -> datetime | None:
        since = to_utc(since)
        with self._lock:
            times = [
                log.attempted_at
                for log in self._logs.values()
                if log.webhook_id == webhook_id and log.attempted_at >= since
            ]
            return min(times) if times else None

    def count_failed_attempts(self, since: datetime) -> int:
        since = to_utc(since)
        with self._lock:
            return sum(
                1
                for log in self._logs.values()
                if not log.is_success and log.attempted_at >= since
            )

    def list_webhook_logs(
        self, webhook_id: str, since: datetime, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        since = to_utc(since)
        with self._lock:
            logs = [
                log
                for log in self._logs.values()
                if log.webhook_id == webhook_id and log.attempted_at >= since
            ]
            logs.sort(key=lambda log: log.attempted_at, reverse=True)
            return [log.model_copy(deep=True) for log in logs[:limit]]

    def error_type_breakdown(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> dict[str, int]:
        start, end = to_utc(start), to_utc(end)
        breakdown: dict[str, int] = {}
        with self._lock:
            for log in self._logs.values():
                if log.webhook_id != webhook_id or log.is_success:
                    continue
                if not start <= log.attempted_at <= end:
                    continue
                error_type = log.error_type or "unknown"
                breakdown[error_type] = breakdown.get(error_type, 0) + 1
        return breakdown

    # Maintenance

    def abandon_stale_deliveries(self, before: datetime, reason: str) -> int:
        before = to_utc(before)
        count = 0
        with self._lock:
            for record in self._deliveries.values():
                if record.status not in (DeliveryStatus.FAILED, DeliveryStatus.RETRYING):
                    continue
                if record.created_at >= before:
                    continue
                if record.claimed_at is not None and record.claimed_at >= before:
                    continue
                record.status = DeliveryStatus.ABANDONED
                record.error_message = reason
                record.next_retry_at = None
                record.claimed_by = None
                record.claimed_at = None
                record.updated_at = utc_now()
                count += 1
        return count

    def purge_delivered(self, before: datetime) -> int:
        before = to_utc(before)
        with self._lock:
            doomed = {
                d.id
                for d in self._deliveries.values()
                if d.status == DeliveryStatus.DELIVERED and d.updated_at < before
            }
            for delivery_id in doomed:
                del self._deliveries[delivery_id]
            self._logs = {
                log_id: log
                for log_id, log in self._logs.items()
                if log.delivery_id not in doomed
            }
            return len(doomed)

    def purge_logs(self, before: datetime) -> int:
        before = to_utc(before)
        with self._lock:
            doomed = [
                log_id
                for log_id, log in self._logs.items()
                if log.attempted_at < before
            ]
            for log_id in doomed:
                del self._logs[log_id]
            return len(doomed)

    def purge_events(self, before: datetime) -> int:
        before = to_utc(before)
        with self._lock:
            referenced = {d.event_id for d in self._deliveries.values()}
            doomed = [
                event_id
                for event_id, event in self._events.items()
                if event.created_at < before and event_id not in referenced
            ]
            for event_id in doomed:
                del self._events[event_id]
            return len(doomed)

    def delivery_stats(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> DeliveryStats:
        start, end = to_utc(start), to_utc(end)
        stats = DeliveryStats()
        with self._lock:
            for record in self._deliveries.values():
                if record.webhook_id != webhook_id:
                    continue
                if not start <= record.created_at <= end:
                    continue
                stats.total += 1
                status = record.status.value
                stats.status_breakdown[status] = stats.status_breakdown.get(status, 0) + 1
                stats.event_breakdown[record.event_type] = (
                    stats.event_breakdown.get(record.event_type, 0) + 1
                )
            times = [
                log.response_time_ms
                for log in self._logs.values()
                if log.webhook_id == webhook_id
                and log.response_time_ms is not None
                and start <= log.attempted_at <= end
            ]
        if times:
            stats.average_response_time_ms = sum(times) / len(times)
        return stats
