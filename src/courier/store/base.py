"""Storage protocol and identifier helpers shared by all backends."""

from __future__ import annotations

import hashlib
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from courier.models import (
        DeliveryLogRecord,
        DeliveryRecord,
        DeliveryStatus,
        ListOptions,
        WebhookEvent,
        WebhookRecord,
    )

__all__ = [
    "DeliveryStats",
    "WebhookStoreProtocol",
    "generate_delivery_id",
    "generate_event_id",
    "generate_log_id",
    "generate_webhook_id",
    "hash_owner_id",
    "to_utc",
]


def generate_webhook_id() -> str:
    """Generate a unique webhook ID."""
    return f"wh_{secrets.token_hex(12)}"


def generate_delivery_id() -> str:
    """Generate a unique delivery ID."""
    return f"del_{secrets.token_hex(12)}"


def generate_log_id() -> str:
    """Generate a unique delivery log ID."""
    return f"log_{secrets.token_hex(12)}"


def generate_event_id(event_type: str) -> str:
    """Generate a unique event ID (``<type>-<epoch ms>-<random hex>``)."""
    return f"{event_type}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def hash_owner_id(owner_id: str) -> str:
    """Hash owner ID for storage (one-way, for lookup only)."""
    return hashlib.sha256(owner_id.encode()).hexdigest()[:16]


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DeliveryStats:
    """Aggregated delivery counts for one webhook over a window."""

    total: int = 0
    status_breakdown: dict[str, int] = field(default_factory=dict)
    event_breakdown: dict[str, int] = field(default_factory=dict)
    average_response_time_ms: float | None = None


class WebhookStoreProtocol(ABC):
    """Protocol for webhook storage backends.

    Lookups do not enforce ownership; services compare ``owner_id`` and
    raise the matching error. Every method is synchronous and safe to call
    from worker threads (``asyncio.to_thread``).
    """

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_webhook(self, record: WebhookRecord) -> WebhookRecord:
        """Insert a new webhook record."""
        ...

    @abstractmethod
    def get_webhook(self, webhook_id: str) -> WebhookRecord | None:
        """Get webhook by ID."""
        ...

    @abstractmethod
    def update_webhook(self, record: WebhookRecord) -> WebhookRecord:
        """Replace a stored webhook record."""
        ...

    @abstractmethod
    def delete_webhook(self, webhook_id: str) -> bool:
        """Delete a webhook with its deliveries and their logs.

        Returns True if the webhook existed.
        """
        ...

    @abstractmethod
    def list_webhooks(
        self, owner_id: str | None, options: ListOptions
    ) -> tuple[list[WebhookRecord], int]:
        """List one page of an owner's webhooks.

        Returns:
            Tuple of (page items, total matching webhooks)
        """
        ...

    @abstractmethod
    def find_matching_webhooks(
        self, event_type: str, owner_id: str | None = None
    ) -> list[WebhookRecord]:
        """Get active webhooks subscribed to an event type.

        Restricted to ``owner_id``'s webhooks when one is given. Payload
        filters are evaluated by the caller.
        """
        ...

    @abstractmethod
    def set_last_delivery(self, webhook_id: str, when: datetime) -> None:
        """Record when a webhook last received a delivery attempt."""
        ...

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    @abstractmethod
    def save_event(self, event: WebhookEvent) -> None:
        """Persist an event (events are never updated)."""
        ...

    @abstractmethod
    def get_event(self, event_id: str) -> WebhookEvent | None:
        """Get an event by ID."""
        ...

    # -------------------------------------------------------------------------
    # Deliveries
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        """Insert a new delivery record."""
        ...

    @abstractmethod
    def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        """Get a delivery record by ID."""
        ...

    @abstractmethod
    def update_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        """Replace a stored delivery record."""
        ...

    @abstractmethod
    def update_claimed_delivery(
        self, record: DeliveryRecord, owner: str | None
    ) -> bool:
        """Write back a delivery only while ``owner`` still holds its claim.

        The write applies when the stored row is still claimed by ``owner``
        (unclaimed when ``owner`` is None) and is still pending or retrying.

        Returns:
            False when the claim was lost and nothing was written
        """
        ...

    @abstractmethod
    def list_deliveries(
        self,
        webhook_id: str | None = None,
        status: DeliveryStatus | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        """List deliveries, newest first."""
        ...

    @abstractmethod
    def list_event_deliveries(self, event_id: str) -> list[DeliveryRecord]:
        """List every delivery fanned out for one event, oldest first."""
        ...

    @abstractmethod
    def claim_deliveries(
        self,
        status: DeliveryStatus,
        limit: int,
        now: datetime,
        owner: str,
        lease_seconds: int,
    ) -> list[DeliveryRecord]:
        """Atomically reserve due deliveries for one caller.

        Selects rows in ``status`` whose ``next_retry_at`` is empty or not
        after ``now`` and whose claim is empty or older than the lease,
        oldest ``created_at`` first, and stamps them with ``owner``.

        Returns:
            Only the rows this caller won
        """
        ...

    @abstractmethod
    def release_claim(self, delivery_id: str) -> None:
        """Clear the claim lease on a delivery."""
        ...

    @abstractmethod
    def reset_for_retry(
        self,
        delivery_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
    ) -> DeliveryRecord | None:
        """Reset a failed, abandoned or retrying delivery to pending.

        Clears the error, zeroes the attempt counter and hands the claim to
        ``owner`` in one write. Returns None when the row is missing, in
        another status, or leased by someone else.
        """
        ...

    @abstractmethod
    def count_deliveries(self, status: DeliveryStatus | None = None) -> int:
        """Count deliveries, optionally in one status."""
        ...

    # -------------------------------------------------------------------------
    # Delivery logs
    # -------------------------------------------------------------------------

    @abstractmethod
    def add_delivery_log(self, log: DeliveryLogRecord) -> None:
        """Append one attempt log row."""
        ...

    @abstractmethod
    def list_delivery_logs(
        self, delivery_id: str, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        """List attempt logs of a delivery, oldest first."""
        ...

    @abstractmethod
    def count_attempts(self, webhook_id: str, since: datetime) -> int:
        """Count logged attempts for a webhook since a point in time."""
        ...

    @abstractmethod
    def oldest_attempt_since(self, webhook_id: str, since: datetime) -> datetime | None:
        """Timestamp of the oldest logged attempt for a webhook since a point."""
        ...

    @abstractmethod
    def count_failed_attempts(self, since: datetime) -> int:
        """Count unsuccessful logged attempts across all webhooks."""
        ...

    @abstractmethod
    def list_webhook_logs(
        self, webhook_id: str, since: datetime, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        """Attempts of one webhook at or after ``since``, newest first."""
        ...

    @abstractmethod
    def error_type_breakdown(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> dict[str, int]:
        """Failed attempts of one webhook in ``[start, end]`` by error type.

        Attempts logged without an error type count under ``unknown``.
        """
        ...

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    @abstractmethod
    def abandon_stale_deliveries(self, before: datetime, reason: str) -> int:
        """Move failed/retrying deliveries created before a cutoff to abandoned.

        Rows under a live claim taken after the cutoff are skipped.
        Returns the number of rows changed.
        """
        ...

    @abstractmethod
    def purge_delivered(self, before: datetime) -> int:
        """Delete delivered deliveries last updated before a cutoff."""
        ...

    @abstractmethod
    def purge_logs(self, before: datetime) -> int:
        """Delete delivery logs older than a cutoff."""
        ...

    @abstractmethod
    def purge_events(self, before: datetime) -> int:
        """Delete events older than a cutoff that no delivery references."""
        ...

    @abstractmethod
    def delivery_stats(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> DeliveryStats:
        """Aggregate deliveries of a webhook created within ``[start, end]``."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        return None
