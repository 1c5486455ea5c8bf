"""Webhook storage backends.

Provides persistent storage for webhooks, events, deliveries and delivery
logs behind one protocol.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from courier.store.base import (
    DeliveryStats,
    WebhookStoreProtocol,
    generate_delivery_id,
    generate_event_id,
    generate_log_id,
    generate_webhook_id,
    hash_owner_id,
    to_utc,
)
from courier.store.memory import MemoryWebhookStore
from courier.store.sqlite import SQLiteWebhookStore

if TYPE_CHECKING:
    from courier.config import CourierConfig

__all__ = [
    "DeliveryStats",
    "MemoryWebhookStore",
    "SQLiteWebhookStore",
    "WebhookStoreProtocol",
    "create_store",
    "generate_delivery_id",
    "generate_event_id",
    "generate_log_id",
    "generate_webhook_id",
    "hash_owner_id",
    "to_utc",
]

logger = logging.getLogger(__name__)


def create_store(config: CourierConfig) -> WebhookStoreProtocol:
    """Build the storage backend selected by configuration."""
    if config.storage == "memory":
        logger.info("Webhook store: Using in-memory storage")
        return MemoryWebhookStore()

    logger.info(f"Webhook store: SQLite ({config.database_path})")
    return SQLiteWebhookStore(config.database_path)
