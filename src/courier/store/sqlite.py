"""SQLite persistence for webhooks, events, deliveries and delivery logs.

Features:
    - Schema versioning for future migrations
    - Foreign keys with cascading deletes (webhook -> deliveries -> logs)
    - WAL mode for concurrent readers
    - Atomic delivery claims inside ``BEGIN IMMEDIATE`` transactions

Timestamps are stored as fixed-width ISO 8601 UTC strings so that string
comparison in SQL matches chronological order.

Example:
    >>> store = SQLiteWebhookStore("~/.courier/webhooks.db")
    >>> store.create_webhook(record)
    >>> store.claim_deliveries(DeliveryStatus.PENDING, 10, utc_now(), "worker-1", 300)
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any

from courier.errors import StoreError
from courier.models import (
    DeliveryLogRecord,
    DeliveryRecord,
    DeliveryStatus,
    WebhookEvent,
    WebhookRecord,
    utc_now,
)
from courier.store.base import DeliveryStats, WebhookStoreProtocol, to_utc

if TYPE_CHECKING:
    from collections.abc import Iterator

    from courier.models import ListOptions

__all__ = ["SQLiteWebhookStore"]

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY
    );

    CREATE TABLE IF NOT EXISTS webhooks (
        id TEXT PRIMARY KEY,
        owner_id TEXT,
        name TEXT NOT NULL,
        description TEXT,
        url TEXT NOT NULL,
        event_types TEXT NOT NULL,
        filters TEXT,
        auth TEXT NOT NULL,
        auth_type TEXT NOT NULL,
        headers TEXT NOT NULL DEFAULT '{}',
        payload_template TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        timeout_seconds INTEGER NOT NULL,
        max_attempts INTEGER NOT NULL,
        backoff_multiplier REAL NOT NULL,
        max_backoff_seconds INTEGER NOT NULL,
        rate_limit_per_hour INTEGER NOT NULL,
        rate_limit_per_day INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        last_delivery_at TEXT
    );

    CREATE TABLE IF NOT EXISTS webhook_events (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        user_id TEXT,
        resource_id TEXT,
        resource_type TEXT,
        payload TEXT NOT NULL DEFAULT '{}',
        metadata TEXT NOT NULL DEFAULT '{}',
        owner_id TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        id TEXT PRIMARY KEY,
        webhook_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        next_retry_at TEXT,
        response_status INTEGER,
        response_body TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        delivered_at TEXT,
        claimed_by TEXT,
        claimed_at TEXT,
        FOREIGN KEY (webhook_id) REFERENCES webhooks(id) ON DELETE CASCADE,
        FOREIGN KEY (event_id) REFERENCES webhook_events(id)
    );

    CREATE TABLE IF NOT EXISTS webhook_delivery_logs (
        id TEXT PRIMARY KEY,
        delivery_id TEXT NOT NULL,
        webhook_id TEXT NOT NULL,
        attempt_number INTEGER NOT NULL,
        request_url TEXT NOT NULL,
        request_headers TEXT NOT NULL DEFAULT '{}',
        request_body_size INTEGER NOT NULL DEFAULT 0,
        response_status INTEGER,
        response_headers TEXT NOT NULL DEFAULT '{}',
        response_body TEXT,
        response_time_ms REAL,
        error_type TEXT,
        error_message TEXT,
        is_success INTEGER NOT NULL DEFAULT 0,
        attempted_at TEXT NOT NULL,
        FOREIGN KEY (delivery_id) REFERENCES webhook_deliveries(id)
            ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_webhooks_owner
        ON webhooks(owner_id);
    CREATE INDEX IF NOT EXISTS idx_deliveries_due
        ON webhook_deliveries(status, next_retry_at, created_at);
    CREATE INDEX IF NOT EXISTS idx_deliveries_webhook
        ON webhook_deliveries(webhook_id, created_at DESC);
    CREATE INDEX IF NOT EXISTS idx_deliveries_event
        ON webhook_deliveries(event_id);
    CREATE INDEX IF NOT EXISTS idx_logs_delivery
        ON webhook_delivery_logs(delivery_id);
    CREATE INDEX IF NOT EXISTS idx_logs_webhook_time
        ON webhook_delivery_logs(webhook_id, attempted_at);
    CREATE INDEX IF NOT EXISTS idx_logs_time
        ON webhook_delivery_logs(attempted_at);
"""

_WEBHOOK_COLUMNS = (
    "id",
    "owner_id",
    "name",
    "description",
    "url",
    "event_types",
    "filters",
    "auth",
    "auth_type",
    "headers",
    "payload_template",
    "is_active",
    "timeout_seconds",
    "max_attempts",
    "backoff_multiplier",
    "max_backoff_seconds",
    "rate_limit_per_hour",
    "rate_limit_per_day",
    "created_at",
    "updated_at",
    "last_delivery_at",
)

_DELIVERY_COLUMNS = (
    "id",
    "webhook_id",
    "event_id",
    "event_type",
    "status",
    "attempts",
    "max_attempts",
    "next_retry_at",
    "response_status",
    "response_body",
    "error_message",
    "created_at",
    "updated_at",
    "delivered_at",
    "claimed_by",
    "claimed_at",
)

_RESETTABLE = ("failed", "abandoned", "retrying")
_IN_FLIGHT = ("pending", "retrying")


def _ts(value: datetime | None) -> str | None:
    """Format a datetime as a fixed-width UTC ISO string."""
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def _json(value: Any) -> str | None:
    return None if value is None else json.dumps(value)


def _load(value: str | None) -> Any:
    return None if value is None else json.loads(value)


class SQLiteWebhookStore(WebhookStoreProtocol):
    """SQLite-backed webhook storage.

    Each operation opens its own connection; a process-wide lock serializes
    them so the store can be shared by worker threads. ``":memory:"`` maps
    to a private shared-cache database kept alive for the store's lifetime.

    Attributes:
        db_path: Path to the SQLite database file (None for in-memory)
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str = "~/.courier/webhooks.db") -> None:
        """Initialize database connection and schema.

        Args:
            db_path: Path to SQLite database file, or ":memory:"

        Raises:
            StoreError: If database initialization fails
        """
        self._lock = threading.RLock()
        self._anchor: sqlite3.Connection | None = None

        if str(db_path) == ":memory:":
            self.db_path: Path | None = None
            self._target = f"file:courier-{secrets.token_hex(8)}?mode=memory&cache=shared"
            self._uri = True
            self._anchor = sqlite3.connect(
                self._target, uri=True, check_same_thread=False
            )
        else:
            self.db_path = Path(db_path).expanduser().resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._target = str(self.db_path)
            self._uri = False

        try:
            self._init_schema()
        except Exception as e:
            raise StoreError(f"Failed to initialize database: {e}") from e

    def _init_schema(self) -> None:
        """Create tables and indexes, record the schema version."""
        with self._connect() as conn:
            # Enable WAL mode for better concurrent access
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)

            cursor = conn.execute("SELECT version FROM schema_version")
            if cursor.fetchone() is None:
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,),
                )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                conn = sqlite3.connect(
                    self._target,
                    uri=self._uri,
                    timeout=30.0,
                    isolation_level=None,
                )
            except sqlite3.Error as e:
                raise StoreError(f"Failed to open database: {e}") from e
            conn.row_factory = sqlite3.Row
            try:
                # Enable foreign keys (required for CASCADE)
                conn.execute("PRAGMA foreign_keys=ON")
                yield conn
            except sqlite3.Error as e:
                raise StoreError(f"Database operation failed: {e}") from e
            finally:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _webhook_values(record: WebhookRecord) -> tuple[Any, ...]:
        return (
            record.id,
            record.owner_id,
            record.name,
            record.description,
            record.url,
            json.dumps(record.event_types),
            _json(record.filters),
            record.auth.model_dump_json(),
            record.auth.type,
            json.dumps(record.headers),
            _json(record.payload_template),
            int(record.is_active),
            record.timeout_seconds,
            record.max_attempts,
            record.backoff_multiplier,
            record.max_backoff_seconds,
            record.rate_limit_per_hour,
            record.rate_limit_per_day,
            _ts(record.created_at),
            _ts(record.updated_at),
            _ts(record.last_delivery_at),
        )

    @staticmethod
    def _row_to_webhook(row: sqlite3.Row) -> WebhookRecord:
        data = dict(row)
        data.pop("auth_type", None)
        data["event_types"] = json.loads(data["event_types"])
        data["filters"] = _load(data["filters"])
        data["auth"] = json.loads(data["auth"])
        data["headers"] = json.loads(data["headers"])
        data["payload_template"] = _load(data["payload_template"])
        data["is_active"] = bool(data["is_active"])
        return WebhookRecord.model_validate(data)

    @staticmethod
    def _delivery_values(record: DeliveryRecord) -> tuple[Any, ...]:
        return (
            record.id,
            record.webhook_id,
            record.event_id,
            record.event_type,
            record.status.value,
            record.attempts,
            record.max_attempts,
            _ts(record.next_retry_at),
            record.response_status,
            record.response_body,
            record.error_message,
            _ts(record.created_at),
            _ts(record.updated_at),
            _ts(record.delivered_at),
            record.claimed_by,
            _ts(record.claimed_at),
        )

    @staticmethod
    def _row_to_delivery(row: sqlite3.Row) -> DeliveryRecord:
        return DeliveryRecord.model_validate(dict(row))

    @staticmethod
    def _row_to_log(row: sqlite3.Row) -> DeliveryLogRecord:
        data = dict(row)
        data["request_headers"] = json.loads(data["request_headers"])
        data["response_headers"] = json.loads(data["response_headers"])
        data["is_success"] = bool(data["is_success"])
        return DeliveryLogRecord.model_validate(data)

    # =========================================================================
    # Webhooks
    # =========================================================================

    def create_webhook(self, record: WebhookRecord) -> WebhookRecord:
        placeholders = ", ".join("?" for _ in _WEBHOOK_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO webhooks ({', '.join(_WEBHOOK_COLUMNS)}) "
                f"VALUES ({placeholders})",
                self._webhook_values(record),
            )
        return record

    def get_webhook(self, webhook_id: str) -> WebhookRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhooks WHERE id = ?", (webhook_id,)
            ).fetchone()
        return self._row_to_webhook(row) if row else None

    def update_webhook(self, record: WebhookRecord) -> WebhookRecord:
        assignments = ", ".join(f"{col} = ?" for col in _WEBHOOK_COLUMNS[1:])
        values = self._webhook_values(record)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE webhooks SET {assignments} WHERE id = ?",
                (*values[1:], record.id),
            )
        return record

    def delete_webhook(self, webhook_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted webhook {webhook_id}")
        return deleted

    def list_webhooks(
        self, owner_id: str | None, options: ListOptions
    ) -> tuple[list[WebhookRecord], int]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        if options.is_active is not None:
            clauses.append("is_active = ?")
            params.append(int(options.is_active))
        if options.auth_type is not None:
            clauses.append("auth_type = ?")
            params.append(options.auth_type.value)
        if options.url is not None:
            clauses.append("url = ?")
            params.append(options.url)
        if options.name is not None:
            clauses.append("name = ?")
            params.append(options.name)
        if options.event_type is not None:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(webhooks.event_types) WHERE value = ?)"
            )
            params.append(options.event_type)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        direction = "DESC" if options.sort_order == "desc" else "ASC"
        offset = (options.page - 1) * options.limit

        with self._connect() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM webhooks {where}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM webhooks {where} "
                f"ORDER BY {options.sort_by} {direction}, id {direction} "
                "LIMIT ? OFFSET ?",
                (*params, options.limit, offset),
            ).fetchall()
        return [self._row_to_webhook(row) for row in rows], int(total)

    def find_matching_webhooks(
        self, event_type: str, owner_id: str | None = None
    ) -> list[WebhookRecord]:
        query = (
            "SELECT * FROM webhooks WHERE is_active = 1 AND EXISTS "
            "(SELECT 1 FROM json_each(webhooks.event_types) WHERE value = ?)"
        )
        params: list[Any] = [event_type]
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at", params).fetchall()
        return [self._row_to_webhook(row) for row in rows]

    def set_last_delivery(self, webhook_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhooks SET last_delivery_at = ? WHERE id = ?",
                (_ts(when), webhook_id),
            )

    # =========================================================================
    # Events
    # =========================================================================

    def save_event(self, event: WebhookEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO webhook_events (id, type, user_id, resource_id, "
                "resource_type, payload, metadata, owner_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.id,
                    event.type,
                    event.user_id,
                    event.resource_id,
                    event.resource_type,
                    json.dumps(event.payload),
                    json.dumps(event.metadata),
                    event.owner_id,
                    _ts(event.created_at),
                ),
            )

    def get_event(self, event_id: str) -> WebhookEvent | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_events WHERE id = ?", (event_id,)
            ).fetchone()
        if row is None:
            return None
        data = dict(row)
        data["payload"] = json.loads(data["payload"])
        data["metadata"] = json.loads(data["metadata"])
        return WebhookEvent.model_validate(data)

    # =========================================================================
    # Deliveries
    # =========================================================================

    def create_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        placeholders = ", ".join("?" for _ in _DELIVERY_COLUMNS)
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO webhook_deliveries ({', '.join(_DELIVERY_COLUMNS)}) "
                f"VALUES ({placeholders})",
                self._delivery_values(record),
            )
        return record

    def get_delivery(self, delivery_id: str) -> DeliveryRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_deliveries WHERE id = ?", (delivery_id,)
            ).fetchone()
        return self._row_to_delivery(row) if row else None

    def update_delivery(self, record: DeliveryRecord) -> DeliveryRecord:
        assignments = ", ".join(f"{col} = ?" for col in _DELIVERY_COLUMNS[1:])
        values = self._delivery_values(record)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE webhook_deliveries SET {assignments} WHERE id = ?",
                (*values[1:], record.id),
            )
        return record

    def update_claimed_delivery(
        self, record: DeliveryRecord, owner: str | None
    ) -> bool:
        assignments = ", ".join(f"{col} = ?" for col in _DELIVERY_COLUMNS[1:])
        values = self._delivery_values(record)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE webhook_deliveries SET {assignments} "
                "WHERE id = ? AND claimed_by IS ? AND status IN (?, ?)",
                (*values[1:], record.id, owner, *_IN_FLIGHT),
            )
        return cursor.rowcount == 1

    def list_deliveries(
        self,
        webhook_id: str | None = None,
        status: DeliveryStatus | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if webhook_id is not None:
            clauses.append("webhook_id = ?")
            params.append(webhook_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM webhook_deliveries {where} "
                "ORDER BY created_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [self._row_to_delivery(row) for row in rows]

    def list_event_deliveries(self, event_id: str) -> list[DeliveryRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_deliveries WHERE event_id = ? "
                "ORDER BY created_at",
                (event_id,),
            ).fetchall()
        return [self._row_to_delivery(row) for row in rows]

    def claim_deliveries(
        self,
        status: DeliveryStatus,
        limit: int,
        now: datetime,
        owner: str,
        lease_seconds: int,
    ) -> list[DeliveryRecord]:
        now_ts = _ts(now)
        lease_cutoff = _ts(to_utc(now) - timedelta(seconds=lease_seconds))
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM webhook_deliveries "
                "WHERE status = ? "
                "AND (next_retry_at IS NULL OR next_retry_at <= ?) "
                "AND (claimed_by IS NULL OR claimed_at IS NULL OR claimed_at <= ?) "
                "ORDER BY created_at ASC LIMIT ?",
                (status.value, now_ts, lease_cutoff, limit),
            ).fetchall()
            ids = [row["id"] for row in rows]
            if not ids:
                return []
            conn.executemany(
                "UPDATE webhook_deliveries SET claimed_by = ?, claimed_at = ? "
                "WHERE id = ?",
                [(owner, now_ts, delivery_id) for delivery_id in ids],
            )
            placeholders = ", ".join("?" for _ in ids)
            claimed = conn.execute(
                f"SELECT * FROM webhook_deliveries WHERE id IN ({placeholders}) "
                "ORDER BY created_at ASC",
                ids,
            ).fetchall()
        return [self._row_to_delivery(row) for row in claimed]

    def release_claim(self, delivery_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhook_deliveries SET claimed_by = NULL, claimed_at = NULL "
                "WHERE id = ?",
                (delivery_id,),
            )

    def reset_for_retry(
        self,
        delivery_id: str,
        owner: str,
        now: datetime,
        lease_seconds: int,
    ) -> DeliveryRecord | None:
        now_ts = _ts(now)
        lease_cutoff = _ts(to_utc(now) - timedelta(seconds=lease_seconds))
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE webhook_deliveries SET status = 'pending', attempts = 0, "
                "error_message = NULL, next_retry_at = NULL, updated_at = ?, "
                "claimed_by = ?, claimed_at = ? "
                "WHERE id = ? AND status IN (?, ?, ?) "
                "AND (claimed_by IS NULL OR claimed_at IS NULL OR claimed_at <= ?)",
                (now_ts, owner, now_ts, delivery_id, *_RESETTABLE, lease_cutoff),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM webhook_deliveries WHERE id = ?", (delivery_id,)
            ).fetchone()
        return self._row_to_delivery(row)

    def count_deliveries(self, status: DeliveryStatus | None = None) -> int:
        with self._connect() as conn:
            if status is None:
                row = conn.execute("SELECT COUNT(*) FROM webhook_deliveries").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM webhook_deliveries WHERE status = ?",
                    (status.value,),
                ).fetchone()
        return int(row[0])

    # =========================================================================
    # Delivery logs
    # =========================================================================

    def add_delivery_log(self, log: DeliveryLogRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO webhook_delivery_logs (id, delivery_id, webhook_id, "
                "attempt_number, request_url, request_headers, request_body_size, "
                "response_status, response_headers, response_body, response_time_ms, "
                "error_type, error_message, is_success, attempted_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    log.id,
                    log.delivery_id,
                    log.webhook_id,
                    log.attempt_number,
                    log.request_url,
                    json.dumps(log.request_headers),
                    log.request_body_size,
                    log.response_status,
                    json.dumps(log.response_headers),
                    log.response_body,
                    log.response_time_ms,
                    log.error_type,
                    log.error_message,
                    int(log.is_success),
                    _ts(log.attempted_at),
                ),
            )

    def list_delivery_logs(
        self, delivery_id: str, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_delivery_logs WHERE delivery_id = ? "
                "ORDER BY attempted_at ASC, attempt_number ASC LIMIT ?",
                (delivery_id, limit),
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def count_attempts(self, webhook_id: str, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM webhook_delivery_logs "
                "WHERE webhook_id = ? AND attempted_at >= ?",
                (webhook_id, _ts(since)),
            ).fetchone()
        return int(row[0])

    def oldest_attempt_since(self, webhook_id: str, since: datetime) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(attempted_at) FROM webhook_delivery_logs "
                "WHERE webhook_id = ? AND attempted_at >= ?",
                (webhook_id, _ts(since)),
            ).fetchone()
        if row[0] is None:
            return None
        return to_utc(datetime.fromisoformat(row[0]))

    def count_failed_attempts(self, since: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM webhook_delivery_logs "
                "WHERE is_success = 0 AND attempted_at >= ?",
                (_ts(since),),
            ).fetchone()
        return int(row[0])

    def list_webhook_logs(
        self, webhook_id: str, since: datetime, limit: int = 100
    ) -> list[DeliveryLogRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM webhook_delivery_logs "
                "WHERE webhook_id = ? AND attempted_at >= ? "
                "ORDER BY attempted_at DESC LIMIT ?",
                (webhook_id, _ts(since), limit),
            ).fetchall()
        return [self._row_to_log(row) for row in rows]

    def error_type_breakdown(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT COALESCE(error_type, 'unknown') AS error_type, "
                "COUNT(*) AS n FROM webhook_delivery_logs "
                "WHERE webhook_id = ? AND is_success = 0 "
                "AND attempted_at >= ? AND attempted_at <= ? "
                "GROUP BY COALESCE(error_type, 'unknown')",
                (webhook_id, _ts(start), _ts(end)),
            ).fetchall()
        return {row["error_type"]: int(row["n"]) for row in rows}

    # =========================================================================
    # Maintenance
    # =========================================================================

    def abandon_stale_deliveries(self, before: datetime, reason: str) -> int:
        cutoff = _ts(before)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE webhook_deliveries SET status = 'abandoned', "
                "error_message = ?, next_retry_at = NULL, claimed_by = NULL, "
                "claimed_at = NULL, updated_at = ? "
                "WHERE status IN ('failed', 'retrying') AND created_at < ? "
                "AND (claimed_at IS NULL OR claimed_at < ?)",
                (reason, _ts(utc_now()), cutoff, cutoff),
            )
            return cursor.rowcount

    def purge_delivered(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_deliveries "
                "WHERE status = 'delivered' AND updated_at < ?",
                (_ts(before),),
            )
            return cursor.rowcount

    def purge_logs(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_delivery_logs WHERE attempted_at < ?",
                (_ts(before),),
            )
            return cursor.rowcount

    def purge_events(self, before: datetime) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM webhook_events WHERE created_at < ? AND NOT EXISTS "
                "(SELECT 1 FROM webhook_deliveries d WHERE d.event_id = webhook_events.id)",
                (_ts(before),),
            )
            return cursor.rowcount

    def delivery_stats(
        self, webhook_id: str, start: datetime, end: datetime
    ) -> DeliveryStats:
        window = (webhook_id, _ts(start), _ts(end))
        with self._connect() as conn:
            status_rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM webhook_deliveries "
                "WHERE webhook_id = ? AND created_at >= ? AND created_at <= ? "
                "GROUP BY status",
                window,
            ).fetchall()
            event_rows = conn.execute(
                "SELECT event_type, COUNT(*) AS n FROM webhook_deliveries "
                "WHERE webhook_id = ? AND created_at >= ? AND created_at <= ? "
                "GROUP BY event_type",
                window,
            ).fetchall()
            avg_row = conn.execute(
                "SELECT AVG(response_time_ms) FROM webhook_delivery_logs "
                "WHERE webhook_id = ? AND attempted_at >= ? AND attempted_at <= ? "
                "AND response_time_ms IS NOT NULL",
                window,
            ).fetchone()

        status_breakdown = {row["status"]: int(row["n"]) for row in status_rows}
        return DeliveryStats(
            total=sum(status_breakdown.values()),
            status_breakdown=status_breakdown,
            event_breakdown={row["event_type"]: int(row["n"]) for row in event_rows},
            average_response_time_ms=avg_row[0],
        )
