"""Delivery worker pool.

Provides background delivery processing with:
- Atomic claims of due deliveries (safe with several pool instances)
- Bounded concurrent dispatch across a fixed set of logical workers
- Exponential backoff retries
- Per-webhook rolling rate limits (deferral, not failure)
- Dead-letter sweep and retention cleanup
- Health checks with alert handlers
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal

from courier.models import (
    DeliveryLogRecord,
    DeliveryRecord,
    DeliveryStatus,
    ProcessorStats,
    ProcessorStatus,
    WorkerInfo,
    utc_now,
)
from courier.store import generate_log_id

if TYPE_CHECKING:
    from courier.config import CourierConfig
    from courier.delivery import DeliveryResult, WebhookDeliveryService
    from courier.metrics import MetricsCollector
    from courier.models import WebhookRecord
    from courier.publisher import DeliveryChannel
    from courier.store import WebhookStoreProtocol

logger = logging.getLogger(__name__)

__all__ = [
    "AlertHandler",
    "DeliveryOutcome",
    "DeliveryWorkerPool",
    "Worker",
]

AlertHandler = Callable[[dict[str, Any]], "Awaitable[None] | None"]

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


class DeliveryOutcome(str, Enum):
    """What one pass of the single-delivery path did."""

    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"
    ABANDONED = "abandoned"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


@dataclass
class Worker:
    """A logical worker slot in the pool."""

    id: str
    status: Literal["idle", "busy", "error"] = "idle"
    current_delivery: str | None = None
    last_activity: datetime | None = None
    last_error: str | None = None
    processed: int = 0

    def to_info(self) -> WorkerInfo:
        return WorkerInfo(
            id=self.id,
            status=self.status,
            current_delivery=self.current_delivery,
            last_activity=self.last_activity,
            last_error=self.last_error,
            processed=self.processed,
        )


class DeliveryWorkerPool:
    """Fixed-size pool of delivery workers driven by periodic loops.

    The poll loop claims ``pending`` deliveries, the retry loop claims due
    ``retrying`` deliveries; both hand one claimed delivery to each idle
    worker. Cleanup and health loops run on their own intervals.

    Example:
        >>> pool = DeliveryWorkerPool(store, delivery_service, config, channel)
        >>> pool.start()
        >>> ...
        >>> await pool.stop()
    """

    def __init__(
        self,
        store: WebhookStoreProtocol,
        delivery_service: WebhookDeliveryService,
        config: CourierConfig,
        channel: DeliveryChannel | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize worker pool.

        Args:
            store: Webhook storage
            delivery_service: Performs the HTTP attempts
            config: Service configuration
            channel: Hint channel from the event publisher
            metrics: Optional metrics collector
        """
        self.store = store
        self.delivery_service = delivery_service
        self.config = config
        self._channel = channel
        self._metrics = metrics

        self.instance_id = f"pool-{secrets.token_hex(4)}"
        self.workers = [Worker(id=f"worker-{i + 1}") for i in range(config.concurrency)]
        self.stats = ProcessorStats()
        self.last_alert: dict[str, Any] | None = None

        self._running = False
        self._started_at: datetime | None = None
        self._loops: list[asyncio.Task[None]] = []
        self._inflight: set[asyncio.Task[None]] = set()
        self._alert_handlers: list[AlertHandler] = []

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the supervisory loops."""
        if self._running:
            return
        self._running = True
        self._started_at = utc_now()

        self._loops.append(asyncio.create_task(self._poll_loop()))
        self._loops.append(
            asyncio.create_task(
                self._periodic("retry", self.config.retry_interval, self.retry_once)
            )
        )
        if self.config.enable_cleanup:
            self._loops.append(
                asyncio.create_task(
                    self._periodic(
                        "cleanup", self.config.cleanup_interval, self.cleanup_once
                    )
                )
            )
        if self.config.enable_health_checks:
            self._loops.append(
                asyncio.create_task(
                    self._periodic(
                        "health check",
                        self.config.health_check_interval,
                        self.health_check_once,
                    )
                )
            )

        logger.info(
            f"Delivery worker pool {self.instance_id} started with "
            f"{len(self.workers)} workers"
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the loops and wait for in-flight deliveries.

        In-flight deliveries are not cancelled. Those still running after
        the timeout keep their claim until the lease expires, then get
        re-claimed.

        Args:
            timeout: Seconds to wait for busy workers (default: shutdown_timeout)
        """
        if not self._running:
            return
        self._running = False

        for task in self._loops:
            task.cancel()
        for task in self._loops:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._loops.clear()

        wait_for = self.config.shutdown_timeout if timeout is None else timeout
        if self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=wait_for)
            if pending:
                busy = [w.id for w in self.workers if w.status == "busy"]
                logger.warning(
                    f"{len(pending)} deliveries still in flight after {wait_for}s "
                    f"(workers: {', '.join(busy)}); their claims expire after "
                    f"{self.config.claim_lease_seconds}s"
                )

        logger.info(f"Delivery worker pool {self.instance_id} stopped")

    async def drain(self) -> None:
        """Wait until every dispatched delivery has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _poll_loop(self) -> None:
        while True:
            if self._channel is not None:
                await self._channel.wait(self.config.poll_interval)
            else:
                await asyncio.sleep(self.config.poll_interval)
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Poll cycle error: {e}")

    async def _periodic(
        self,
        name: str,
        interval: float,
        cycle: Callable[[], Awaitable[Any]],
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await cycle()
            except Exception as e:
                logger.error(f"Delivery {name} cycle error: {e}")

    # =========================================================================
    # Claim and dispatch
    # =========================================================================

    def _idle_workers(self) -> list[Worker]:
        return [w for w in self.workers if w.status != "busy"]

    async def _claim_and_dispatch(
        self, status: DeliveryStatus, now: datetime | None
    ) -> int:
        idle = self._idle_workers()
        limit = min(len(idle), self.config.batch_size)
        if limit == 0:
            return 0

        claimed = await asyncio.to_thread(
            self.store.claim_deliveries,
            status,
            limit,
            now or utc_now(),
            self.instance_id,
            self.config.claim_lease_seconds,
        )
        for worker, delivery in zip(idle, claimed):
            self._dispatch(worker, delivery, now)

        if claimed:
            logger.debug(f"Claimed {len(claimed)} {status.value} deliveries")
        return len(claimed)

    async def poll_once(self, now: datetime | None = None) -> int:
        """Claim pending deliveries for idle workers.

        Returns:
            Number of deliveries dispatched
        """
        return await self._claim_and_dispatch(DeliveryStatus.PENDING, now)

    async def retry_once(self, now: datetime | None = None) -> int:
        """Claim retrying deliveries whose retry time has come.

        Returns:
            Number of deliveries dispatched
        """
        return await self._claim_and_dispatch(DeliveryStatus.RETRYING, now)

    def _dispatch(
        self, worker: Worker, delivery: DeliveryRecord, now: datetime | None
    ) -> None:
        worker.status = "busy"
        worker.current_delivery = delivery.id
        worker.last_activity = utc_now()
        self._update_busy_gauge()

        task = asyncio.create_task(self._run_worker(worker, delivery, now))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run_worker(
        self, worker: Worker, delivery: DeliveryRecord, now: datetime | None
    ) -> None:
        try:
            await self.process_delivery(delivery, now)
            worker.status = "idle"
            worker.processed += 1
        except Exception as e:
            logger.error(f"Worker {worker.id} failed on delivery {delivery.id}: {e}")
            worker.status = "error"
            worker.last_error = str(e)
            try:
                await asyncio.to_thread(self.store.release_claim, delivery.id)
            except Exception as release_error:
                logger.error(
                    f"Failed to release claim on {delivery.id}: {release_error}"
                )
        finally:
            worker.current_delivery = None
            worker.last_activity = utc_now()
            self._update_busy_gauge()

    def _update_busy_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_workers_busy(
                sum(1 for w in self.workers if w.status == "busy")
            )

    # =========================================================================
    # Single-delivery execution path
    # =========================================================================

    async def _rate_limit_deferral(
        self, webhook: WebhookRecord, now: datetime
    ) -> datetime | None:
        """When the webhook is at its hourly or daily cap, the time it frees up."""
        deferrals: list[datetime] = []
        for window, limit in (
            (HOUR, webhook.rate_limit_per_hour),
            (DAY, webhook.rate_limit_per_day),
        ):
            since = now - window
            count = await asyncio.to_thread(self.store.count_attempts, webhook.id, since)
            if count < limit:
                continue
            oldest = await asyncio.to_thread(
                self.store.oldest_attempt_since, webhook.id, since
            )
            deferrals.append((oldest or now) + window)

        if not deferrals:
            return None
        return max(max(deferrals), now + timedelta(seconds=1))

    async def _write_back(self, record: DeliveryRecord, owner: str | None) -> bool:
        """Persist a processed delivery unless its claim moved on meanwhile."""
        written = await asyncio.to_thread(
            self.store.update_claimed_delivery, record, owner
        )
        if not written:
            logger.warning(
                f"Delivery {record.id} lost its claim as {owner}, "
                "result discarded"
            )
        return written

    async def _finish(
        self,
        delivery: DeliveryRecord,
        owner: str | None,
        status: DeliveryStatus,
        error: str | None,
        now: datetime,
    ) -> bool:
        delivery.status = status
        delivery.error_message = error
        delivery.next_retry_at = None
        delivery.updated_at = now
        delivery.claimed_by = None
        delivery.claimed_at = None
        return await self._write_back(delivery, owner)

    async def process_delivery(
        self,
        delivery: DeliveryRecord | str,
        now: datetime | None = None,
    ) -> DeliveryOutcome:
        """Run one delivery through a single attempt.

        Shared by the poll and retry loops, manual retries and test sends.
        The caller must hold the delivery's claim.

        When the lease runs out mid-attempt and the row is reclaimed or
        finished elsewhere, the late result is dropped and SKIPPED returned.

        Args:
            delivery: Delivery record or ID
            now: Reference time for rate limits and backoff (defaults to now)

        Returns:
            The outcome of this pass
        """
        delivery_id = delivery if isinstance(delivery, str) else delivery.id
        now = now or utc_now()

        record = await asyncio.to_thread(self.store.get_delivery, delivery_id)
        if record is None:
            logger.warning(f"Delivery {delivery_id} not found, skipping")
            return DeliveryOutcome.SKIPPED
        owner = record.claimed_by

        if record.status not in (DeliveryStatus.PENDING, DeliveryStatus.RETRYING):
            logger.info(
                f"Delivery {delivery_id} is {record.status.value}, skipping"
            )
            await asyncio.to_thread(self.store.release_claim, delivery_id)
            return DeliveryOutcome.SKIPPED

        webhook = await asyncio.to_thread(self.store.get_webhook, record.webhook_id)
        if webhook is None or not webhook.is_active:
            reason = "Webhook not found" if webhook is None else "Webhook is inactive"
            if not await self._finish(
                record, owner, DeliveryStatus.ABANDONED, reason, now
            ):
                return DeliveryOutcome.SKIPPED
            self._count(DeliveryOutcome.ABANDONED)
            logger.info(f"Delivery {delivery_id} abandoned: {reason}")
            return DeliveryOutcome.ABANDONED

        event = await asyncio.to_thread(self.store.get_event, record.event_id)
        if event is None:
            if not await self._finish(
                record, owner, DeliveryStatus.ABANDONED, "Event not found", now
            ):
                return DeliveryOutcome.SKIPPED
            self._count(DeliveryOutcome.ABANDONED)
            logger.info(f"Delivery {delivery_id} abandoned: event not found")
            return DeliveryOutcome.ABANDONED

        if record.attempts >= record.max_attempts:
            if not await self._finish(
                record,
                owner,
                DeliveryStatus.ABANDONED,
                f"Maximum attempts ({record.max_attempts}) exhausted",
                now,
            ):
                return DeliveryOutcome.SKIPPED
            self._count(DeliveryOutcome.ABANDONED)
            return DeliveryOutcome.ABANDONED

        deferred_until = await self._rate_limit_deferral(webhook, now)
        if deferred_until is not None:
            record.next_retry_at = deferred_until
            record.updated_at = now
            record.claimed_by = None
            record.claimed_at = None
            if not await self._write_back(record, owner):
                return DeliveryOutcome.SKIPPED
            self._count(DeliveryOutcome.DEFERRED)
            logger.info(
                f"Delivery {delivery_id} deferred: webhook {webhook.id} at its "
                f"rate limit until {deferred_until.isoformat()}"
            )
            return DeliveryOutcome.DEFERRED

        attempt = record.attempts + 1
        result = await self.delivery_service.deliver(webhook, event, record, attempt)
        await self._log_attempt(record, attempt, result)

        record.attempts = attempt
        record.response_status = result.status_code
        record.response_body = result.response_body
        record.updated_at = utc_now()
        record.claimed_by = None
        record.claimed_at = None

        if result.success:
            record.status = DeliveryStatus.DELIVERED
            record.delivered_at = record.updated_at
            record.error_message = None
            record.next_retry_at = None
            outcome = DeliveryOutcome.DELIVERED
            logger.info(
                f"Webhook delivered: {webhook.id} delivery={delivery_id} "
                f"status={result.status_code} duration={result.duration_ms:.0f}ms"
            )
        elif attempt >= record.max_attempts:
            record.status = DeliveryStatus.ABANDONED
            record.error_message = (
                f"Maximum attempts ({record.max_attempts}) exhausted: {result.error}"
            )
            record.next_retry_at = None
            outcome = DeliveryOutcome.ABANDONED
            logger.warning(
                f"Webhook delivery abandoned: {webhook.id} delivery={delivery_id} "
                f"attempt={attempt} error={result.error}"
            )
        elif not result.should_retry:
            record.status = DeliveryStatus.FAILED
            record.error_message = result.error
            record.next_retry_at = None
            outcome = DeliveryOutcome.FAILED
            logger.warning(
                f"Webhook delivery failed (no retry): {webhook.id} "
                f"delivery={delivery_id} attempt={attempt} error={result.error}"
            )
        else:
            record.status = DeliveryStatus.RETRYING
            record.error_message = result.error
            record.next_retry_at = self.delivery_service.calculate_next_retry(
                attempt, webhook, now
            )
            outcome = DeliveryOutcome.RETRYING
            logger.info(
                f"Webhook delivery scheduled for retry: {webhook.id} "
                f"delivery={delivery_id} attempt={attempt} "
                f"next_retry_at={record.next_retry_at.isoformat()} error={result.error}"
            )

        if not await self._write_back(record, owner):
            return DeliveryOutcome.SKIPPED
        await asyncio.to_thread(self.store.set_last_delivery, webhook.id, record.updated_at)
        self._count(outcome, result.duration_ms / 1000)
        return outcome

    async def _log_attempt(
        self, delivery: DeliveryRecord, attempt: int, result: DeliveryResult
    ) -> None:
        log = DeliveryLogRecord(
            id=generate_log_id(),
            delivery_id=delivery.id,
            webhook_id=delivery.webhook_id,
            attempt_number=attempt,
            request_url=result.request_url,
            request_headers=result.request_headers,
            request_body_size=result.request_body_size,
            response_status=result.status_code,
            response_headers=result.response_headers,
            response_body=result.response_body,
            response_time_ms=result.duration_ms,
            error_type=result.error_type,
            error_message=result.error,
            is_success=result.success,
        )
        await asyncio.to_thread(self.store.add_delivery_log, log)

    def _count(self, outcome: DeliveryOutcome, duration: float | None = None) -> None:
        if outcome is DeliveryOutcome.DEFERRED:
            self.stats.deferred += 1
        else:
            self.stats.processed += 1
            if outcome is DeliveryOutcome.DELIVERED:
                self.stats.delivered += 1
            elif outcome is DeliveryOutcome.RETRYING:
                self.stats.retried += 1
            else:
                self.stats.failed += 1
        if self._metrics:
            self._metrics.record_delivery(outcome.value, duration)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cleanup_once(self, now: datetime | None = None) -> dict[str, int]:
        """Dead-letter stale deliveries and purge expired rows.

        Returns:
            Counts of abandoned and purged rows
        """
        now = now or utc_now()
        threshold = self.config.dead_letter_threshold
        hours = threshold / 3600
        reason = f"Abandoned by dead-letter sweep: older than {hours:g}h threshold"

        abandoned = await asyncio.to_thread(
            self.store.abandon_stale_deliveries,
            now - timedelta(seconds=threshold),
            reason,
        )
        delivered = await asyncio.to_thread(
            self.store.purge_delivered,
            now - timedelta(seconds=self.config.delivered_retention),
        )
        logs = await asyncio.to_thread(
            self.store.purge_logs,
            now - timedelta(seconds=self.config.log_retention),
        )
        events = await asyncio.to_thread(
            self.store.purge_events,
            now - timedelta(seconds=self.config.event_retention),
        )

        self.stats.dead_lettered += abandoned
        if self._metrics:
            self._metrics.record_dead_lettered(abandoned)

        result = {
            "abandoned": abandoned,
            "purged_deliveries": delivered,
            "purged_logs": logs,
            "purged_events": events,
        }
        if any(result.values()):
            logger.info(
                f"Delivery cleanup: abandoned={abandoned} deliveries={delivered} "
                f"logs={logs} events={events}"
            )
        return result

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a callable invoked with each health alert."""
        self._alert_handlers.append(handler)

    async def health_check_once(self, now: datetime | None = None) -> bool:
        """Check the failure rate of the last hour.

        Returns:
            False if an alert was raised
        """
        now = now or utc_now()
        failed = await asyncio.to_thread(self.store.count_failed_attempts, now - HOUR)
        threshold = self.config.health_failure_threshold

        errored = [w.id for w in self.workers if w.status == "error"]
        if errored:
            logger.warning(f"Workers in error state: {', '.join(errored)}")

        if failed <= threshold:
            return True

        alert = {
            "type": "high_failure_rate",
            "failed_attempts": failed,
            "threshold": threshold,
            "window_seconds": int(HOUR.total_seconds()),
            "timestamp": now.isoformat(),
        }
        self.last_alert = alert
        logger.warning(
            f"High webhook failure rate: {failed} failed attempts in the last hour "
            f"(threshold {threshold})"
        )
        if self._metrics:
            self._metrics.record_health_alert()

        for handler in self._alert_handlers:
            try:
                result = handler(alert)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Alert handler error: {e}")
        return False

    async def get_status(self) -> ProcessorStatus:
        """Snapshot of pool health and load."""
        queue_size = await asyncio.to_thread(
            self.store.count_deliveries, DeliveryStatus.PENDING
        )
        busy = sum(1 for w in self.workers if w.status == "busy")
        errored = sum(1 for w in self.workers if w.status == "error")
        uptime = (
            (utc_now() - self._started_at).total_seconds()
            if self._started_at and self._running
            else 0.0
        )
        stats = self.stats.model_copy(
            update={
                "uptime_seconds": uptime,
                "current_load": busy / len(self.workers) if self.workers else 0.0,
                "queue_size": queue_size,
            }
        )
        return ProcessorStatus(
            running=self._running,
            healthy=self._running and errored < len(self.workers) / 2,
            workers=[w.to_info() for w in self.workers],
            stats=stats,
            last_alert=self.last_alert,
        )
