"""Per-webhook health reports and alerting.

Health is derived from stored deliveries and attempt logs over a window.
A periodic sweep over active webhooks hands every breached threshold to
the registered alert handlers, at most once per cooldown for each webhook
and alert type.

Example:
    >>> monitor = WebhookMonitor(store, config, metrics)
    >>> monitor.add_alert_handler(lambda alert: print(alert.message))
    >>> monitor.start()
    >>> health = monitor.webhook_health("wh_123", owner_id)
    >>> health.is_healthy
    True
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from courier.analytics import resolve_window
from courier.models import (
    DeliveryStatus,
    FailingWebhook,
    HealthAlert,
    ListOptions,
    SystemHealth,
    WebhookHealth,
    WebhookHealthMetrics,
    utc_now,
)
from courier.registry import get_owned_webhook

if TYPE_CHECKING:
    from courier.config import CourierConfig
    from courier.metrics import MetricsCollector
    from courier.models import AnalyticsPeriod, WebhookRecord
    from courier.store import WebhookStoreProtocol

logger = logging.getLogger(__name__)

__all__ = ["HealthAlertHandler", "WebhookMonitor"]

HealthAlertHandler = Callable[[HealthAlert], "Awaitable[None] | None"]

# Attempt errors meaning the endpoint was not reached at all
UNREACHABLE_ERRORS = frozenset({"connection", "timeout"})

MAX_STREAK_SCAN = 200
TOP_FAILING_WEBHOOKS = 5
RECENT_ALERTS = 10

_SEVERITY_RANK = {"medium": 1, "high": 2, "critical": 3}


class WebhookMonitor:
    """Health reports, dashboards and cooldown-limited alerts for webhooks."""

    def __init__(
        self,
        store: WebhookStoreProtocol,
        config: CourierConfig,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self._metrics = metrics
        self._alert_handlers: list[HealthAlertHandler] = []
        self._last_sent: dict[tuple[str, str], datetime] = {}
        self._task: asyncio.Task[None] | None = None

    # =========================================================================
    # Reports
    # =========================================================================

    def webhook_health(
        self,
        webhook_id: str,
        owner_id: str | None,
        period: AnalyticsPeriod = "1h",
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> WebhookHealth:
        """Health report for one webhook.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
            WebhookForbiddenError: If it belongs to another owner
            WebhookValidationError: If the range is empty or the period unknown
        """
        webhook = get_owned_webhook(self.store, webhook_id, owner_id)
        start, end = resolve_window(period, start, end)
        return self._evaluate(webhook, start, end)

    def system_health(
        self,
        owner_id: str | None,
        period: AnalyticsPeriod = "1h",
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> SystemHealth:
        """Roll up the health of every active webhook of an owner.

        The system is ``critical`` when any webhook is critical or more
        than 30% are degraded, ``degraded`` when any webhook is unhealthy.
        """
        start, end = resolve_window(period, start, end)
        reports = [
            self._evaluate(webhook, start, end)
            for webhook in self._active_webhooks(owner_id)
        ]

        critical = [r for r in reports if r.severity == "critical"]
        degraded = [r for r in reports if not r.is_healthy and r.severity != "critical"]
        if critical or (reports and len(degraded) / len(reports) > 0.3):
            overall = "critical"
        elif degraded:
            overall = "degraded"
        else:
            overall = "healthy"

        successful = sum(r.metrics.successful_deliveries for r in reports)
        failed = sum(r.metrics.failed_deliveries for r in reports)
        settled = successful + failed
        failing = sorted(
            (r for r in reports if not r.is_healthy),
            key=lambda r: (r.metrics.error_rate, r.metrics.consecutive_failures),
            reverse=True,
        )
        alerts = sorted(
            (alert for r in reports for alert in r.alerts),
            key=lambda a: (_SEVERITY_RANK[a.severity], a.created_at),
            reverse=True,
        )

        return SystemHealth(
            overall_health=overall,
            period_start=start,
            period_end=end,
            active_webhooks=len(reports),
            healthy_webhooks=sum(1 for r in reports if r.is_healthy),
            degraded_webhooks=len(degraded),
            critical_webhooks=len(critical),
            total_deliveries=sum(r.metrics.total_deliveries for r in reports),
            successful_deliveries=successful,
            failed_deliveries=failed,
            success_rate=round(successful / settled * 100, 2) if settled else 100.0,
            top_failing_webhooks=[
                FailingWebhook(
                    webhook_id=r.webhook_id,
                    name=r.webhook_name,
                    error_rate=r.metrics.error_rate,
                    consecutive_failures=r.metrics.consecutive_failures,
                )
                for r in failing[:TOP_FAILING_WEBHOOKS]
            ],
            recent_alerts=alerts[:RECENT_ALERTS],
        )

    def _active_webhooks(self, owner_id: str | None) -> list[WebhookRecord]:
        webhooks: list[WebhookRecord] = []
        page = 1
        while True:
            items, total = self.store.list_webhooks(
                owner_id, ListOptions(page=page, limit=100, is_active=True)
            )
            webhooks.extend(items)
            if not items or len(webhooks) >= total:
                return webhooks
            page += 1

    def _consecutive_failures(self, webhook_id: str, start: datetime) -> int:
        """Failing deliveries since the newest delivered one, pending ones skipped."""
        streak = 0
        for delivery in self.store.list_deliveries(
            webhook_id=webhook_id, since=start, limit=MAX_STREAK_SCAN
        ):
            if delivery.status == DeliveryStatus.DELIVERED:
                break
            if delivery.status != DeliveryStatus.PENDING:
                streak += 1
        return streak

    def _endpoint_down(self, webhook_id: str, start: datetime) -> bool:
        """Whether the latest attempts all failed without reaching the endpoint."""
        needed = self.config.alert_consecutive_failures
        logs = self.store.list_webhook_logs(webhook_id, start, limit=needed)
        return len(logs) >= needed and all(
            not log.is_success and log.error_type in UNREACHABLE_ERRORS for log in logs
        )

    def _evaluate(
        self, webhook: WebhookRecord, start: datetime, end: datetime
    ) -> WebhookHealth:
        stats = self.store.delivery_stats(webhook.id, start, end)
        breakdown = stats.status_breakdown
        successful = breakdown.get(DeliveryStatus.DELIVERED.value, 0)
        failed = breakdown.get(DeliveryStatus.FAILED.value, 0) + breakdown.get(
            DeliveryStatus.ABANDONED.value, 0
        )
        settled = successful + failed
        success_rate = round(successful / settled * 100, 2) if settled else 100.0

        last_success = self.store.list_deliveries(
            webhook_id=webhook.id, status=DeliveryStatus.DELIVERED, limit=1
        )
        metrics = WebhookHealthMetrics(
            total_deliveries=stats.total,
            successful_deliveries=successful,
            failed_deliveries=failed,
            success_rate=success_rate,
            error_rate=round(100.0 - success_rate, 2),
            average_response_time_ms=(
                round(stats.average_response_time_ms, 2)
                if stats.average_response_time_ms is not None
                else None
            ),
            consecutive_failures=self._consecutive_failures(webhook.id, start),
            last_successful_delivery=(
                last_success[0].delivered_at or last_success[0].updated_at
                if last_success
                else None
            ),
        )
        down = self._endpoint_down(webhook.id, start)
        alerts = self._alerts_for(webhook.id, metrics, down)
        return WebhookHealth(
            webhook_id=webhook.id,
            webhook_name=webhook.name,
            is_healthy=not alerts,
            period_start=start,
            period_end=end,
            metrics=metrics,
            alerts=alerts,
        )

    def _alerts_for(
        self, webhook_id: str, metrics: WebhookHealthMetrics, endpoint_down: bool
    ) -> list[HealthAlert]:
        alerts: list[HealthAlert] = []

        rate_threshold = self.config.alert_success_rate_threshold
        if metrics.success_rate < rate_threshold:
            alerts.append(
                HealthAlert(
                    webhook_id=webhook_id,
                    type="success_rate",
                    severity="critical" if metrics.success_rate < 50 else "high",
                    message=(
                        f"Success rate ({metrics.success_rate:.0f}%) is below "
                        f"threshold ({rate_threshold:.0f}%)"
                    ),
                    threshold=rate_threshold,
                    current_value=metrics.success_rate,
                )
            )

        latency_threshold = self.config.alert_response_time_ms
        latency = metrics.average_response_time_ms
        if latency is not None and latency > latency_threshold:
            alerts.append(
                HealthAlert(
                    webhook_id=webhook_id,
                    type="response_time",
                    severity=(
                        "critical" if latency > latency_threshold * 2 else "medium"
                    ),
                    message=(
                        f"Average response time ({latency:.0f}ms) exceeds "
                        f"threshold ({latency_threshold:.0f}ms)"
                    ),
                    threshold=latency_threshold,
                    current_value=latency,
                )
            )

        streak_threshold = self.config.alert_consecutive_failures
        if metrics.consecutive_failures >= streak_threshold:
            alerts.append(
                HealthAlert(
                    webhook_id=webhook_id,
                    type="consecutive_failures",
                    severity=(
                        "critical"
                        if metrics.consecutive_failures >= streak_threshold * 2
                        else "high"
                    ),
                    message=(
                        f"{metrics.consecutive_failures} consecutive failures detected"
                    ),
                    threshold=streak_threshold,
                    current_value=metrics.consecutive_failures,
                )
            )

        if endpoint_down:
            alerts.append(
                HealthAlert(
                    webhook_id=webhook_id,
                    type="endpoint_down",
                    severity="critical",
                    message=(
                        f"Endpoint unreachable: last {streak_threshold} attempts "
                        "failed with connection errors or timeouts"
                    ),
                    threshold=streak_threshold,
                )
            )

        return alerts

    # =========================================================================
    # Alerting
    # =========================================================================

    def add_alert_handler(self, handler: HealthAlertHandler) -> None:
        """Register a callable invoked with each alert that is sent."""
        self._alert_handlers.append(handler)

    def _should_send(self, alert: HealthAlert, now: datetime) -> bool:
        key = (alert.webhook_id, alert.type)
        last = self._last_sent.get(key)
        cooldown = timedelta(seconds=self.config.alert_cooldown)
        if last is not None and now - last < cooldown:
            return False
        self._last_sent[key] = now
        return True

    async def check_webhooks(self, now: datetime | None = None) -> list[HealthAlert]:
        """Evaluate every active webhook over the last hour and send new alerts.

        Returns:
            The alerts sent by this sweep, cooled-down repeats excluded
        """
        now = now or utc_now()
        start, end = resolve_window("1h", None, now)
        webhooks = await asyncio.to_thread(self._active_webhooks, None)

        sent: list[HealthAlert] = []
        for webhook in webhooks:
            try:
                health = await asyncio.to_thread(self._evaluate, webhook, start, end)
            except Exception as e:
                logger.error(f"Health check failed for webhook {webhook.id}: {e}")
                continue
            for alert in health.alerts:
                if self._should_send(alert, now):
                    await self._send(alert)
                    sent.append(alert)
        return sent

    async def _send(self, alert: HealthAlert) -> None:
        logger.warning(
            f"Webhook alert [{alert.severity}] {alert.type} for "
            f"{alert.webhook_id}: {alert.message}"
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

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _monitor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_check_interval)
            try:
                await self.check_webhooks()
            except Exception as e:
                logger.error(f"Webhook monitoring cycle error: {e}")

    def start(self) -> None:
        """Start the periodic health sweep."""
        if self._task is None:
            self._task = asyncio.create_task(self._monitor_loop())
            logger.info("Webhook monitor started")

    async def stop(self) -> None:
        """Stop the periodic health sweep."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Webhook monitor stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get monitor state."""
        return {
            "running": self._task is not None,
            "alert_handlers": len(self._alert_handlers),
            "cooling_down": len(self._last_sent),
        }
