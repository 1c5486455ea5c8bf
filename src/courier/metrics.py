"""Prometheus metrics for the webhook delivery service.

Provides MetricsCollector for recording delivery outcomes, publishing,
worker load and HTTP requests. Each collector owns its own registry so
several apps (or tests) can live in one process.

Example:
    >>> metrics = MetricsCollector()
    >>> metrics.record_delivery("delivered", duration=0.12)
    >>> metrics.record_event_published("document.uploaded", deliveries=2)
    >>> body = metrics.render()
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from starlette.requests import Request
    from starlette.responses import Response

__all__ = [
    "CONTENT_TYPE_LATEST",
    "MetricsCollector",
    "create_metrics_middleware",
]

logger = logging.getLogger(__name__)


class MetricsCollector:
    """Collects and exposes Prometheus metrics.

    Metrics collected:
    - courier_deliveries_total: Delivery attempts by outcome
    - courier_delivery_duration_seconds: Outbound HTTP latency histogram
    - courier_events_published_total: Published events by type
    - courier_deliveries_created_total: Deliveries created by fan-out
    - courier_publish_failures_total: Buffered events dropped after retries
    - courier_retries_total: Deliveries rescheduled for retry
    - courier_dead_lettered_total: Deliveries abandoned by the dead-letter sweep
    - courier_workers_busy: Gauge of busy workers
    - courier_health_alerts_total: Health alerts raised by the worker pool
    - courier_http_requests_total: API requests by path, method and status
    - courier_http_request_latency_seconds: API latency histogram

    Records nothing when constructed with ``enabled=False``.
    """

    def __init__(self, enabled: bool = True) -> None:
        """Initialize metrics collector.

        Args:
            enabled: Record metrics (False turns every method into a no-op)
        """
        self._enabled = enabled
        self.registry = CollectorRegistry()

        self.deliveries = Counter(
            "courier_deliveries_total",
            "Delivery attempts by outcome",
            ["status"],
            registry=self.registry,
        )
        self.delivery_duration = Histogram(
            "courier_delivery_duration_seconds",
            "Outbound webhook request duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry,
        )
        self.events_published = Counter(
            "courier_events_published_total",
            "Events published",
            ["event_type"],
            registry=self.registry,
        )
        self.deliveries_created = Counter(
            "courier_deliveries_created_total",
            "Deliveries created by event fan-out",
            registry=self.registry,
        )
        self.publish_failures = Counter(
            "courier_publish_failures_total",
            "Buffered events dropped after exhausting publish retries",
            registry=self.registry,
        )
        self.retries = Counter(
            "courier_retries_total",
            "Deliveries rescheduled for another attempt",
            registry=self.registry,
        )
        self.dead_lettered = Counter(
            "courier_dead_lettered_total",
            "Deliveries abandoned by the dead-letter sweep",
            registry=self.registry,
        )
        self.workers_busy = Gauge(
            "courier_workers_busy",
            "Number of workers currently delivering",
            registry=self.registry,
        )
        self.health_alerts = Counter(
            "courier_health_alerts_total",
            "Health alerts raised by the worker pool and webhook monitor",
            registry=self.registry,
        )
        self.request_count = Counter(
            "courier_http_requests_total",
            "API request count",
            ["endpoint", "method", "status"],
            registry=self.registry,
        )
        self.request_latency = Histogram(
            "courier_http_request_latency_seconds",
            "API request latency in seconds",
            ["endpoint", "method"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        """Check if metrics collection is enabled."""
        return self._enabled

    def record_delivery(self, status: str, duration: float | None = None) -> None:
        """Record one delivery attempt outcome.

        Args:
            status: Outcome (delivered, retrying, failed, abandoned, deferred)
            duration: Outbound request duration in seconds, if a request was made
        """
        if not self._enabled:
            return
        self.deliveries.labels(status=status).inc()
        if duration is not None:
            self.delivery_duration.observe(duration)
        if status == "retrying":
            self.retries.inc()

    def record_event_published(self, event_type: str, deliveries: int) -> None:
        if not self._enabled:
            return
        self.events_published.labels(event_type=event_type).inc()
        self.deliveries_created.inc(deliveries)

    def record_publish_failure(self) -> None:
        if not self._enabled:
            return
        self.publish_failures.inc()

    def record_dead_lettered(self, count: int) -> None:
        if not self._enabled or count <= 0:
            return
        self.dead_lettered.inc(count)

    def set_workers_busy(self, count: int) -> None:
        if not self._enabled:
            return
        self.workers_busy.set(count)

    def record_health_alert(self) -> None:
        if not self._enabled:
            return
        self.health_alerts.inc()

    def record_request(
        self,
        endpoint: str,
        method: str,
        status: int,
        latency: float,
    ) -> None:
        """Record an API request.

        Args:
            endpoint: Request path
            method: HTTP method
            status: Response status code
            latency: Request latency in seconds
        """
        if not self._enabled:
            return
        self.request_count.labels(
            endpoint=endpoint,
            method=method,
            status=str(status),
        ).inc()
        self.request_latency.labels(endpoint=endpoint, method=method).observe(latency)

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)


def create_metrics_middleware(
    metrics: MetricsCollector | None,
) -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    """Create Starlette middleware that records request metrics.

    Example:
        >>> from starlette.middleware.base import BaseHTTPMiddleware
        >>> app.add_middleware(BaseHTTPMiddleware, dispatch=create_metrics_middleware(metrics))
    """

    async def metrics_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Record request metrics (latency, status, endpoint)."""
        if metrics is None or not metrics.enabled:
            return await call_next(request)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            # Record metrics for unhandled exceptions before re-raising
            metrics.record_request(
                endpoint=request.url.path,
                method=request.method,
                status=500,
                latency=time.perf_counter() - start_time,
            )
            raise

        metrics.record_request(
            endpoint=request.url.path,
            method=request.method,
            status=response.status_code,
            latency=time.perf_counter() - start_time,
        )
        return response

    return metrics_middleware
