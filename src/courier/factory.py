"""Application factory for the webhook delivery service.

Builds every service once, wires them together by reference and mounts
the webhook API on a FastAPI app whose lifespan starts and stops the
background work.

Example:
    >>> from courier.factory import create_app
    >>> app = create_app()  # Load config from environment
    >>> # uvicorn.run(app, host="0.0.0.0", port=8000)

Example - Custom configuration:
    >>> from courier.config import CourierConfig
    >>> app = create_app(CourierConfig(storage="memory", concurrency=2))

Health & Metrics Endpoints:
    GET /health: Basic service status with ISO 8601 timestamp and
        worker pool state. Always returns HTTP 200 when the service is up.
    GET /metrics: Prometheus text exposition (404 when metrics are disabled).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from courier import __version__
from courier.analytics import AnalyticsService, ManualRetryService
from courier.config import CourierConfig
from courier.delivery import WebhookDeliveryService
from courier.metrics import CONTENT_TYPE_LATEST, MetricsCollector, create_metrics_middleware
from courier.models import utc_now
from courier.monitoring import WebhookMonitor
from courier.publisher import DeliveryChannel, EventPublisher
from courier.registry import SubscriptionRegistry
from courier.router import create_webhook_router
from courier.security import SecurityValidator
from courier.store import create_store
from courier.worker import DeliveryWorkerPool

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    import httpx

    from courier.store import WebhookStoreProtocol

logger = logging.getLogger(__name__)

__all__ = ["HealthResponse", "create_app"]

SERVICE_NAME = "Courier Webhooks"


class HealthResponse(BaseModel):
    """Response body for ``GET /health``."""

    status: str
    service: str
    version: str
    timestamp: str
    workers_running: bool


def create_app(
    config: CourierConfig | None = None,
    store: WebhookStoreProtocol | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the webhook delivery FastAPI application.

    Services are stored on ``app.state`` (config, store, metrics,
    publisher, pool, registry, analytics, retry_service, monitor,
    delivery_service) so the rest of the platform can publish events
    in-process through ``app.state.publisher``.

    Args:
        config: Service configuration (loads from environment if None)
        store: Storage backend (built from config if None)
        transport: httpx transport for outbound deliveries (tests)

    Returns:
        Configured FastAPI application ready for uvicorn
    """
    if config is None:
        config = CourierConfig()

    owns_store = store is None
    if store is None:
        store = create_store(config)

    metrics = MetricsCollector(enabled=config.metrics_enabled)
    validator = SecurityValidator(config)
    channel = DeliveryChannel(maxsize=config.channel_size)
    delivery_service = WebhookDeliveryService(config, validator, transport=transport)
    publisher = EventPublisher(store, validator, config, channel, metrics)
    pool = DeliveryWorkerPool(store, delivery_service, config, channel, metrics)
    registry = SubscriptionRegistry(store, validator, config, pool)
    analytics = AnalyticsService(store)
    retry_service = ManualRetryService(store, pool, config)
    monitor = WebhookMonitor(store, config, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context for startup and shutdown events."""
        logger.info(f"Starting {SERVICE_NAME} v{__version__}")
        publisher.start()
        pool.start()
        if config.enable_health_checks:
            monitor.start()

        yield

        logger.info("Shutting down gracefully...")
        await monitor.stop()
        await publisher.stop()
        await pool.stop()
        await delivery_service.close()
        if owns_store:
            store.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="Webhook event delivery service",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.store = store
    app.state.metrics = metrics
    app.state.publisher = publisher
    app.state.pool = pool
    app.state.registry = registry
    app.state.analytics = analytics
    app.state.retry_service = retry_service
    app.state.monitor = monitor
    app.state.delivery_service = delivery_service

    if metrics.enabled:
        app.add_middleware(
            BaseHTTPMiddleware,
            dispatch=create_metrics_middleware(metrics),
        )

    app.include_router(
        create_webhook_router(
            config=config,
            store=store,
            registry=registry,
            publisher=publisher,
            pool=pool,
            analytics=analytics,
            retry_service=retry_service,
            monitor=monitor,
        ),
        prefix="/webhooks",
    )

    @app.get("/health", tags=["monitoring"], response_model=HealthResponse)  # type: ignore[misc]
    async def health() -> HealthResponse:
        """Health check endpoint for monitoring systems."""
        return HealthResponse(
            status="ok",
            service=SERVICE_NAME,
            version=__version__,
            timestamp=utc_now().isoformat(),
            workers_running=pool.running,
        )

    @app.get("/metrics", tags=["monitoring"], include_in_schema=False)  # type: ignore[misc]
    async def prometheus_metrics() -> Response:
        """Prometheus metrics in the text exposition format."""
        if not metrics.enabled:
            raise HTTPException(status_code=404, detail="Metrics disabled")
        return Response(content=metrics.render(), media_type=CONTENT_TYPE_LATEST)

    return app
