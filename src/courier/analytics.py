"""Delivery analytics and manual retries."""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from courier.errors import (
    DeliveryNotFoundError,
    WebhookForbiddenError,
    WebhookValidationError,
)
from courier.models import (
    DeliveryRecord,
    DeliveryStatus,
    ErrorBreakdown,
    RetryResponse,
    RetrySummary,
    WebhookAnalytics,
    utc_now,
)
from courier.registry import get_owned_webhook
from courier.store import to_utc
from courier.worker import DeliveryOutcome

if TYPE_CHECKING:
    from courier.config import CourierConfig
    from courier.models import AnalyticsPeriod, RetryRequest
    from courier.store import WebhookStoreProtocol
    from courier.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)

__all__ = [
    "PERIODS",
    "AnalyticsService",
    "ManualRetryService",
    "resolve_window",
]

PERIODS: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

MAX_RETRY_ERRORS = 10
MAX_RETRY_SELECTION = 1000


def resolve_window(
    period: str, start: datetime | None, end: datetime | None
) -> tuple[datetime, datetime]:
    """Turn a named period or an explicit range into UTC bounds.

    Raises:
        WebhookValidationError: If the period is unknown or the range empty
    """
    if period not in PERIODS:
        raise WebhookValidationError(
            f"Unknown period {period!r}, expected one of {', '.join(PERIODS)}",
            details={"period": period},
        )
    end = to_utc(end) if end else utc_now()
    start = to_utc(start) if start else end - PERIODS[period]
    if start >= end:
        raise WebhookValidationError(
            "Analytics start must be before end",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    return start, end


class AnalyticsService:
    """Aggregates delivery outcomes per webhook."""

    def __init__(self, store: WebhookStoreProtocol) -> None:
        self.store = store

    def analytics(
        self,
        webhook_id: str,
        owner_id: str | None,
        period: AnalyticsPeriod = "24h",
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> WebhookAnalytics:
        """Delivery statistics for a webhook.

        An explicit ``start``/``end`` range wins over ``period``.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
            WebhookForbiddenError: If it belongs to another owner
            WebhookValidationError: If the range is empty or the period unknown
        """
        get_owned_webhook(self.store, webhook_id, owner_id)
        start, end = resolve_window(period, start, end)

        stats = self.store.delivery_stats(webhook_id, start, end)
        succeeded = stats.status_breakdown.get(DeliveryStatus.DELIVERED.value, 0)
        success_rate = round(succeeded / stats.total * 100, 2) if stats.total else 0.0

        return WebhookAnalytics(
            webhook_id=webhook_id,
            period_start=start,
            period_end=end,
            total=stats.total,
            succeeded=succeeded,
            failed=stats.total - succeeded,
            success_rate=success_rate,
            event_breakdown=stats.event_breakdown,
            status_breakdown=stats.status_breakdown,
            average_response_time_ms=(
                round(stats.average_response_time_ms, 2)
                if stats.average_response_time_ms is not None
                else None
            ),
        )

    def error_breakdown(
        self,
        webhook_id: str,
        owner_id: str | None,
        period: AnalyticsPeriod = "24h",
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ErrorBreakdown:
        """Failed attempts of a webhook grouped by error type.

        Uses the same window rules as :meth:`analytics`.
        """
        get_owned_webhook(self.store, webhook_id, owner_id)
        start, end = resolve_window(period, start, end)

        counts = self.store.error_type_breakdown(webhook_id, start, end)
        error_types = dict(sorted(counts.items(), key=lambda kv: (-kv[1], kv[0])))
        return ErrorBreakdown(
            webhook_id=webhook_id,
            period_start=start,
            period_end=end,
            total_errors=sum(error_types.values()),
            error_types=error_types,
        )


class ManualRetryService:
    """Resets failed or abandoned deliveries and re-runs them immediately.

    Each selected delivery is reset to ``pending`` under a claim held by
    this service, so the pool's loops leave it alone while the retry
    runs it through the single-delivery path.
    """

    def __init__(
        self,
        store: WebhookStoreProtocol,
        pool: DeliveryWorkerPool,
        config: CourierConfig,
    ) -> None:
        self.store = store
        self.pool = pool
        self.config = config

    def _select_by_ids(
        self, owner_id: str | None, delivery_ids: list[str]
    ) -> list[DeliveryRecord]:
        selected: list[DeliveryRecord] = []
        owners: dict[str, str | None] = {}
        for delivery_id in dict.fromkeys(delivery_ids):
            delivery = self.store.get_delivery(delivery_id)
            if delivery is None:
                raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
            if delivery.webhook_id not in owners:
                webhook = self.store.get_webhook(delivery.webhook_id)
                if webhook is None:
                    raise DeliveryNotFoundError(f"Delivery {delivery_id} not found")
                owners[delivery.webhook_id] = webhook.owner_id
            if owner_id is not None and owners[delivery.webhook_id] != owner_id:
                raise WebhookForbiddenError(
                    f"You do not have permission to retry delivery {delivery_id}"
                )
            selected.append(delivery)
        return selected

    def _select_by_webhook(
        self, owner_id: str | None, webhook_id: str, request: RetryRequest
    ) -> list[DeliveryRecord]:
        get_owned_webhook(self.store, webhook_id, owner_id)
        return self.store.list_deliveries(
            webhook_id=webhook_id,
            status=DeliveryStatus(request.status),
            since=utc_now() - timedelta(hours=request.max_age),
            limit=MAX_RETRY_SELECTION,
        )

    async def _retry_one(
        self, delivery: DeliveryRecord, claim_owner: str
    ) -> tuple[bool, str | None]:
        reset = await asyncio.to_thread(
            self.store.reset_for_retry,
            delivery.id,
            claim_owner,
            utc_now(),
            self.config.claim_lease_seconds,
        )
        if reset is None:
            return False, (
                f"Delivery {delivery.id}: status {delivery.status.value} "
                "cannot be retried"
            )

        outcome = await self.pool.process_delivery(reset)
        if outcome is DeliveryOutcome.DELIVERED:
            return True, None

        final = await asyncio.to_thread(self.store.get_delivery, delivery.id)
        reason = final.error_message if final and final.error_message else outcome.value
        return False, f"Delivery {delivery.id}: {reason}"

    async def manual_retry(
        self, owner_id: str | None, request: RetryRequest
    ) -> RetryResponse:
        """Retry deliveries selected by IDs or by webhook.

        Raises:
            WebhookNotFoundError: If the webhook does not exist
            DeliveryNotFoundError: If a listed delivery does not exist
            WebhookForbiddenError: If the caller does not own the deliveries
            WebhookValidationError: If the request selects no deliveries
        """
        if request.delivery_ids is not None:
            candidates = await asyncio.to_thread(
                self._select_by_ids, owner_id, request.delivery_ids
            )
        elif request.webhook_id is not None:
            candidates = await asyncio.to_thread(
                self._select_by_webhook, owner_id, request.webhook_id, request
            )
        else:
            raise WebhookValidationError(
                "Exactly one of webhookId or deliveryIds must be provided"
            )

        if not candidates:
            return RetryResponse(
                message="No deliveries found to retry",
                results=RetrySummary(),
            )

        claim_owner = f"retry-{secrets.token_hex(4)}"
        summary = RetrySummary(total=len(candidates))
        errors: list[str] = []
        batch_size = self.config.retry_batch_size

        for i in range(0, len(candidates), batch_size):
            batch = candidates[i : i + batch_size]
            results = await asyncio.gather(
                *(self._retry_one(d, claim_owner) for d in batch),
                return_exceptions=True,
            )
            for delivery, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error(f"Manual retry of {delivery.id} failed: {result}")
                    summary.failed += 1
                    errors.append(f"Delivery {delivery.id}: {result}")
                    continue
                ok, error = result
                if ok:
                    summary.success += 1
                else:
                    summary.failed += 1
                    if error:
                        errors.append(error)

        summary.errors = errors[:MAX_RETRY_ERRORS]
        logger.info(
            f"Manual retry: {summary.total} deliveries, {summary.success} "
            f"succeeded, {summary.failed} failed"
        )
        return RetryResponse(
            message=(
                f"Retried {summary.total} deliveries: {summary.success} "
                f"succeeded, {summary.failed} failed"
            ),
            results=summary,
        )
