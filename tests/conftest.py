"""Pytest configuration and shared fixtures for Courier tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx
import pytest

from courier.config import CourierConfig
from courier.models import HmacAuth, WebhookEvent, WebhookRecord
from courier.security import SecurityValidator
from courier.store import (
    MemoryWebhookStore,
    SQLiteWebhookStore,
    WebhookStoreProtocol,
    generate_event_id,
    generate_webhook_id,
)

TEST_SECRET = "whsec_" + "a" * 40


@pytest.fixture
def config() -> CourierConfig:
    """Provide a configuration tuned for fast, isolated tests.

    Returns:
        CourierConfig with in-memory storage and no backoff delay.
    """
    return CourierConfig(
        _env_file=None,
        storage="memory",
        retry_base_delay=0,
        resolve_dns=False,
        poll_interval=0.05,
        retry_interval=0.05,
        enable_cleanup=False,
        enable_health_checks=False,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def validator(config: CourierConfig) -> SecurityValidator:
    """Provide a security validator bound to the test config."""
    return SecurityValidator(config)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Any) -> WebhookStoreProtocol:
    """Provide each storage backend in turn."""
    if request.param == "memory":
        return MemoryWebhookStore()
    backend = SQLiteWebhookStore(tmp_path / "webhooks.db")
    request.addfinalizer(backend.close)
    return backend


@pytest.fixture
def make_webhook() -> Callable[..., WebhookRecord]:
    """Provide a factory for webhook records."""

    def factory(**overrides: Any) -> WebhookRecord:
        values: dict[str, Any] = {
            "id": generate_webhook_id(),
            "owner_id": "owner-1",
            "name": "Document sync",
            "url": "https://hooks.example.com/courier",
            "event_types": ["document.uploaded"],
            "auth": HmacAuth(secret=TEST_SECRET),
        }
        values.update(overrides)
        return WebhookRecord(**values)

    return factory


@pytest.fixture
def make_event() -> Callable[..., WebhookEvent]:
    """Provide a factory for events."""

    def factory(event_type: str = "document.uploaded", **overrides: Any) -> WebhookEvent:
        values: dict[str, Any] = {
            "id": generate_event_id(event_type),
            "type": event_type,
            "payload": {"documentId": "doc-1", "mimeType": "application/pdf"},
            "metadata": {"source": "tests"},
        }
        values.update(overrides)
        return WebhookEvent(**values)

    return factory


class Subscriber:
    """Fake subscriber endpoint served through httpx.MockTransport.

    Answers with the queued status codes in order, then with ``default``.
    """

    def __init__(self, *statuses: int, default: int = 200) -> None:
        self.statuses = list(statuses)
        self.default = default
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default
        return httpx.Response(status, json={"received": status < 300})


@pytest.fixture
def subscriber() -> Subscriber:
    """Provide a subscriber answering 200 to everything."""
    return Subscriber()


@pytest.fixture
def make_subscriber() -> type[Subscriber]:
    """Provide the subscriber class for scripted responses."""
    return Subscriber
