"""Tests for service configuration."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from courier.config import DEFAULT_MAX_PAYLOAD_SIZE, MAX_TIMEOUT_SECONDS, CourierConfig


class TestCourierConfig:
    """Tests for CourierConfig defaults and environment loading."""

    def test_defaults(self) -> None:
        """Test default values match the documented policy."""
        config = CourierConfig(_env_file=None)

        assert config.concurrency == 5
        assert config.batch_size == 10
        assert config.poll_interval == 5.0
        assert config.retry_interval == 30.0
        assert config.dead_letter_threshold == 86400
        assert config.cleanup_interval == 3600.0
        assert config.shutdown_timeout == 30.0
        assert config.claim_lease_seconds == 600
        assert config.retry_batch_size == 5
        assert config.signature_tolerance == 300
        assert config.max_payload_size == DEFAULT_MAX_PAYLOAD_SIZE
        assert config.require_https is False
        assert config.allow_localhost is False
        assert config.resolve_dns is True
        assert config.storage == "sqlite"

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test COURIER_ prefixed variables override defaults."""
        monkeypatch.setenv("COURIER_CONCURRENCY", "8")
        monkeypatch.setenv("COURIER_STORAGE", "memory")
        monkeypatch.setenv("COURIER_REQUIRE_HTTPS", "true")

        config = CourierConfig(_env_file=None)

        assert config.concurrency == 8
        assert config.storage == "memory"
        assert config.require_https is True

    def test_api_keys_from_json_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test API keys load from a JSON list."""
        monkeypatch.setenv("COURIER_API_KEYS", '["key-one", "key-two"]')

        config = CourierConfig(_env_file=None)

        assert config.api_keys == ["key-one", "key-two"]

    def test_invalid_concurrency(self) -> None:
        """Test out-of-range concurrency is rejected."""
        with pytest.raises(ValidationError):
            CourierConfig(_env_file=None, concurrency=0)

    def test_invalid_storage(self) -> None:
        """Test unknown storage backends are rejected."""
        with pytest.raises(ValidationError):
            CourierConfig(_env_file=None, storage="redis")

    def test_dead_letter_threshold_minimum(self) -> None:
        """Test the dead-letter threshold cannot be below one minute."""
        with pytest.raises(ValidationError):
            CourierConfig(_env_file=None, dead_letter_threshold=10)

    def test_claim_lease_must_outlive_timeout(self) -> None:
        """Test a lease no longer than the maximum request timeout is rejected."""
        with pytest.raises(ValidationError, match="maximum delivery timeout"):
            CourierConfig(_env_file=None, claim_lease_seconds=MAX_TIMEOUT_SECONDS)

        config = CourierConfig(
            _env_file=None, claim_lease_seconds=MAX_TIMEOUT_SECONDS + 1
        )
        assert config.claim_lease_seconds == MAX_TIMEOUT_SECONDS + 1
