"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from tubegateway.app.core.config import Settings


class TestSettings:
    """Test default values and validation."""

    def test_defaults(self):
        config = Settings(_env_file=None)

        assert config.quota_daily_limit == 10000
        assert config.quota_reset_hour_utc == 7
        assert config.rate_limit_max_concurrent == 5
        assert config.circuit_failure_threshold == 5
        assert config.circuit_cooldown_seconds == 300.0
        assert config.retry_max_attempts == 3
        assert config.youtube_max_batch_size == 50

    def test_api_key_not_in_repr(self):
        config = Settings(_env_file=None, youtube_api_key="AIza-secret-value")

        assert "AIza-secret-value" not in repr(config)

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("QUOTA_DAILY_LIMIT", "500")
        monkeypatch.setenv("RETRY_JITTER_FACTOR", "0")

        config = Settings(_env_file=None)

        assert config.quota_daily_limit == 500
        assert config.retry_jitter_factor == 0.0

    @pytest.mark.parametrize(
        "field,value",
        [
            ("quota_daily_limit", 0),
            ("rate_limit_max_concurrent", 0),
            ("rate_limit_requests_per_second", 0),
            ("circuit_cooldown_seconds", -1),
            ("quota_warning_ratio", 1.5),
            ("retry_jitter_factor", 1.0),
            ("quota_reset_hour_utc", 24),
            ("retry_base_delay", 0),
        ],
    )
    def test_rejects_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})
