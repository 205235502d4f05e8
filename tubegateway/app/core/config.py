from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    The API key is held by the caller's settings and is never logged.
    """

    # YouTube Data API v3
    youtube_api_key: str = Field(default="", repr=False)
    youtube_base_url: str = "https://www.googleapis.com/youtube/v3"
    youtube_max_batch_size: int = 50  # Identifiers per list-style call

    # Quota budget
    quota_daily_limit: int = 10000
    quota_warning_ratio: float = 0.8
    quota_critical_ratio: float = 0.95
    quota_reset_hour_utc: int = 7  # Provider resets at midnight Pacific

    # Rate limiting
    rate_limit_requests_per_second: float = 10.0
    rate_limit_requests_per_minute: int = 600
    rate_limit_max_concurrent: int = 5
    rate_limit_queue_size: int = 100
    rate_limit_acquire_timeout: float = 30.0

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 300.0  # 5 minutes
    circuit_failure_window_seconds: float = 60.0

    # Retry policy
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff_multiplier: float = 2.0
    retry_jitter_factor: float = 0.1
    retry_deadline_seconds: float | None = 60.0

    # HTTP Client connection pool settings
    httpx_timeout: float = 10.0  # Per-call timeout, distinct from retry deadline
    httpx_connect_timeout: float = 5.0
    httpx_read_timeout: float = 10.0
    httpx_write_timeout: float = 5.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 20
    httpx_max_keepalive_connections: int = 10

    # Transformation pipeline
    transform_cache_size: int = 1000  # 0 disables memoization

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "quota_daily_limit",
        "rate_limit_requests_per_minute",
        "rate_limit_max_concurrent",
        "rate_limit_queue_size",
        "circuit_failure_threshold",
        "retry_max_attempts",
        "youtube_max_batch_size",
    )
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        """Validate limits are at least 1."""
        if v < 1:
            raise ValueError("limit values must be at least 1")
        return v

    @field_validator(
        "rate_limit_requests_per_second",
        "rate_limit_acquire_timeout",
        "circuit_cooldown_seconds",
        "circuit_failure_window_seconds",
        "httpx_timeout",
        "httpx_connect_timeout",
        "httpx_read_timeout",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        """Validate rates and timeouts are positive."""
        if v <= 0:
            raise ValueError("rate and timeout values must be positive")
        return v

    @field_validator("quota_warning_ratio", "quota_critical_ratio")
    @classmethod
    def validate_ratio(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("quota threshold ratios must be in (0, 1]")
        return v

    @field_validator("retry_jitter_factor")
    @classmethod
    def validate_jitter(cls, v: float) -> float:
        if not 0 <= v < 1:
            raise ValueError("retry_jitter_factor must be in [0, 1)")
        return v

    @field_validator("quota_reset_hour_utc")
    @classmethod
    def validate_reset_hour(cls, v: int) -> int:
        if not 0 <= v <= 23:
            raise ValueError("quota_reset_hour_utc must be between 0 and 23")
        return v

    @field_validator("retry_base_delay", "retry_max_delay", "retry_backoff_multiplier")
    @classmethod
    def validate_backoff(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("backoff values must be positive")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Default settings instance
settings = Settings()
