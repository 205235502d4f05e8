"""Provider package for the gateway.

This package provides:
- Base provider interface (BaseProvider)
- YouTube Data API implementation (YouTubeProvider)
- Circuit breaking (CircuitBreaker, CircuitState)
- Retry mechanism (RetryPolicy, execute_with_retry, with_retry)
"""

from tubegateway.app.providers.base import BaseProvider
from tubegateway.app.providers.circuit_breaker import CircuitBreaker, CircuitState, CircuitStatus
from tubegateway.app.providers.retry import (
    RetryAttemptState,
    RetryPolicy,
    execute_with_retry,
    with_retry,
)
from tubegateway.app.providers.youtube import ENDPOINTS, YouTubeProvider

__all__ = [
    # Base
    "BaseProvider",
    # Providers
    "YouTubeProvider",
    "ENDPOINTS",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    # Retry
    "RetryAttemptState",
    "RetryPolicy",
    "execute_with_retry",
    "with_retry",
]
