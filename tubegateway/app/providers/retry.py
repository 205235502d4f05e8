"""Retry orchestration with exponential backoff and jitter.

This module provides a configurable retry policy, the retry loop that drives
an operation through it, and a decorator for plain coroutine functions.
Every failure is classified first; only the retryable kinds are retried,
and the loop is bounded by an attempt ceiling and an optional deadline.
"""

import asyncio
import functools
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from tubegateway.app.core.cancellation import CancellationToken
from tubegateway.app.core.config import Settings
from tubegateway.app.core.logging import get_log_context, get_logger
from tubegateway.app.exceptions import OVERLOADED_REASON, ErrorKind, GatewayError, TypedError
from tubegateway.app.services.error_classifier import classify

logger = get_logger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_attempts: Total attempts including the first one (default: 3)
        base_delay: Delay before the first retry in seconds (default: 1.0)
        max_delay: Ceiling for any single delay in seconds (default: 30.0)
        backoff_multiplier: Growth factor between retries (default: 2.0)
        jitter_factor: Delay is scaled by a uniform factor in
            ``[1 - jitter_factor, 1 + jitter_factor]`` (default: 0.1)
        deadline: Seconds the whole operation may take, or None
        unknown_error_retries: Retries allowed for UNKNOWN_ERROR (default: 1)

    Example:
        >>> policy = RetryPolicy(base_delay=2.0, jitter_factor=0.0)
        >>> policy.calculate_delay(attempt=2)  # Returns 8.0
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    deadline: Optional[float] = None
    unknown_error_retries: int = 1

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0 <= self.jitter_factor < 1:
            raise ValueError("jitter_factor must be in [0, 1)")

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            backoff_multiplier=config.retry_backoff_multiplier,
            jitter_factor=config.retry_jitter_factor,
            deadline=config.retry_deadline_seconds,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before a given retry.

        Uses exponential backoff: delay = min(base_delay * (backoff_multiplier ^ attempt), max_delay)

        Args:
            attempt: The retry number (0-indexed, so 0 is the first retry)

        Returns:
            Delay in seconds, before jitter
        """
        delay = self.base_delay * (self.backoff_multiplier**attempt)
        return min(delay, self.max_delay)

    def apply_jitter(self, delay: float, rng: Optional[random.Random] = None) -> float:
        """Scale ``delay`` by a uniform random factor around 1."""
        if self.jitter_factor == 0 or delay == 0:
            return delay
        rng = rng or random
        factor = rng.uniform(1 - self.jitter_factor, 1 + self.jitter_factor)
        return delay * factor

    def should_retry(self, error: TypedError, state: "RetryAttemptState") -> bool:
        """Decide whether ``error`` on the current attempt earns another try."""
        if not error.retryable:
            return False
        # Queue backpressure fails the caller now instead of re-queuing it
        if error.provider_reason == OVERLOADED_REASON:
            return False
        if state.attempt >= self.max_attempts:
            return False
        if error.kind == ErrorKind.UNKNOWN_ERROR:
            unknown_seen = sum(1 for e in state.error_history if e.kind == ErrorKind.UNKNOWN_ERROR)
            if unknown_seen > self.unknown_error_retries:
                return False
        return True


@dataclass
class RetryAttemptState:
    """Bookkeeping owned by one in-flight operation.

    Attributes:
        attempt: Number of the attempt in progress (1-based)
        next_delay: Delay chosen before the upcoming retry
        deadline: Loop-clock time after which no retry starts, or None
        error_history: Classified errors of the failed attempts so far
    """

    attempt: int = 0
    next_delay: float = 0.0
    deadline: Optional[float] = None
    error_history: List[TypedError] = field(default_factory=list)

    @property
    def last_error(self) -> Optional[TypedError]:
        return self.error_history[-1] if self.error_history else None


async def execute_with_retry(
    operation: Callable[[RetryAttemptState], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    cancel_token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[RetryAttemptState, TypedError], Any]] = None,
    reset_time: Any = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    rng: Optional[random.Random] = None,
    clock: Optional[Callable[[], float]] = None,
    name: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or a terminal error is reached.

    Args:
        operation: Coroutine function called once per attempt with the
            shared ``RetryAttemptState``
        policy: Retry policy. Uses defaults if not provided.
        cancel_token: Checked before each attempt and each sleep; the sleep
            wakes up early when it fires
        on_retry: Called with the state and the error before each backoff sleep
        reset_time: Next quota reset, forwarded to the classifier
        sleep: Replacement for the backoff sleep (tests)
        rng: Random source for jitter (tests)
        clock: Monotonic clock for the deadline (tests)
        name: Label used in log lines

    Returns:
        Whatever ``operation`` returns on its successful attempt

    Raises:
        GatewayError: Carrying the terminal TypedError
    """
    retry_policy = policy or RetryPolicy()
    clock = clock or asyncio.get_running_loop().time
    if sleep is None:
        sleep = cancel_token.sleep if cancel_token is not None else asyncio.sleep

    state = RetryAttemptState()
    if retry_policy.deadline is not None:
        state.deadline = clock() + retry_policy.deadline

    while True:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        state.attempt += 1
        try:
            return await operation(state)
        except GatewayError as e:
            error = e.error
            cause: Exception = e
        except Exception as e:
            error = classify(e, reset_time=reset_time)
            cause = e

        state.error_history.append(error)
        context = get_log_context(operation=name, attempt=state.attempt, error_kind=error.kind.value)

        if not retry_policy.should_retry(error, state):
            if error.retryable and state.attempt >= retry_policy.max_attempts:
                logger.warning(
                    f"Max attempts ({retry_policy.max_attempts}) exhausted for {name}: "
                    f"{error.kind.name}: {error.detail}",
                    extra=context,
                )
            else:
                logger.debug(f"Non-retryable failure in {name}: {error.kind.name}", extra=context)
            if isinstance(cause, GatewayError):
                raise cause
            raise GatewayError(error) from cause

        delay = retry_policy.apply_jitter(retry_policy.calculate_delay(state.attempt - 1), rng)
        if error.kind == ErrorKind.RATE_LIMITED and error.retry_after:
            delay = max(delay, error.retry_after)
        state.next_delay = delay

        if state.deadline is not None and clock() + delay >= state.deadline:
            logger.warning(
                f"Deadline reached for {name} after attempt {state.attempt}, "
                f"surfacing {error.kind.name}",
                extra=context,
            )
            if isinstance(cause, GatewayError):
                raise cause
            raise GatewayError(error) from cause

        if on_retry is not None:
            on_retry(state, error)

        logger.warning(
            f"Retry {state.attempt}/{retry_policy.max_attempts - 1} for {name} "
            f"after {error.kind.name}. Waiting {delay:.2f}s...",
            extra=context,
        )

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        await sleep(delay)


def with_retry(
    policy: Optional[RetryPolicy] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> Callable[[F], F]:
    """Decorator that adds retry logic with exponential backoff.

    Args:
        policy: RetryPolicy configuration. Uses defaults if not provided.
        cancel_token: Optional token shared by every call of the function

    Returns:
        Decorated function with retry logic

    Example:
        >>> @with_retry(policy=RetryPolicy(max_attempts=3))
        ... async def list_videos(self, ids):
        ...     return await self._fetch(ids)
    """
    retry_policy = policy or RetryPolicy()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async def attempt(_state: RetryAttemptState) -> Any:
                return await func(*args, **kwargs)

            return await execute_with_retry(
                attempt,
                retry_policy,
                cancel_token=cancel_token,
                name=func.__name__,
            )

        return wrapper  # type: ignore

    return decorator
