"""Provider circuit breaker.

This module isolates the provider while it is unhealthy. The breaker has
three states:

- closed: calls pass through; failures are counted
- open: calls fail fast with CIRCUIT_OPEN and never reach the network
- half_open: exactly one probe call is admitted to test recovery

All state changes happen in synchronous sections between awaits, so the
event loop serializes them without a lock.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tubegateway.app.core.config import Settings
from tubegateway.app.exceptions import ErrorKind, GatewayError
from tubegateway.app.services.error_classifier import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Breaker health states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitStatus:
    """Read-only breaker snapshot for health banners and diagnostics."""

    name: str
    state: CircuitState
    consecutive_failures: int
    failure_threshold: int
    last_failure_at: Optional[float]
    probe_in_flight: bool
    opened_count: int
    retry_in: float

    @property
    def available(self) -> bool:
        return self.state == CircuitState.CLOSED or (
            self.state == CircuitState.HALF_OPEN and not self.probe_in_flight
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "available": self.available,
            "consecutive_failures": self.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "probe_in_flight": self.probe_in_flight,
            "opened_count": self.opened_count,
            "retry_in": round(self.retry_in, 3),
        }


def default_trips(exc: BaseException) -> bool:
    """Whether a failure counts against provider health.

    Transport failures, throttling, 5xx and unknown failures trip the breaker.
    Caller-side errors (404, 400, auth, quota) show the provider is answering.
    """
    return classify(exc).kind.trips_breaker


class CircuitBreaker:
    """Fail-fast gate in front of the provider.

    Usage:
        breaker = CircuitBreaker(failure_threshold=5, cooldown_seconds=300)

        try:
            payload = await breaker.execute(lambda: provider.fetch("search", params))
        except GatewayError as e:
            if e.kind == ErrorKind.CIRCUIT_OPEN:
                # Provider isolated, surface the banner
                ...
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        failure_window: float = 60.0,
        name: str = "youtube",
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the breaker.

        Args:
            failure_threshold: Consecutive failures that open the circuit
            cooldown_seconds: Time after the last failure before a probe is allowed
            failure_window: Failures further apart than this restart the count
            name: Label for logs and status
            clock: Monotonic time source (tests)
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.failure_window = failure_window
        self.name = name
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._probe_in_flight = False
        self._opened_count = 0

    @classmethod
    def from_settings(cls, config: Settings, **kwargs: Any) -> "CircuitBreaker":
        return cls(
            failure_threshold=config.circuit_failure_threshold,
            cooldown_seconds=config.circuit_cooldown_seconds,
            failure_window=config.circuit_failure_window_seconds,
            **kwargs,
        )

    @property
    def state(self) -> CircuitState:
        """Current state, moving open to half_open once the cooldown has elapsed."""
        if (
            self._state == CircuitState.OPEN
            and self._last_failure_at is not None
            and self._clock() - self._last_failure_at >= self.cooldown_seconds
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info(f"Circuit '{self.name}' is half-open, admitting one probe")
        return self._state

    def allows_request(self) -> bool:
        """Whether a call made now would reach the provider."""
        state = self.state
        return state == CircuitState.CLOSED or (
            state == CircuitState.HALF_OPEN and not self._probe_in_flight
        )

    def status(self) -> CircuitStatus:
        state = self.state
        retry_in = 0.0
        if state == CircuitState.OPEN and self._last_failure_at is not None:
            retry_in = max(0.0, self.cooldown_seconds - (self._clock() - self._last_failure_at))
        return CircuitStatus(
            name=self.name,
            state=state,
            consecutive_failures=self._consecutive_failures,
            failure_threshold=self.failure_threshold,
            last_failure_at=self._last_failure_at,
            probe_in_flight=self._probe_in_flight,
            opened_count=self._opened_count,
            retry_in=retry_in,
        )

    def reset(self) -> None:
        """Force the breaker closed and clear its counters."""
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_at = None
        self._probe_in_flight = False
        logger.info(f"Circuit '{self.name}' manually reset")

    def open_error(self) -> GatewayError:
        status = self.status()
        return GatewayError.of(
            ErrorKind.CIRCUIT_OPEN,
            detail=f"circuit '{self.name}' is {status.state.value}",
            retry_after=status.retry_in or None,
        )

    async def execute(
        self,
        call: Callable[[], Awaitable[T]],
        *,
        trips: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """Run ``call`` through the breaker.

        Args:
            call: Zero-argument coroutine function issuing the network call
            trips: Predicate deciding whether a failure counts against the
                provider; defaults to the error classifier's verdict

        Returns:
            The result of ``call``

        Raises:
            GatewayError: CIRCUIT_OPEN without invoking ``call`` when open, or
                when half-open with a probe already in flight
        """
        is_probe = self._admit()
        try:
            result = await call()
        except asyncio.CancelledError:
            self._abandon(is_probe)
            raise
        except Exception as e:
            if isinstance(e, GatewayError) and e.kind == ErrorKind.CANCELLED:
                self._abandon(is_probe)
            elif (trips or default_trips)(e):
                self._record_failure(is_probe)
            else:
                self._record_success(is_probe)
            raise
        self._record_success(is_probe)
        return result

    def _admit(self) -> bool:
        state = self.state
        if state == CircuitState.OPEN:
            raise self.open_error()
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise self.open_error()
            self._probe_in_flight = True
            return True
        return False

    def _abandon(self, is_probe: bool) -> None:
        if is_probe:
            self._probe_in_flight = False
            logger.debug(f"Circuit '{self.name}' probe abandoned, slot freed")

    def _record_success(self, is_probe: bool) -> None:
        if is_probe:
            self._probe_in_flight = False
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            logger.info(f"Circuit '{self.name}' probe succeeded, circuit closed")
        elif self._state == CircuitState.CLOSED:
            self._consecutive_failures = 0

    def _record_failure(self, is_probe: bool) -> None:
        now = self._clock()
        if self._last_failure_at is not None and now - self._last_failure_at > self.failure_window:
            self._consecutive_failures = 1
        else:
            self._consecutive_failures += 1
        self._last_failure_at = now

        if is_probe:
            self._probe_in_flight = False
            self._open("probe failed")
        elif (
            self._state == CircuitState.CLOSED
            and self._consecutive_failures >= self.failure_threshold
        ):
            self._open(f"{self._consecutive_failures} consecutive failures")

    def _open(self, why: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_count += 1
        logger.warning(
            f"Circuit '{self.name}' opened ({why}), "
            f"cooling down for {self.cooldown_seconds:.0f}s",
            extra={"circuit_state": CircuitState.OPEN.value},
        )
