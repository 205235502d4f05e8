"""Admission control for provider calls.

A call is admitted when three limits agree:

- a token bucket refilled at ``requests_per_second``
- a sliding 60 second window capped at ``requests_per_minute``
- at most ``max_concurrent`` permits in flight

Calls that cannot be admitted immediately wait in a bounded priority queue
(FIFO within a tier). All bookkeeping runs in synchronous sections on the
event loop, so admission and dequeue are atomic with respect to the counters.
"""

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncGenerator, Callable, Deque, List, Optional

from tubegateway.app.core.config import Settings
from tubegateway.app.exceptions import OVERLOADED_REASON, ErrorKind, GatewayError

logger = logging.getLogger(__name__)


class RequestPriority(Enum):
    """Priority levels for provider calls. Lower values dequeue first."""
    HIGH = 1        # Foreground user action
    NORMAL = 2
    BACKGROUND = 3  # Prefetch and refresh


@dataclass(eq=False)
class Permit:
    """Right to have one provider call in flight. Release exactly once."""
    permit_id: int
    priority: RequestPriority
    acquired_at: float
    released: bool = False


@dataclass
class TokenBucket:
    """Token bucket state."""
    tokens: float
    last_update: float


@dataclass(order=True)
class _Waiter:
    rank: int
    seq: int
    priority: RequestPriority = field(compare=False)
    future: asyncio.Future = field(compare=False)


class RateLimiter:
    """Token bucket + sliding window + concurrency cap with a priority queue.

    Usage:
        limiter = RateLimiter(requests_per_second=10, max_concurrent=5)

        async with limiter.permit(RequestPriority.HIGH, timeout=5.0):
            # Issue the provider call
            pass
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        requests_per_second: float = 10.0,
        requests_per_minute: int = 600,
        max_concurrent: int = 5,
        max_queue_size: int = 100,
        default_timeout: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the limiter.

        Args:
            requests_per_second: Token refill rate; also the bucket capacity
            requests_per_minute: Admissions allowed in any 60 second window
            max_concurrent: Permits allowed in flight at once
            max_queue_size: Waiters allowed in the queue before backpressure
            default_timeout: Queue wait bound used when ``acquire`` gets none
            clock: Monotonic time source (tests)
        """
        if requests_per_second <= 0 or requests_per_minute < 1 or max_concurrent < 1:
            raise ValueError("rate limits must be positive")
        self.requests_per_second = requests_per_second
        self.requests_per_minute = requests_per_minute
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.default_timeout = default_timeout
        self._clock = clock

        self._capacity = max(1.0, float(requests_per_second))
        self._bucket = TokenBucket(tokens=self._capacity, last_update=clock())
        self._window: Deque[float] = deque()
        self._in_flight = 0
        self._waiters: List[_Waiter] = []
        self._seq = itertools.count()
        self._permit_ids = itertools.count(1)
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_due: Optional[float] = None

        # Counters for monitoring
        self._admitted = 0
        self._queued = 0
        self._rejected = 0
        self._timed_out = 0

    @classmethod
    def from_settings(cls, config: Settings, **kwargs) -> "RateLimiter":
        return cls(
            requests_per_second=config.rate_limit_requests_per_second,
            requests_per_minute=config.rate_limit_requests_per_minute,
            max_concurrent=config.rate_limit_max_concurrent,
            max_queue_size=config.rate_limit_queue_size,
            default_timeout=config.rate_limit_acquire_timeout,
            **kwargs,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queue_depth(self) -> int:
        return sum(1 for w in self._waiters if not w.future.done())

    async def acquire(
        self,
        priority: RequestPriority = RequestPriority.NORMAL,
        timeout: Optional[float] = None,
    ) -> Permit:
        """Wait for admission.

        Args:
            priority: Queue tier for this call
            timeout: Seconds to wait in the queue; ``default_timeout`` if None

        Returns:
            A permit that must be passed to ``release`` exactly once

        Raises:
            GatewayError: TIMEOUT if the wait exceeds ``timeout``, or
                RATE_LIMITED (reason ``overloaded``) when the queue is full
        """
        if not self._waiters and self._can_admit(self._clock()):
            return self._grant(priority)

        self._make_room(priority)

        loop = asyncio.get_running_loop()
        waiter = _Waiter(priority.value, next(self._seq), priority, loop.create_future())
        heapq.heappush(self._waiters, waiter)
        self._queued += 1
        self._dispatch()

        wait = self.default_timeout if timeout is None else timeout
        try:
            if wait is None:
                return await waiter.future
            async with asyncio.timeout(wait):
                return await waiter.future
        except TimeoutError:
            self._abandon(waiter)
            self._timed_out += 1
            logger.warning(
                f"Rate limiter wait timed out after {wait:.2f}s",
                extra={"priority": priority.name},
            )
            raise GatewayError.of(
                ErrorKind.TIMEOUT, detail=f"no rate limit capacity within {wait:.2f}s"
            ) from None
        except BaseException:
            self._abandon(waiter)
            raise

    def release(self, permit: Permit) -> None:
        """Return a permit and admit queued callers if capacity allows.

        Raises:
            RuntimeError: If the permit was already released
        """
        if permit.released:
            raise RuntimeError(f"permit {permit.permit_id} already released")
        permit.released = True
        self._in_flight -= 1
        self._dispatch()

    @asynccontextmanager
    async def permit(
        self,
        priority: RequestPriority = RequestPriority.NORMAL,
        timeout: Optional[float] = None,
    ) -> AsyncGenerator[Permit, None]:
        """Scoped acquisition: the permit is released on every exit path."""
        held = await self.acquire(priority, timeout)
        try:
            yield held
        finally:
            self.release(held)

    def stats(self) -> dict:
        """Get current limiter statistics."""
        now = self._clock()
        self._refill(now)
        self._prune(now)
        by_priority = {p.name.lower(): 0 for p in RequestPriority}
        for w in self._waiters:
            if not w.future.done():
                by_priority[w.priority.name.lower()] += 1
        return {
            "admitted": self._admitted,
            "queued": self._queued,
            "rejected": self._rejected,
            "timed_out": self._timed_out,
            "in_flight": self._in_flight,
            "max_concurrent": self.max_concurrent,
            "queue_depth": sum(by_priority.values()),
            "queue_by_priority": by_priority,
            "tokens_available": round(self._bucket.tokens, 3),
            "window_count": len(self._window),
        }

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._bucket.last_update)
        self._bucket.tokens = min(
            self._capacity, self._bucket.tokens + elapsed * self.requests_per_second
        )
        self._bucket.last_update = now

    def _prune(self, now: float) -> None:
        while self._window and now - self._window[0] >= self.WINDOW_SECONDS:
            self._window.popleft()

    def _can_admit(self, now: float) -> bool:
        self._refill(now)
        self._prune(now)
        return (
            self._bucket.tokens >= 1.0
            and len(self._window) < self.requests_per_minute
            and self._in_flight < self.max_concurrent
        )

    def _grant(self, priority: RequestPriority) -> Permit:
        now = self._clock()
        self._bucket.tokens -= 1.0
        self._window.append(now)
        self._in_flight += 1
        self._admitted += 1
        return Permit(permit_id=next(self._permit_ids), priority=priority, acquired_at=now)

    def _make_room(self, priority: RequestPriority) -> None:
        """Apply backpressure when the queue is full.

        A newcomer that outranks the lowest-priority waiter takes its place;
        otherwise the newcomer is refused.
        """
        live = [w for w in self._waiters if not w.future.done()]
        if len(live) < self.max_queue_size:
            return
        victim = max(live) if live else None
        if victim is not None and victim.rank > priority.value:
            self._remove(victim)
            self._rejected += 1
            victim.future.set_exception(self._overloaded(victim.priority, displaced=True))
            logger.warning(f"Queue full, displaced a {victim.priority.name} waiter for {priority.name}")
            return
        self._rejected += 1
        raise self._overloaded(priority)

    def _overloaded(self, priority: RequestPriority, displaced: bool = False) -> GatewayError:
        detail = f"rate limiter queue full ({self.max_queue_size}), {priority.name} request refused"
        if displaced:
            detail += " after displacement by a higher priority request"
        return GatewayError.of(
            ErrorKind.RATE_LIMITED, detail=detail, provider_reason=OVERLOADED_REASON
        )

    def _remove(self, waiter: _Waiter) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            return
        heapq.heapify(self._waiters)

    def _abandon(self, waiter: _Waiter) -> None:
        """Drop a waiter that stopped waiting; give back a permit granted meanwhile."""
        self._remove(waiter)
        fut = waiter.future
        if fut.done() and not fut.cancelled() and fut.exception() is None:
            self.release(fut.result())
        elif not fut.done():
            fut.cancel()
        self._dispatch()

    def _dispatch(self) -> None:
        """Grant permits to queued callers in priority order while capacity lasts."""
        now = self._clock()
        while self._waiters:
            head = self._waiters[0]
            if head.future.done():
                heapq.heappop(self._waiters)
                continue
            if not self._can_admit(now):
                break
            heapq.heappop(self._waiters)
            head.future.set_result(self._grant(head.priority))
        if self._waiters:
            self._schedule_wakeup(now)

    def _schedule_wakeup(self, now: float) -> None:
        # Concurrency slots come back through release(); only time-based limits need a timer
        if self._in_flight >= self.max_concurrent:
            return
        delay = 0.0
        if self._bucket.tokens < 1.0:
            delay = max(delay, (1.0 - self._bucket.tokens) / self.requests_per_second)
        if len(self._window) >= self.requests_per_minute:
            delay = max(delay, self._window[0] + self.WINDOW_SECONDS - now)
        due = now + delay
        if self._timer is not None and self._timer_due is not None and self._timer_due <= due:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._on_timer)
        self._timer_due = due

    def _on_timer(self) -> None:
        self._timer = None
        self._timer_due = None
        self._dispatch()
