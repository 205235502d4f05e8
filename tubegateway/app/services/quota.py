"""Daily quota budget with a reserve/commit/rollback protocol.

Reservations are pessimistic: the estimated cost is debited before the
network call so concurrent callers cannot collectively overspend, and every
reservation is settled exactly once, by ``commit`` or by ``rollback``.
All mutation happens under one ``asyncio.Lock``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from tubegateway.app.core.config import Settings
from tubegateway.app.exceptions import ErrorKind, GatewayError
from tubegateway.app.services.error_classifier import quota_hints
from tubegateway.app.services.operation_costs import OperationCostTable
from tubegateway.app.services.usage_ledger import (
    InMemoryUsageLedger,
    UsageLedger,
    UsageOutcome,
    UsageRecord,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_reset_after(now: datetime, reset_hour_utc: int) -> datetime:
    """First daily reset boundary strictly later than ``now``."""
    now = now.astimezone(timezone.utc)
    boundary = now.replace(hour=reset_hour_utc, minute=0, second=0, microsecond=0)
    if boundary <= now:
        boundary += timedelta(days=1)
    return boundary


class QuotaLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class QuotaBudget:
    """Snapshot of the daily allowance, for display only.

    Admission decisions always re-check live state inside ``reserve``.
    """

    daily_limit: int
    used: int
    reset_time: datetime
    warning_threshold: float = 0.8
    critical_threshold: float = 0.95

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.used)

    @property
    def usage_ratio(self) -> float:
        return self.used / self.daily_limit if self.daily_limit else 1.0

    @property
    def level(self) -> QuotaLevel:
        if self.used >= self.daily_limit:
            return QuotaLevel.EXHAUSTED
        if self.usage_ratio >= self.critical_threshold:
            return QuotaLevel.CRITICAL
        if self.usage_ratio >= self.warning_threshold:
            return QuotaLevel.WARNING
        return QuotaLevel.OK

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "daily_limit": self.daily_limit,
            "remaining": self.remaining,
            "reset_time": self.reset_time.isoformat(),
            "level": self.level.value,
        }


@dataclass(frozen=True)
class ReservationToken:
    """Handle for one provisional debit.

    Attributes:
        reservation_id: Unique id, also written to the ledger
        operation_kind: Operation the units were reserved for
        estimated_cost: Units debited at reservation time
        window_reset_time: Reset boundary of the window the debit landed in
    """

    reservation_id: str
    operation_kind: str
    estimated_cost: int
    window_reset_time: datetime


class QuotaManager:
    """Tracks the provider's daily unit budget.

    Usage:
        token = await quota.reserve("search")
        try:
            payload = await call_provider()
        except Exception:
            await quota.rollback(token)
            raise
        await quota.commit(token, actual_cost=100)
    """

    def __init__(
        self,
        daily_limit: int = 10000,
        cost_table: Optional[OperationCostTable] = None,
        ledger: Optional[UsageLedger] = None,
        warning_threshold: float = 0.8,
        critical_threshold: float = 0.95,
        reset_hour_utc: int = 7,
        clock: Callable[[], datetime] = utcnow,
        initial_used: int = 0,
    ):
        if daily_limit < 1:
            raise ValueError("daily_limit must be at least 1")
        if not 0 <= initial_used <= daily_limit:
            raise ValueError("initial_used must be within [0, daily_limit]")
        self.daily_limit = daily_limit
        self.cost_table = cost_table if cost_table is not None else OperationCostTable()
        self.ledger = ledger if ledger is not None else InMemoryUsageLedger()
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.reset_hour_utc = reset_hour_utc
        self._clock = clock

        self._used = initial_used
        self._reset_time = next_reset_after(clock(), reset_hour_utc)
        self._outstanding: Dict[str, ReservationToken] = {}
        self._announced: set[QuotaLevel] = set()
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        config: Settings,
        cost_table: Optional[OperationCostTable] = None,
        ledger: Optional[UsageLedger] = None,
        **kwargs,
    ) -> "QuotaManager":
        return cls(
            daily_limit=config.quota_daily_limit,
            cost_table=cost_table,
            ledger=ledger,
            warning_threshold=config.quota_warning_ratio,
            critical_threshold=config.quota_critical_ratio,
            reset_hour_utc=config.quota_reset_hour_utc,
            **kwargs,
        )

    def now(self) -> datetime:
        return self._clock()

    @property
    def outstanding(self) -> int:
        """Number of reservations not yet settled."""
        return len(self._outstanding)

    def status(self) -> QuotaBudget:
        """Non-blocking snapshot of the budget."""
        return QuotaBudget(
            daily_limit=self.daily_limit,
            used=self._used,
            reset_time=self._reset_time,
            warning_threshold=self.warning_threshold,
            critical_threshold=self.critical_threshold,
        )

    def estimate(self, operation_kind: str, batch_size: int = 1) -> int:
        try:
            return self.cost_table.cost_for(operation_kind, batch_size)
        except KeyError:
            raise GatewayError.of(
                ErrorKind.INVALID_REQUEST,
                detail=f"no published cost for operation kind: {operation_kind}",
            ) from None

    async def reserve(
        self, operation_kind: str, estimated_cost: Optional[int] = None
    ) -> ReservationToken:
        """Provisionally debit ``estimated_cost`` units.

        Args:
            operation_kind: Provider operation kind
            estimated_cost: Units to reserve; defaults to the cost table entry

        Returns:
            A token to pass to ``commit`` or ``rollback``

        Raises:
            GatewayError: QUOTA_EXCEEDED when the budget cannot cover the
                estimate. State is left untouched.
            ValueError: If ``estimated_cost`` is negative
        """
        cost = self.estimate(operation_kind) if estimated_cost is None else estimated_cost
        if cost < 0:
            raise ValueError(f"estimated_cost must be non-negative, got {cost}")

        async with self._lock:
            self._maybe_reset_locked(self._clock())
            if self._used + cost > self.daily_limit:
                logger.warning(
                    f"Quota reservation refused for {operation_kind}: "
                    f"{self._used}+{cost} > {self.daily_limit}",
                    extra={"operation": operation_kind, "quota_used": self._used},
                )
                raise GatewayError.of(
                    ErrorKind.QUOTA_EXCEEDED,
                    detail=f"{cost} units requested, {self.daily_limit - self._used} remaining",
                    recovery_hints=quota_hints(self._reset_time),
                )
            self._used += cost
            token = ReservationToken(
                reservation_id=uuid.uuid4().hex,
                operation_kind=operation_kind,
                estimated_cost=cost,
                window_reset_time=self._reset_time,
            )
            self._outstanding[token.reservation_id] = token
            self._announce_level()
        return token

    async def commit(self, token: ReservationToken, actual_cost: Optional[int] = None) -> int:
        """Finalize a reservation at ``actual_cost`` units.

        Returns:
            Units charged

        Raises:
            ValueError: If the token was already settled or the cost is negative
        """
        actual = token.estimated_cost if actual_cost is None else actual_cost
        if actual < 0:
            raise ValueError(f"actual_cost must be non-negative, got {actual}")

        async with self._lock:
            self._settle(token)
            if token.window_reset_time == self._reset_time:
                adjusted = self._used + actual - token.estimated_cost
            else:
                # The debit was wiped by a reset; charge the call to the new window
                adjusted = self._used + actual
            self._used = self._clamp(adjusted, token.operation_kind)
            self._announce_level()
        await self.ledger.append(
            UsageRecord(
                operation_kind=token.operation_kind,
                cost_charged=actual,
                timestamp=self._clock(),
                outcome=UsageOutcome.COMMITTED,
                reservation_id=token.reservation_id,
            )
        )
        return actual

    async def rollback(self, token: ReservationToken) -> None:
        """Release a reservation that was never consumed.

        Raises:
            ValueError: If the token was already settled
        """
        async with self._lock:
            self._settle(token)
            if token.window_reset_time == self._reset_time:
                self._used = self._clamp(self._used - token.estimated_cost, token.operation_kind)
        await self.ledger.append(
            UsageRecord(
                operation_kind=token.operation_kind,
                cost_charged=0,
                timestamp=self._clock(),
                outcome=UsageOutcome.ROLLED_BACK,
                reservation_id=token.reservation_id,
            )
        )

    async def reset(self, now: Optional[datetime] = None) -> bool:
        """Start a new quota window if the reset boundary has passed.

        Calling it again inside the same window is a no-op.

        Returns:
            True if a reset was applied
        """
        async with self._lock:
            return self._maybe_reset_locked(now or self._clock())

    async def maybe_reset(self) -> bool:
        return await self.reset()

    def _maybe_reset_locked(self, now: datetime) -> bool:
        if now < self._reset_time:
            return False
        previous_used = self._used
        previous_reset = self._reset_time
        self._used = 0
        self._reset_time = next_reset_after(max(now, previous_reset), self.reset_hour_utc)
        self._announced.clear()
        logger.info(
            f"Quota window reset ({previous_used}/{self.daily_limit} used), "
            f"next reset at {self._reset_time.isoformat()}"
        )
        return True

    def _settle(self, token: ReservationToken) -> None:
        if self._outstanding.pop(token.reservation_id, None) is None:
            raise ValueError(f"reservation {token.reservation_id} already settled or unknown")

    def _clamp(self, value: int, operation_kind: str) -> int:
        if value > self.daily_limit:
            logger.warning(
                f"Quota usage clamped to daily limit after {operation_kind} "
                f"({value} > {self.daily_limit})"
            )
            return self.daily_limit
        if value < 0:
            logger.warning(f"Quota usage clamped to zero after {operation_kind} ({value})")
            return 0
        return value

    def _announce_level(self) -> None:
        level = self.status().level
        if level == QuotaLevel.OK or level in self._announced:
            return
        self._announced.add(level)
        logger.warning(
            f"Quota {level.value}: {self._used}/{self.daily_limit} units used",
            extra={"quota_used": self._used},
        )


class QuotaResetScheduler:
    """Background task that resets the quota window at each boundary.

    Usage:
        scheduler = QuotaResetScheduler(quota)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, quota: QuotaManager, max_sleep: float = 3600.0):
        """Initialize the scheduler.

        Args:
            quota: Manager whose window is reset
            max_sleep: Upper bound on one sleep, so clock jumps are noticed
        """
        self._quota = quota
        self._max_sleep = max_sleep
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            logger.debug("Quota reset scheduler already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started quota reset scheduler (next reset {self._quota.status().reset_time.isoformat()})")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Quota reset task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped quota reset scheduler")

    def seconds_until_reset(self) -> float:
        delta = self._quota.status().reset_time - self._quota.now()
        return min(max(delta.total_seconds(), 0.0), self._max_sleep)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.seconds_until_reset(),
                )
            except asyncio.TimeoutError:
                # Normal case: boundary (or max_sleep) reached
                pass
            if self._stop_event.is_set():
                break
            try:
                await self._quota.maybe_reset()
            except Exception as e:
                logger.error(f"Error during quota reset: {e}")
