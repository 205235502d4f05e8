"""Gateway client composing quota, rate limiting, circuit breaking and retries.

One ``invoke`` call is one logical provider operation. Each attempt runs:

    breaker fail-fast -> quota reserve -> rate limiter acquire
    -> breaker-gated network call -> quota commit -> transform

and on failure releases its permit and rolls back its reservation before
the retry policy decides what happens next. Expected failures come back as
a ``GatewayResult`` with a ``TypedError``; only task cancellation propagates.
"""

import logging
import random
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from tubegateway.app.core.cancellation import CancellationToken
from tubegateway.app.core.config import Settings
from tubegateway.app.core.http_client import init_http_client
from tubegateway.app.core.logging import get_log_context
from tubegateway.app.exceptions import ErrorKind, GatewayError, TypedError
from tubegateway.app.providers.base import BaseProvider
from tubegateway.app.providers.circuit_breaker import CircuitBreaker
from tubegateway.app.providers.retry import RetryAttemptState, RetryPolicy, execute_with_retry
from tubegateway.app.providers.youtube import YouTubeProvider
from tubegateway.app.services.operation_costs import OperationCostTable
from tubegateway.app.services.quota import QuotaManager, QuotaResetScheduler
from tubegateway.app.services.rate_limiter import RateLimiter, RequestPriority
from tubegateway.app.services.records import CanonicalRecord
from tubegateway.app.services.transform import (
    OPERATION_RECORD_KINDS,
    ItemError,
    TransformationPipeline,
    TransformedPage,
)
from tubegateway.app.services.usage_ledger import InMemoryUsageLedger, UsageLedger

logger = logging.getLogger(__name__)

# Kinds after which the remaining batches of a list call are not attempted
_STOP_BATCHING = frozenset(
    {
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.CIRCUIT_OPEN,
        ErrorKind.AUTHENTICATION_ERROR,
        ErrorKind.CANCELLED,
    }
)


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one logical operation.

    Attributes:
        ok: True when no terminal error occurred
        operation_kind: Provider operation that was invoked
        records: Canonical records (may be non-empty alongside an error for
            multi-batch calls that partly succeeded)
        item_errors: Per-item failures that did not fail the call
        next_page_token: Pagination continuation, if any
        total_results: Provider's total result estimate, if reported
        error: Terminal error, or None
        attempts: Provider attempts made across batches
        cost_charged: Quota units committed
        request_id: Correlation id used in log lines
    """

    ok: bool
    operation_kind: str
    records: List[CanonicalRecord] = field(default_factory=list)
    item_errors: List[ItemError] = field(default_factory=list)
    next_page_token: Optional[str] = None
    total_results: Optional[int] = None
    error: Optional[TypedError] = None
    attempts: int = 0
    cost_charged: int = 0
    request_id: str = ""

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "operation_kind": self.operation_kind,
            "records": [r.model_dump(mode="json") for r in self.records],
            "item_errors": [e.to_dict() for e in self.item_errors],
            "next_page_token": self.next_page_token,
            "total_results": self.total_results,
            "error": self.error.to_dict() if self.error else None,
            "attempts": self.attempts,
            "cost_charged": self.cost_charged,
            "request_id": self.request_id,
        }


def _id_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value]


class ApiGatewayClient:
    """Entry point the application calls for every provider operation.

    Usage:
        async with GatewayContext.create(settings) as ctx:
            result = await ctx.client.search("python asyncio", priority=RequestPriority.HIGH)
            if result.ok:
                for record in result.records:
                    ...
            else:
                show(result.error.user_message, result.error.recovery_hints)
    """

    def __init__(
        self,
        provider: BaseProvider,
        quota: QuotaManager,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        pipeline: Optional[TransformationPipeline] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_batch_size: int = 50,
        call_timeout: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the client.

        Args:
            provider: Transport for provider calls
            quota: Shared quota manager
            limiter: Shared rate limiter
            breaker: Shared circuit breaker
            pipeline: Transformation pipeline; a default one is created if None
            retry_policy: Retry policy; defaults if None
            max_batch_size: Identifiers allowed per list call
            call_timeout: Per-call network timeout, distinct from the retry deadline
            sleep: Backoff sleep replacement (tests)
            rng: Jitter random source (tests)
        """
        self.provider = provider
        self.quota = quota
        self.limiter = limiter
        self.breaker = breaker
        self.pipeline = pipeline or TransformationPipeline()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_batch_size = max_batch_size
        self.call_timeout = call_timeout
        self._sleep = sleep
        self._rng = rng

    async def invoke(
        self,
        operation_kind: str,
        params: Optional[Mapping[str, Any]] = None,
        priority: RequestPriority = RequestPriority.NORMAL,
        *,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> GatewayResult:
        """Run one provider operation through the full resilience stack.

        Args:
            operation_kind: Provider operation (``search``, ``videos.list``, ...)
            params: Query parameters for the operation
            priority: Rate limiter queue tier
            cancel_token: Cancels pending backoff sleeps and further attempts
            timeout: Bound on each wait for rate limiter admission

        Returns:
            GatewayResult with records or a terminal TypedError

        Raises:
            asyncio.CancelledError: If the calling task is cancelled, after
                the permit is released and the reservation rolled back
        """
        request_id = uuid.uuid4().hex[:12]
        query = dict(params or {})
        context = get_log_context(request_id=request_id, operation=operation_kind, priority=priority.name)

        try:
            estimate = self._validate(operation_kind, query)
        except GatewayError as e:
            logger.info(f"Rejected {operation_kind} request: {e.error.detail}", extra=context)
            return self._failure(operation_kind, e.error, 0, 0, request_id)

        charged = 0
        attempts = 0

        async def attempt(state: RetryAttemptState) -> TransformedPage:
            nonlocal charged, attempts
            attempts = state.attempt
            extra = {**context, "attempt": state.attempt}

            # No reservation while the breaker would refuse the call anyway
            if not self.breaker.allows_request():
                raise self.breaker.open_error()

            token = await self.quota.reserve(operation_kind, estimate)
            permit = None
            settled = False
            try:
                permit = await self.limiter.acquire(priority, timeout=timeout)
                body = await self.breaker.execute(
                    lambda: self.provider.fetch(operation_kind, query, timeout=self.call_timeout)
                )
                # The provider has billed the call once it answered
                charged += await self.quota.commit(token, estimate)
                settled = True
                logger.debug(f"{operation_kind} succeeded", extra={**extra, "quota_used": charged})
                return self.pipeline.transform_response(operation_kind, body)
            finally:
                if permit is not None:
                    self.limiter.release(permit)
                if not settled:
                    await self.quota.rollback(token)

        try:
            page = await execute_with_retry(
                attempt,
                self.retry_policy,
                cancel_token=cancel_token,
                reset_time=self.quota.status().reset_time,
                sleep=self._sleep,
                rng=self._rng,
                name=operation_kind,
            )
        except GatewayError as e:
            logger.info(
                f"{operation_kind} failed with {e.kind.name} after {attempts} attempt(s)",
                extra=context,
            )
            return self._failure(operation_kind, e.error, attempts, charged, request_id)

        return GatewayResult(
            ok=True,
            operation_kind=operation_kind,
            records=list(page.records),
            item_errors=list(page.errors),
            next_page_token=page.next_page_token,
            total_results=page.total_results,
            attempts=attempts,
            cost_charged=charged,
            request_id=request_id,
        )

    async def search(
        self,
        query: str,
        *,
        max_results: int = 25,
        page_token: Optional[str] = None,
        result_type: Optional[str] = "video",
        priority: RequestPriority = RequestPriority.HIGH,
        cancel_token: Optional[CancellationToken] = None,
        **filters: Any,
    ) -> GatewayResult:
        """Search the provider (costs 100 units per page)."""
        params = {
            "q": query,
            "maxResults": max_results,
            "pageToken": page_token,
            "type": result_type,
            **filters,
        }
        return await self.invoke("search", params, priority, cancel_token=cancel_token)

    async def list_videos(self, ids: Sequence[str], **kwargs: Any) -> GatewayResult:
        return await self._list_by_ids("videos.list", ids, **kwargs)

    async def list_channels(self, ids: Sequence[str], **kwargs: Any) -> GatewayResult:
        return await self._list_by_ids("channels.list", ids, **kwargs)

    async def list_playlists(self, ids: Sequence[str], **kwargs: Any) -> GatewayResult:
        return await self._list_by_ids("playlists.list", ids, **kwargs)

    async def list_playlist_items(
        self,
        playlist_id: str,
        *,
        max_results: int = 50,
        page_token: Optional[str] = None,
        priority: RequestPriority = RequestPriority.NORMAL,
        cancel_token: Optional[CancellationToken] = None,
    ) -> GatewayResult:
        params = {"playlistId": playlist_id, "maxResults": max_results, "pageToken": page_token}
        return await self.invoke("playlistItems.list", params, priority, cancel_token=cancel_token)

    def quota_status(self) -> Dict[str, Any]:
        """Quota view for display: used, daily_limit, remaining, reset_time."""
        budget = self.quota.status()
        return {
            "used": budget.used,
            "daily_limit": budget.daily_limit,
            "remaining": budget.remaining,
            "reset_time": budget.reset_time,
            "level": budget.level.value,
        }

    def circuit_status(self) -> Dict[str, Any]:
        """Breaker view for 'service temporarily unavailable' banners."""
        return self.breaker.status().to_dict()

    async def _list_by_ids(
        self,
        operation_kind: str,
        ids: Sequence[str],
        *,
        priority: RequestPriority = RequestPriority.NORMAL,
        cancel_token: Optional[CancellationToken] = None,
        **params: Any,
    ) -> GatewayResult:
        """Fetch any number of identifiers in batches of ``max_batch_size``.

        Identifiers the provider does not return (deleted, private or
        mistyped) are reported as NOT_FOUND item errors.
        """
        unique = list(dict.fromkeys(_id_list(ids)))
        if not unique:
            return GatewayResult(ok=True, operation_kind=operation_kind)

        records: List[CanonicalRecord] = []
        item_errors: List[ItemError] = []
        attempts = 0
        charged = 0
        error: Optional[TypedError] = None
        request_ids = []

        for offset in range(0, len(unique), self.max_batch_size):
            chunk = unique[offset:offset + self.max_batch_size]
            result = await self.invoke(
                operation_kind,
                {**params, "id": chunk},
                priority,
                cancel_token=cancel_token,
            )
            attempts += result.attempts
            charged += result.cost_charged
            request_ids.append(result.request_id)
            if not result.ok:
                error = error or result.error
                if result.error is not None and result.error.kind in _STOP_BATCHING:
                    break
                continue

            records.extend(result.records)
            position = {ident: offset + i for i, ident in enumerate(chunk)}
            returned = {r.id for r in result.records} | {
                e.item_id for e in result.item_errors if e.item_id is not None
            }
            missing = deque(ident for ident in chunk if ident not in returned)
            # Items come back in request order, so an item without a readable
            # id stands for the next identifier not otherwise accounted for
            for item_error in sorted(result.item_errors, key=lambda e: e.index):
                item_id = item_error.item_id
                if item_id is None and missing:
                    item_id = missing.popleft()
                index = position.get(item_id or "", offset + item_error.index)
                item_errors.append(ItemError(index=index, item_id=item_id, error=item_error.error))
            for ident in missing:
                item_errors.append(
                    ItemError(
                        index=position[ident],
                        item_id=ident,
                        error=TypedError.of(
                            ErrorKind.NOT_FOUND, detail=f"{ident} not returned by {operation_kind}"
                        ),
                    )
                )

        item_errors.sort(key=lambda e: e.index)
        return GatewayResult(
            ok=error is None,
            operation_kind=operation_kind,
            records=records,
            item_errors=item_errors,
            error=error,
            attempts=attempts,
            cost_charged=charged,
            request_id=",".join(request_ids),
        )

    def _validate(self, operation_kind: str, params: Dict[str, Any]) -> int:
        """Reject malformed requests before any quota is reserved.

        Returns:
            The estimated cost of one attempt
        """
        if operation_kind not in OPERATION_RECORD_KINDS:
            raise GatewayError.of(
                ErrorKind.INVALID_REQUEST, detail=f"unsupported operation kind: {operation_kind}"
            )
        batch_size = 1
        if "id" in params:
            ids = _id_list(params["id"])
            if not ids:
                raise GatewayError.of(ErrorKind.INVALID_REQUEST, detail="empty identifier list")
            if len(ids) > self.max_batch_size:
                raise GatewayError.of(
                    ErrorKind.INVALID_REQUEST,
                    detail=f"{len(ids)} identifiers exceed the batch limit of {self.max_batch_size}",
                )
            batch_size = len(ids)
        estimate = self.quota.estimate(operation_kind, batch_size)
        max_results = params.get("maxResults")
        if max_results is not None:
            try:
                max_results = int(max_results)
            except (TypeError, ValueError):
                max_results = -1
        if max_results is not None and not 0 <= max_results <= self.max_batch_size:
            raise GatewayError.of(
                ErrorKind.INVALID_REQUEST,
                detail=f"maxResults must be between 0 and {self.max_batch_size}",
            )
        return estimate

    @staticmethod
    def _failure(
        operation_kind: str, error: TypedError, attempts: int, charged: int, request_id: str
    ) -> GatewayResult:
        return GatewayResult(
            ok=False,
            operation_kind=operation_kind,
            error=error,
            attempts=attempts,
            cost_charged=charged,
            request_id=request_id,
        )


class GatewayContext:
    """Explicitly constructed owner of all shared gateway state.

    One context per process (or per test) holds the HTTP client, quota
    manager, rate limiter, breaker, ledger and pipeline, and hands the same
    instances to every caller through ``client``.

    Usage:
        async with GatewayContext.create(Settings()) as ctx:
            result = await ctx.client.list_videos(["dQw4w9WgXcQ"])
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        quota: QuotaManager,
        limiter: RateLimiter,
        breaker: CircuitBreaker,
        ledger: UsageLedger,
        pipeline: TransformationPipeline,
        client: ApiGatewayClient,
        scheduler: QuotaResetScheduler,
    ):
        self.settings = settings
        self.http_client = http_client
        self.quota = quota
        self.limiter = limiter
        self.breaker = breaker
        self.ledger = ledger
        self.pipeline = pipeline
        self.client = client
        self.scheduler = scheduler

    @classmethod
    @asynccontextmanager
    async def create(
        cls,
        settings: Optional[Settings] = None,
        *,
        ledger: Optional[UsageLedger] = None,
        cost_table: Optional[OperationCostTable] = None,
        provider: Optional[BaseProvider] = None,
        start_scheduler: bool = True,
        **client_kwargs: Any,
    ) -> AsyncGenerator["GatewayContext", None]:
        """Build the context, start its background task, and tear it down on exit.

        Args:
            settings: Configuration; read from the environment if None
            ledger: Usage ledger backend; in-memory if None
            cost_table: Operation cost table; published costs if None
            provider: Provider override (tests)
            start_scheduler: Run the quota reset task
            **client_kwargs: Extra ApiGatewayClient arguments (sleep, rng)
        """
        config = settings or Settings()
        if not config.youtube_api_key and provider is None:
            logger.warning("No YouTube API key configured; provider calls will fail authentication")

        async with init_http_client(config) as http_client:
            if ledger is None:
                ledger = InMemoryUsageLedger()
            quota = QuotaManager.from_settings(config, cost_table=cost_table, ledger=ledger)
            limiter = RateLimiter.from_settings(config)
            breaker = CircuitBreaker.from_settings(config)
            pipeline = TransformationPipeline(cache_size=config.transform_cache_size)
            client = ApiGatewayClient(
                provider=provider or YouTubeProvider(
                    config.youtube_base_url,
                    config.youtube_api_key,
                    http_client=http_client,
                    timeout=config.httpx_timeout,
                ),
                quota=quota,
                limiter=limiter,
                breaker=breaker,
                pipeline=pipeline,
                retry_policy=RetryPolicy.from_settings(config),
                max_batch_size=config.youtube_max_batch_size,
                call_timeout=config.httpx_timeout,
                **client_kwargs,
            )
            scheduler = QuotaResetScheduler(quota)
            ctx = cls(
                settings=config,
                http_client=http_client,
                quota=quota,
                limiter=limiter,
                breaker=breaker,
                ledger=ledger,
                pipeline=pipeline,
                client=client,
                scheduler=scheduler,
            )
            if start_scheduler:
                await scheduler.start()
            try:
                yield ctx
            finally:
                await scheduler.stop()
