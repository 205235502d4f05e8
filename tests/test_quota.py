"""Tests for the daily quota budget and its reservation protocol."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from tubegateway.app.core.config import Settings
from tubegateway.app.exceptions import ErrorKind, GatewayError
from tubegateway.app.services.operation_costs import DEFAULT_OPERATION_COSTS, OperationCostTable
from tubegateway.app.services.quota import (
    QuotaLevel,
    QuotaManager,
    QuotaResetScheduler,
    next_reset_after,
)
from tubegateway.app.services.usage_ledger import InMemoryUsageLedger, UsageOutcome


class FakeClock:
    """Settable wall clock for reset boundaries."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


START = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_quota(daily_limit=10000, initial_used=0, clock=None, **kwargs):
    return QuotaManager(
        daily_limit=daily_limit,
        initial_used=initial_used,
        clock=clock or FakeClock(START),
        **kwargs,
    )


class TestOperationCostTable:
    """Test the static cost table."""

    def test_published_costs(self):
        table = OperationCostTable()

        assert table.cost_for("search") == 100
        assert table.cost_for("videos.list") == 1
        assert table.cost_for("channels.list") == 1
        assert dict(table) == dict(DEFAULT_OPERATION_COSTS)

    def test_flat_cost_per_call(self):
        table = OperationCostTable()

        assert table.cost_for("videos.list", batch_size=50) == 1

    def test_rejects_empty_batch(self):
        with pytest.raises(ValueError):
            OperationCostTable().cost_for("videos.list", batch_size=0)

    def test_unknown_kind_raises(self):
        with pytest.raises(KeyError):
            OperationCostTable().cost_for("captions.download")

    @pytest.mark.parametrize("cost", [-1, 1.5, True, "100"])
    def test_rejects_invalid_costs(self, cost):
        with pytest.raises(ValueError):
            OperationCostTable({"search": cost})


class TestNextResetAfter:
    def test_later_same_day(self):
        now = datetime(2026, 10, 17, 3, 0, tzinfo=timezone.utc)

        assert next_reset_after(now, 7) == datetime(2026, 10, 17, 7, 0, tzinfo=timezone.utc)

    def test_boundary_is_strictly_later(self):
        now = datetime(2026, 10, 17, 7, 0, tzinfo=timezone.utc)

        assert next_reset_after(now, 7) == datetime(2026, 10, 18, 7, 0, tzinfo=timezone.utc)


class TestQuotaReserve:
    """Test reservation admission."""

    @pytest.mark.asyncio
    async def test_reserve_debits_estimate(self):
        quota = make_quota()

        token = await quota.reserve("search")

        assert token.estimated_cost == 100
        assert quota.status().used == 100
        assert quota.outstanding == 1

    @pytest.mark.asyncio
    async def test_reserve_rejected_leaves_state_unchanged(self):
        quota = make_quota(initial_used=9950)

        with pytest.raises(GatewayError) as exc_info:
            await quota.reserve("search")

        assert exc_info.value.kind == ErrorKind.QUOTA_EXCEEDED
        assert exc_info.value.error.retryable is False
        assert quota.status().used == 9950
        assert quota.outstanding == 0

    @pytest.mark.asyncio
    async def test_reserve_exactly_fills_budget(self):
        quota = make_quota(initial_used=9900)

        await quota.reserve("search")

        assert quota.status().used == 10000
        assert quota.status().remaining == 0
        assert quota.status().level == QuotaLevel.EXHAUSTED

    @pytest.mark.asyncio
    async def test_quota_exceeded_names_reset_time(self):
        quota = make_quota(initial_used=10000)

        with pytest.raises(GatewayError) as exc_info:
            await quota.reserve("videos.list")

        assert exc_info.value.error.recovery_hints[0] == (
            "Wait until the quota resets at 2026-10-18 07:00 UTC"
        )

    @pytest.mark.asyncio
    async def test_unknown_kind_is_invalid_request(self):
        quota = make_quota()

        with pytest.raises(GatewayError) as exc_info:
            await quota.reserve("captions.download")

        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_negative_estimate_rejected(self):
        quota = make_quota()

        with pytest.raises(ValueError):
            await quota.reserve("search", estimated_cost=-1)

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_overspend(self):
        quota = make_quota(daily_limit=1000)

        results = await asyncio.gather(
            *(quota.reserve("search") for _ in range(25)),
            return_exceptions=True,
        )

        granted = [r for r in results if not isinstance(r, BaseException)]
        refused = [r for r in results if isinstance(r, GatewayError)]
        assert len(granted) == 10
        assert len(refused) == 15
        assert quota.status().used == 1000


class TestQuotaSettlement:
    """Test commit and rollback."""

    @pytest.mark.asyncio
    async def test_rollback_restores_used(self):
        quota = make_quota(initial_used=40)

        token = await quota.reserve("search")
        await quota.rollback(token)

        assert quota.status().used == 40
        assert quota.outstanding == 0

    @pytest.mark.asyncio
    async def test_commit_at_estimate(self):
        quota = make_quota()

        token = await quota.reserve("videos.list")
        charged = await quota.commit(token)

        assert charged == 1
        assert quota.status().used == 1

    @pytest.mark.asyncio
    async def test_commit_adjusts_to_actual_cost(self):
        quota = make_quota()

        token = await quota.reserve("search")
        await quota.commit(token, actual_cost=102)

        assert quota.status().used == 102

    @pytest.mark.asyncio
    async def test_double_settlement_rejected(self):
        quota = make_quota()
        token = await quota.reserve("search")
        await quota.commit(token)

        with pytest.raises(ValueError):
            await quota.commit(token)
        with pytest.raises(ValueError):
            await quota.rollback(token)
        assert quota.status().used == 100

    @pytest.mark.asyncio
    async def test_overrun_is_clamped_with_warning(self):
        quota = make_quota(daily_limit=150, initial_used=50)
        token = await quota.reserve("search")

        with patch("tubegateway.app.services.quota.logger") as mock_logger:
            await quota.commit(token, actual_cost=500)

        assert quota.status().used == 150
        messages = [c[0][0] for c in mock_logger.warning.call_args_list]
        assert any("clamped" in m for m in messages)

    @pytest.mark.asyncio
    async def test_settlements_are_ledgered(self):
        ledger = InMemoryUsageLedger()
        quota = make_quota(ledger=ledger)

        first = await quota.reserve("search")
        second = await quota.reserve("videos.list")
        await quota.commit(first)
        await quota.rollback(second)

        records = await ledger.records()
        assert [r.outcome for r in records] == [UsageOutcome.COMMITTED, UsageOutcome.ROLLED_BACK]
        assert records[0].reservation_id == first.reservation_id
        assert records[1].cost_charged == 0
        assert await ledger.total_cost() == 100

    def test_keeps_empty_collaborators(self):
        ledger = InMemoryUsageLedger()
        table = OperationCostTable({})

        quota = make_quota(ledger=ledger, cost_table=table)

        assert quota.ledger is ledger
        assert quota.cost_table is table
        with pytest.raises(GatewayError) as exc_info:
            quota.estimate("search")
        assert exc_info.value.kind == ErrorKind.INVALID_REQUEST

    @pytest.mark.asyncio
    async def test_used_never_leaves_bounds(self):
        quota = make_quota(daily_limit=300)

        for _ in range(5):
            try:
                token = await quota.reserve("search")
            except GatewayError:
                continue
            await quota.commit(token, actual_cost=90)
            used = quota.status().used
            assert 0 <= used <= 300


class TestQuotaReset:
    """Test the daily window boundary."""

    @pytest.mark.asyncio
    async def test_reset_is_idempotent_within_window(self):
        clock = FakeClock(START)
        quota = make_quota(initial_used=500, clock=clock)
        first_reset = quota.status().reset_time

        clock.advance(hours=20)
        assert await quota.reset() is True
        assert quota.status().used == 0
        second_reset = quota.status().reset_time
        assert second_reset > first_reset

        await quota.reserve("videos.list")
        assert await quota.reset() is False
        assert quota.status().used == 1
        assert quota.status().reset_time == second_reset

    @pytest.mark.asyncio
    async def test_reserve_applies_pending_reset(self):
        clock = FakeClock(START)
        quota = make_quota(initial_used=10000, clock=clock)

        clock.advance(days=1)
        await quota.reserve("search")

        assert quota.status().used == 100

    @pytest.mark.asyncio
    async def test_stale_rollback_does_not_touch_new_window(self):
        clock = FakeClock(START)
        quota = make_quota(clock=clock)
        token = await quota.reserve("search")

        clock.advance(days=1)
        await quota.reset()
        await quota.reserve("videos.list")
        await quota.rollback(token)

        assert quota.status().used == 1

    @pytest.mark.asyncio
    async def test_stale_commit_charges_new_window(self):
        clock = FakeClock(START)
        quota = make_quota(clock=clock)
        token = await quota.reserve("search")

        clock.advance(days=1)
        await quota.reset()
        await quota.commit(token)

        assert quota.status().used == 100


class TestQuotaLevels:
    @pytest.mark.asyncio
    async def test_warning_announced_once_per_window(self):
        quota = make_quota(daily_limit=1000)

        with patch("tubegateway.app.services.quota.logger") as mock_logger:
            for _ in range(8):
                await quota.reserve("search")
            await quota.reserve("videos.list")

        assert quota.status().level == QuotaLevel.WARNING
        warnings = [c[0][0] for c in mock_logger.warning.call_args_list]
        assert sum("Quota warning" in m for m in warnings) == 1

    def test_status_to_dict(self):
        quota = make_quota(initial_used=9600)

        data = quota.status().to_dict()

        assert data["used"] == 9600
        assert data["remaining"] == 400
        assert data["level"] == "critical"
        assert data["reset_time"] == "2026-10-18T07:00:00+00:00"

    def test_from_settings(self):
        config = Settings(_env_file=None, quota_daily_limit=500, quota_reset_hour_utc=0)

        quota = QuotaManager.from_settings(config, clock=FakeClock(START))

        assert quota.daily_limit == 500
        assert quota.status().reset_time == datetime(2026, 10, 18, 0, 0, tzinfo=timezone.utc)

    def test_initial_used_out_of_range(self):
        with pytest.raises(ValueError):
            make_quota(daily_limit=100, initial_used=101)


class TestUsageLedger:
    @pytest.mark.asyncio
    async def test_bounded_records(self):
        ledger = InMemoryUsageLedger(max_records=2)
        quota = make_quota(ledger=ledger)

        for _ in range(3):
            await quota.commit(await quota.reserve("videos.list"))

        assert len(ledger) == 2

    @pytest.mark.asyncio
    async def test_records_since(self):
        clock = FakeClock(START)
        ledger = InMemoryUsageLedger()
        quota = make_quota(ledger=ledger, clock=clock)

        await quota.commit(await quota.reserve("search"))
        clock.advance(minutes=5)
        await quota.commit(await quota.reserve("videos.list"))

        recent = await ledger.records(since=START + timedelta(minutes=1))
        assert [r.operation_kind for r in recent] == ["videos.list"]
        assert recent[0].to_dict()["outcome"] == "committed"


class TestQuotaResetScheduler:
    """Test the background reset task."""

    def test_seconds_until_reset_is_capped(self):
        quota = make_quota()
        scheduler = QuotaResetScheduler(quota, max_sleep=60)

        assert scheduler.seconds_until_reset() == 60

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        quota = make_quota()
        scheduler = QuotaResetScheduler(quota)

        await scheduler.start()
        assert scheduler.running is True
        await scheduler.start()

        await scheduler.stop()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_resets_when_boundary_passes(self):
        clock = FakeClock(START)
        quota = make_quota(initial_used=700, clock=clock)
        clock.advance(days=1)
        scheduler = QuotaResetScheduler(quota)

        await scheduler.start()
        for _ in range(20):
            if quota.status().used == 0:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert quota.status().used == 0
