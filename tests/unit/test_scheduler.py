"""
Unit tests for the poll scheduler.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from fixtures.doubles import async_cm, stream
from speedbot.lib.errors import (
    ConfigurationError, NotificationError, PersistenceError, RateLimitError, TransportError
)
from speedbot.models import FilterConfig, SchedulerConfig, SpeedrunConfig
from speedbot.services import NotificationPolicy, PollScheduler, ReconciliationEngine, StreamRegistry


@pytest.fixture
def client():
    client = MagicMock()
    client.fetch_active_streams = AsyncMock(return_value=[stream("1"), stream("2")])
    return client


@pytest.fixture
def scheduler(client, engine):
    return PollScheduler(
        client, engine, FilterConfig(tag_ids={"speedrun"}),
        SchedulerConfig(stream_check_interval=0.01, integrity_sweep_interval=0.05, rate_limit_backoff=45),
    )


class TestRunCycle:

    @pytest.mark.asyncio
    async def test_successful_cycle(self, scheduler, client, registry, notifier):
        report = await scheduler.run_cycle()

        assert report.notified == ["1", "2"]
        assert set(registry.records) == {"1", "2"}
        client.fetch_active_streams.assert_awaited_once_with(scheduler.filter_config)
        stats = scheduler.get_stats()
        assert stats["successful_cycles"] == 1
        assert stats["last_cycle"] is not None

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_registry_untouched(self, scheduler, client, registry):
        await scheduler.run_cycle()
        client.fetch_active_streams.side_effect = TransportError("502 from upstream", status=502)

        assert await scheduler.run_cycle() is None

        assert all(record.is_live for record in registry.records.values())
        assert scheduler.get_stats()["failed_cycles"] == 1
        assert scheduler._backoff == 0
        assert scheduler.error_tracker.get_error_stats()["total_errors"] == 1

    @pytest.mark.asyncio
    async def test_refused_connection_backs_off(self, scheduler, client):
        client.fetch_active_streams.side_effect = TransportError(
            "connection refused", cause=ConnectionRefusedError()
        )

        await scheduler.run_cycle()

        assert scheduler._backoff == 45

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self, scheduler, client):
        client.fetch_active_streams.side_effect = RateLimitError("slow down", retry_after=12)

        assert await scheduler.run_cycle() is None
        assert scheduler._backoff == 12

    @pytest.mark.asyncio
    async def test_persistence_failure_is_fatal(self, scheduler, registry):
        registry.fail_writes = True

        with pytest.raises(PersistenceError):
            await scheduler.run_cycle()

        assert scheduler.fatal_error is not None
        await asyncio.wait_for(scheduler.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, scheduler, client):
        release = asyncio.Event()

        async def slow_fetch(_filter):
            await release.wait()
            return []

        client.fetch_active_streams.side_effect = slow_fetch
        first = asyncio.create_task(scheduler.run_cycle())
        await asyncio.sleep(0)

        assert await scheduler.run_cycle() is None
        release.set()
        await first

        assert client.fetch_active_streams.await_count == 1
        assert scheduler.get_stats()["skipped_ticks"] == 1


class TestOtherJobs:

    @pytest.mark.asyncio
    async def test_speedrun_check_without_checker(self, scheduler):
        assert await scheduler.run_speedrun_check() == 0

    @pytest.mark.asyncio
    async def test_speedrun_persistence_failure_is_fatal(self, client, engine):
        checker = MagicMock()
        checker.check_all = AsyncMock(side_effect=PersistenceError("database is gone"))
        scheduler = PollScheduler(client, engine, FilterConfig(), SchedulerConfig(), speedrun_checker=checker)

        with pytest.raises(PersistenceError):
            await scheduler.run_speedrun_check()

        assert scheduler.fatal_error is not None

    @pytest.mark.asyncio
    async def test_integrity_sweep(self, scheduler, mocker):
        mocker.patch.object(scheduler.engine, "integrity_sweep", return_value=3)

        assert await scheduler.run_integrity_sweep() == 3


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_runs_cycles_until_stopped(self, scheduler, client):
        await scheduler.start()
        assert scheduler.is_running

        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert not scheduler.is_running
        assert client.fetch_active_streams.await_count >= 2

    @pytest.mark.asyncio
    async def test_speedrun_timer_only_with_games(self, client, engine):
        checker = MagicMock()
        checker.config = SpeedrunConfig(game_ids=("o1y9wo6q",))
        checker.check_all = AsyncMock(return_value=0)
        scheduler = PollScheduler(
            client, engine, FilterConfig(), SchedulerConfig(stream_check_interval=10), speedrun_checker=checker
        )

        await scheduler.start()
        assert len(scheduler._timers) == 3
        await asyncio.sleep(0.01)
        await scheduler.stop()

        checker.check_all.assert_awaited()

    @pytest.mark.asyncio
    async def test_fatal_error_stops_wait(self, scheduler, registry):
        registry.fail_writes = True

        await scheduler.start()
        await asyncio.wait_for(scheduler.wait(), timeout=1)
        await scheduler.stop()

        assert isinstance(scheduler.fatal_error, PersistenceError)
        assert scheduler.get_stats()["fatal_error"] == "database is gone"


class TestJobErrors:

    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        return conn

    @pytest.fixture
    def unreachable_registry(self, conn):
        """StreamRegistry whose queries go to the mocked connection."""
        registry = StreamRegistry()
        registry.pool = MagicMock()
        registry.pool.acquire = MagicMock(side_effect=lambda: async_cm(conn))
        registry._is_connected = True
        return registry

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ConnectionRefusedError("refused"), asyncio.TimeoutError()])
    async def test_database_outage_stops_scheduler(self, client, notifier, policy_config, clock,
                                                   conn, unreachable_registry, error):
        conn.fetchrow.side_effect = error
        engine = ReconciliationEngine(unreachable_registry, notifier, NotificationPolicy(policy_config), clock=clock)
        scheduler = PollScheduler(client, engine, FilterConfig(tag_ids={"speedrun"}), SchedulerConfig())

        await scheduler._run_job("stream_check", scheduler.run_cycle)

        assert isinstance(scheduler.fatal_error, PersistenceError)
        assert scheduler.fatal_error.cause is error
        assert notifier.messages == []
        await asyncio.wait_for(scheduler.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_fatal_error_from_job_stops_scheduler(self, scheduler):
        job = AsyncMock(side_effect=ConfigurationError("webhook url vanished"))

        await scheduler._run_job("speedrun_check", job)

        assert isinstance(scheduler.fatal_error, ConfigurationError)
        assert scheduler.error_tracker.get_error_stats()["total_errors"] == 1
        await asyncio.wait_for(scheduler.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_non_fatal_error_from_job_keeps_running(self, scheduler):
        job = AsyncMock(side_effect=NotificationError("webhook returned 500"))

        await scheduler._run_job("speedrun_check", job)

        assert scheduler.fatal_error is None
        assert not scheduler._stop_event.is_set()
        assert scheduler.error_tracker.get_error_stats()["total_errors"] == 1

    @pytest.mark.asyncio
    async def test_persistence_failure_recorded_once(self, scheduler, registry):
        registry.fail_writes = True

        await scheduler._run_job("stream_check", scheduler.run_cycle)

        assert isinstance(scheduler.fatal_error, PersistenceError)
        assert scheduler.error_tracker.get_error_stats()["total_errors"] == 1
