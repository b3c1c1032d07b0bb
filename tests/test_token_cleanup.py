"""Tests for the background refresh token sweeper."""

import asyncio

import pytest

from tokenward.config import Settings
from tokenward.service.cleanup import TokenCleanupScheduler, start_cleanup_scheduler
from tokenward.service.refresh_tokens import RefreshTokenService
from tokenward.storage.memory import MemoryStore

# Roughly 36ms between sweeps
FAST_INTERVAL_HOURS = 0.00001


class FlakyPurger:
    """Stands in for the service; fails the first few sweeps, then succeeds."""

    def __init__(self, failures: int = 1) -> None:
        self.calls = 0
        self.failures = failures

    def purge_stale(self) -> int:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("database went away")
        return 3


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def service(clock):
    return RefreshTokenService(MemoryStore(), Settings(), clock=clock)


class TestRunOnce:
    """Tests for a single sweep."""

    async def test_run_once_purges_stale_tokens(self, service, clock):
        await service.issue("user-1")
        fresh = await service.issue("user-2")
        clock.advance(days=6)
        await service.validate(fresh.token)
        clock.advance(days=2)

        scheduler = TokenCleanupScheduler(service)
        assert await scheduler.run_once() == 1
        assert scheduler.runs == 1
        assert await service.list_sessions("user-2")

    async def test_run_once_with_nothing_to_purge(self, service):
        await service.issue("user-1")
        scheduler = TokenCleanupScheduler(service)
        assert await scheduler.run_once() == 0

    def test_rejects_non_positive_interval(self, service):
        with pytest.raises(ValueError):
            TokenCleanupScheduler(service, interval_hours=0)


class TestSchedulerLoop:
    """Tests for start/stop behavior of the loop."""

    async def test_first_sweep_runs_immediately(self, service):
        scheduler = TokenCleanupScheduler(service, interval_hours=6)
        await scheduler.start()
        try:
            await _wait_for(lambda: scheduler.runs == 1)
            assert scheduler.running
        finally:
            await scheduler.stop()
        assert not scheduler.running

    async def test_errors_do_not_stop_the_loop(self):
        purger = FlakyPurger(failures=2)
        scheduler = TokenCleanupScheduler(purger, interval_hours=FAST_INTERVAL_HOURS)
        await scheduler.start()
        try:
            await _wait_for(lambda: scheduler.runs >= 1)
        finally:
            await scheduler.stop()
        assert purger.calls >= 3

    async def test_stop_is_idempotent(self, service):
        scheduler = TokenCleanupScheduler(service)
        await scheduler.stop()
        await scheduler.start()
        await scheduler.stop()
        await scheduler.stop()
        assert not scheduler.running

    async def test_double_start_keeps_single_task(self, service):
        scheduler = TokenCleanupScheduler(service)
        await scheduler.start()
        task = scheduler._task
        await scheduler.start()
        assert scheduler._task is task
        await scheduler.stop()


class TestStartCleanupScheduler:
    """Tests for the start helper returning a stop handle."""

    async def test_returns_stop_function(self):
        purger = FlakyPurger(failures=0)
        stop = await start_cleanup_scheduler(purger, interval_hours=6)
        await _wait_for(lambda: purger.calls == 1)
        await stop()
        await stop()
        assert purger.calls == 1
