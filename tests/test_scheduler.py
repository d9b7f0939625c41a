"""Tests for repeating tasks and the scheduler."""

from __future__ import annotations

import asyncio
import logging

import pytest

from token_swap_indexer.scheduler import RepeatingTask, Scheduler


class Counter:
    def __init__(self, fail_first: int = 0) -> None:
        self.calls = 0
        self._fail_first = fail_first

    async def __call__(self) -> None:
        self.calls += 1
        if self.calls <= self._fail_first:
            raise RuntimeError(f"failure {self.calls}")


async def until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


class TestRepeatingTask:
    @pytest.mark.asyncio
    async def test_run_once_records_success(self) -> None:
        work = Counter()
        task = RepeatingTask("t", work, interval_seconds=1)

        assert await task.run_once() is True
        assert task.stats.runs == 1
        assert task.stats.failures == 0
        assert task.stats.last_run_at is not None

    @pytest.mark.asyncio
    async def test_run_once_contains_failures(self) -> None:
        task = RepeatingTask("t", Counter(fail_first=1), interval_seconds=1)

        assert await task.run_once() is False
        assert task.stats.failures == 1
        assert task.stats.last_error == "failure 1"

    @pytest.mark.asyncio
    async def test_failures_log_at_warning_by_default(self, caplog: pytest.LogCaptureFixture) -> None:
        task = RepeatingTask("t", Counter(fail_first=1), interval_seconds=1)

        with caplog.at_level(logging.DEBUG, logger="token_swap_indexer.scheduler"):
            await task.run_once()

        (record,) = [r for r in caplog.records if "failed" in r.getMessage()]
        assert record.levelno == logging.WARNING
        assert record.exc_info is not None

    @pytest.mark.asyncio
    async def test_failure_log_level_is_configurable(self, caplog: pytest.LogCaptureFixture) -> None:
        task = RepeatingTask("t", Counter(fail_first=1), interval_seconds=1, failure_log_level=logging.INFO)

        with caplog.at_level(logging.DEBUG, logger="token_swap_indexer.scheduler"):
            await task.run_once()

        (record,) = [r for r in caplog.records if "failed" in r.getMessage()]
        assert record.levelno == logging.INFO
        assert "failure 1" in record.getMessage()

    @pytest.mark.asyncio
    async def test_keeps_running_after_failure(self) -> None:
        work = Counter(fail_first=2)
        task = RepeatingTask("t", work, interval_seconds=0.001, error_interval_seconds=0.001)
        stop = asyncio.Event()
        runner = asyncio.create_task(task.run(stop))

        await until(lambda: work.calls >= 4)
        stop.set()
        await runner

        assert task.stats.failures == 2
        assert task.stats.runs >= 4

    @pytest.mark.asyncio
    async def test_stop_interrupts_interval(self) -> None:
        work = Counter()
        task = RepeatingTask("t", work, interval_seconds=60)
        stop = asyncio.Event()
        runner = asyncio.create_task(task.run(stop))

        await until(lambda: work.calls == 1)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)

        assert work.calls == 1

    @pytest.mark.asyncio
    async def test_delayed_start(self) -> None:
        work = Counter()
        stop = asyncio.Event()
        stop.set()

        await RepeatingTask("t", work, interval_seconds=60, run_on_start=False).run(stop)

        assert work.calls == 0


class TestScheduler:
    @pytest.mark.asyncio
    async def test_runs_all_tasks_until_stopped(self) -> None:
        a, b = Counter(), Counter()
        scheduler = Scheduler()
        scheduler.add(RepeatingTask("a", a, interval_seconds=60))
        scheduler.add(RepeatingTask("b", b, interval_seconds=60))

        scheduler.start()
        await until(lambda: a.calls and b.calls)
        assert scheduler.is_running

        await scheduler.stop(grace_seconds=1)

        assert not scheduler.is_running
        assert scheduler.stop_event.is_set()
        assert [t.name for t in scheduler.tasks] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stuck_task_is_cancelled_after_grace(self) -> None:
        started = asyncio.Event()
        cancelled = False

        async def hang() -> None:
            nonlocal cancelled
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                cancelled = True
                raise

        scheduler = Scheduler()
        scheduler.add(RepeatingTask("hang", hang, interval_seconds=60))
        scheduler.start()
        await started.wait()

        await scheduler.stop(grace_seconds=0.01)

        assert cancelled
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_shared_stop_event(self) -> None:
        stop = asyncio.Event()
        scheduler = Scheduler(stop)
        scheduler.add(RepeatingTask("a", Counter(), interval_seconds=60))
        scheduler.start()

        stop.set()
        await asyncio.wait_for(scheduler.wait(), timeout=1)

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_cannot_add_after_start(self) -> None:
        scheduler = Scheduler()
        scheduler.add(RepeatingTask("a", Counter(), interval_seconds=60))
        scheduler.start()

        with pytest.raises(RuntimeError):
            scheduler.add(RepeatingTask("b", Counter(), interval_seconds=60))
        with pytest.raises(RuntimeError):
            scheduler.start()

        await scheduler.stop(grace_seconds=1)
