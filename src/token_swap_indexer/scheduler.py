"""Cancellable repeating tasks sharing one stop signal.

Each activity (indexing, metrics, leaderboards) is a `RepeatingTask`: it
runs a unit of work, then waits for its interval (or its error interval if
the work raised) unless the shared stop event fires first. Stopping sets
the event, gives every task a grace period to finish its current unit of
work, then cancels whatever is still running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


@dataclass
class TaskStats:
    """Run counters for one repeating task."""

    runs: int = 0
    failures: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None


class RepeatingTask:
    """Runs `work` every `interval_seconds` until the stop event is set."""

    def __init__(
        self,
        name: str,
        work: Work,
        *,
        interval_seconds: float,
        error_interval_seconds: float | None = None,
        run_on_start: bool = True,
        failure_log_level: int = logging.WARNING,
    ) -> None:
        self.name = name
        self._work = work
        self._interval = interval_seconds
        self._error_interval = error_interval_seconds if error_interval_seconds is not None else interval_seconds
        self._run_on_start = run_on_start
        self._failure_log_level = failure_log_level
        self.stats = TaskStats()

    async def _sleep(self, stop_event: asyncio.Event, seconds: float) -> bool:
        """Wait `seconds`; return True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=seconds)
            return True
        except TimeoutError:
            return False

    async def run_once(self) -> bool:
        """Run one unit of work; return False if it raised."""
        self.stats.runs += 1
        self.stats.last_run_at = datetime.now(UTC)
        try:
            await self._work()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.failures += 1
            self.stats.last_error = str(e) or type(e).__name__
            logger.log(
                self._failure_log_level, "Task %s failed: %s", self.name, self.stats.last_error, exc_info=True
            )
            return False
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        if not self._run_on_start and await self._sleep(stop_event, self._interval):
            return

        while not stop_event.is_set():
            ok = await self.run_once()
            delay = self._interval if ok else self._error_interval
            if await self._sleep(stop_event, delay):
                break
        logger.debug("Task %s stopped", self.name)


class Scheduler:
    """Owns the background tasks and the shared stop event.

    Example:
        ```python
        scheduler = Scheduler()
        scheduler.add(RepeatingTask("indexer", indexer.run_cycle, interval_seconds=5))
        scheduler.start()
        ...
        await scheduler.stop(grace_seconds=30)
        ```
    """

    def __init__(self, stop_event: asyncio.Event | None = None) -> None:
        self.stop_event = stop_event or asyncio.Event()
        self._tasks: list[RepeatingTask] = []
        self._running: dict[str, asyncio.Task[None]] = {}

    @property
    def tasks(self) -> list[RepeatingTask]:
        return list(self._tasks)

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._running.values())

    def add(self, task: RepeatingTask) -> None:
        if self._running:
            raise RuntimeError("Cannot add tasks after the scheduler has started")
        self._tasks.append(task)

    def start(self) -> None:
        if self._running:
            raise RuntimeError("Scheduler already started")
        for task in self._tasks:
            logger.debug("Starting task %s", task.name)
            self._running[task.name] = asyncio.create_task(task.run(self.stop_event), name=task.name)

    async def wait(self) -> None:
        """Block until every task has exited."""
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def stop(self, *, grace_seconds: float = 30.0) -> None:
        """Signal stop, wait up to `grace_seconds`, then cancel stragglers."""
        self.stop_event.set()
        pending = [t for t in self._running.values() if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
            for task in still_running:
                logger.warning("Task %s did not finish within %.1fs; cancelling", task.get_name(), grace_seconds)
                task.cancel()
            for task in still_running:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._running.clear()
