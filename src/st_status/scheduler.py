"""
Scheduler module for the status poller.

This module provides interval-based timers on top of asyncio: a recurring
task for the poll cycle and the proactive token refresh, and one-shot
tasks for the "token expiring soon" refresh. Every task is returned as a
handle that can be cancelled.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


@dataclass
class ScheduledTask:
    """A recurring or one-shot timer."""

    name: str
    interval_seconds: float
    callback: Callable[[], Awaitable[None]]
    recurring: bool = True
    last_run: Optional[float] = None
    run_count: int = 0
    cancelled: bool = False
    _handle: Optional[asyncio.Task] = field(default=None, repr=False, compare=False)

    def cancel(self) -> None:
        """Stop the timer. Idempotent."""
        self.cancelled = True
        # a task cancelling itself from its own callback just stops looping
        if (
            self._handle is not None
            and not self._handle.done()
            and self._handle is not _current_task()
        ):
            self._handle.cancel()
        self._handle = None

    @property
    def active(self) -> bool:
        return not self.cancelled and self._handle is not None and not self._handle.done()


class Scheduler:
    """
    Named interval timers.

    Scheduling a name that is already in use cancels the previous task, so
    at most one timer per name is ever outstanding.
    """

    def __init__(
        self,
        logger: Optional[object] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            logger: Optional AuditLogger for callback failures
            sleep: Coroutine function used to wait between runs
            clock: Time source recorded as last_run
        """
        self._logger = logger
        self._sleep = sleep
        self._clock = clock
        self._tasks: dict[str, ScheduledTask] = {}

    def every(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> ScheduledTask:
        """
        Run a callback every interval_seconds, first run after one interval.

        Must be called from within a running event loop.
        """
        if interval_seconds <= 0:
            raise ValueError(f"Interval must be positive, got {interval_seconds}")
        task = ScheduledTask(
            name=name,
            interval_seconds=interval_seconds,
            callback=callback,
            recurring=True,
        )
        return self._start(task)

    def once(
        self,
        name: str,
        delay_seconds: float,
        callback: Callable[[], Awaitable[None]],
    ) -> ScheduledTask:
        """Run a callback a single time after delay_seconds."""
        task = ScheduledTask(
            name=name,
            interval_seconds=max(0.0, delay_seconds),
            callback=callback,
            recurring=False,
        )
        return self._start(task)

    def cancel(self, name: str) -> bool:
        """
        Cancel a task by name.

        Returns:
            True if the task existed
        """
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        """Get a scheduled task by name."""
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        """List all scheduled tasks."""
        return list(self._tasks.values())

    def _start(self, task: ScheduledTask) -> ScheduledTask:
        self.cancel(task.name)
        loop = asyncio.get_running_loop()
        task._handle = loop.create_task(self._run(task), name=f"scheduler:{task.name}")
        self._tasks[task.name] = task
        return task

    async def _run(self, task: ScheduledTask) -> None:
        try:
            while not task.cancelled:
                await self._sleep(task.interval_seconds)
                if task.cancelled:
                    break
                task.last_run = self._clock()
                task.run_count += 1
                try:
                    await task.callback()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    # A failing callback must not kill the timer chain
                    if self._logger:
                        self._logger.log_error(
                            "Scheduler",
                            f"Scheduled task '{task.name}' failed",
                            error=e,
                        )
                if not task.recurring:
                    break
        finally:
            if not task.recurring and self._tasks.get(task.name) is task:
                del self._tasks[task.name]
