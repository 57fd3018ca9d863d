"""
Task scheduler for the automation agent's periodic operations.

Every registered task gets its own asyncio loop, so a slow raffle check never
delays the transaction poll. A task never overlaps with itself.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from croniter import croniter

from kuri_automation.core.exceptions import SchedulerError


logger = structlog.get_logger(__name__)


class ScheduledTask:
    """
    A periodic task on a fixed interval or, when ``cron`` is given, on a
    five-field cron expression evaluated in UTC.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False,
        cron: Optional[str] = None
    ):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.cron = cron
        self.enabled = enabled
        self.last_run: Optional[datetime] = None
        self.next_run = datetime.utcnow()
        self.run_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

        if not run_immediately:
            self.schedule_next_run()

    def should_run(self) -> bool:
        """Check if task should run now."""
        return self.enabled and datetime.utcnow() >= self.next_run

    def seconds_until_next_run(self) -> float:
        return max(0.0, (self.next_run - datetime.utcnow()).total_seconds())

    def schedule_next_run(self):
        now = datetime.utcnow()
        if self.cron:
            self.next_run = croniter(self.cron, now).get_next(datetime)
        else:
            self.next_run = now + timedelta(seconds=self.interval_seconds)

    async def run(self) -> bool:
        """Execute the task once. Failures are counted and logged, not raised."""
        start_time = datetime.utcnow()
        try:
            logger.debug(f"Running scheduled task: {self.name}")
            await self.func()
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            self.schedule_next_run()
            logger.error(
                f"Task failed: {self.name}",
                error=str(e),
                error_count=self.error_count
            )
            return False

        self.last_run = start_time
        self.run_count += 1
        self.schedule_next_run()
        logger.debug(
            f"Task completed: {self.name}",
            duration=(datetime.utcnow() - start_time).total_seconds(),
            run_count=self.run_count
        )
        return True


class TaskScheduler:
    """Runs each registered task on its own independent timer."""

    def __init__(self):
        self.tasks: Dict[str, ScheduledTask] = {}
        self.running = False
        self._runners: Dict[str, asyncio.Task] = {}

    def register_task(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        enabled: bool = True,
        run_immediately: bool = False,
        cron: Optional[str] = None
    ) -> ScheduledTask:
        """Register a new scheduled task."""
        if name in self.tasks:
            raise SchedulerError(f"Task already registered: {name}")

        task = ScheduledTask(
            name=name,
            func=func,
            interval_seconds=interval_seconds,
            enabled=enabled,
            run_immediately=run_immediately,
            cron=cron
        )
        self.tasks[name] = task
        logger.info(f"Registered task: {name}", interval_seconds=interval_seconds, cron=cron)

        if self.running:
            self._spawn(task)
        return task

    def _spawn(self, task: ScheduledTask):
        self._runners[task.name] = asyncio.create_task(self._run_loop(task), name=f"scheduler:{task.name}")

    async def _run_loop(self, task: ScheduledTask):
        while self.running:
            try:
                await asyncio.sleep(task.seconds_until_next_run())
            except asyncio.CancelledError:
                break

            if not self.running:
                break

            if not task.enabled:
                task.schedule_next_run()
                continue

            await task.run()

    async def start(self):
        """Start every task timer and wait until they are all stopped."""
        logger.info("Starting task scheduler", tasks=len(self.tasks))
        self.running = True

        for task in self.tasks.values():
            if task.name not in self._runners:
                self._spawn(task)

        while self.running and self._runners:
            await asyncio.gather(*list(self._runners.values()), return_exceptions=True)
            self._runners = {name: runner for name, runner in self._runners.items() if not runner.done()}

        logger.info("Task scheduler stopped")

    async def stop_task(self, name: str):
        """Cancel one task's timer. The other timers keep running."""
        if name not in self.tasks:
            raise SchedulerError(f"Unknown task: {name}")

        self.tasks[name].enabled = False
        runner = self._runners.pop(name, None)
        if runner is not None and not runner.done():
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        logger.info(f"Stopped task: {name}")

    async def stop(self):
        """Stop the task scheduler."""
        logger.info("Stopping task scheduler")
        self.running = False

        runners = list(self._runners.values())
        for runner in runners:
            if not runner.done():
                runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)
        self._runners.clear()

    def is_task_running(self, name: str) -> bool:
        runner = self._runners.get(name)
        return runner is not None and not runner.done()

    async def health_check(self) -> Dict[str, Any]:
        """Get health status of task scheduler."""
        total_tasks = len(self.tasks)
        enabled_tasks = sum(1 for task in self.tasks.values() if task.enabled)
        tasks_with_errors = sum(1 for task in self.tasks.values() if task.error_count > 0)

        task_statuses = {}
        for name, task in self.tasks.items():
            task_statuses[name] = {
                "enabled": task.enabled,
                "running": self.is_task_running(name),
                "interval_seconds": task.interval_seconds,
                "cron": task.cron,
                "last_run": task.last_run.isoformat() if task.last_run else None,
                "next_run": task.next_run.isoformat(),
                "run_count": task.run_count,
                "error_count": task.error_count,
                "last_error": task.last_error
            }

        return {
            "healthy": self.running and tasks_with_errors < total_tasks * 0.5,
            "running": self.running,
            "total_tasks": total_tasks,
            "enabled_tasks": enabled_tasks,
            "tasks_with_errors": tasks_with_errors,
            "tasks": task_statuses
        }
