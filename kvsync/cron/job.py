"""
Cron Job Module

Recurring tasks with one-minute resolution.

A running job ticks about once a second. The first tick only records the
current minute; afterwards, whenever the minute advances and the job's
expression matches it, the job fires once for that minute.

Serial jobs take a non-blocking distributed lock named after the job
before running, so at most one process in the fleet runs a given minute.
The lock is never released; it expires after CRON_LOCK_TTL_MS, which
outlasts the minute. Parallel jobs run on every process.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, List, Optional, Union

from ..config.settings import settings
from ..context import CoordinationContext
from .expression import CronExpression

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60


class CronJob(ABC):
    """
    Base class for scheduled jobs; subclasses implement run().

    Usage:
        class Cleanup(CronJob):
            async def run(self, now):
                ...

        job = Cleanup(CronExpression.from_cron_string("*/5 * * * *"))
        job.start()
        ...
        await job.stop()

    Attributes:
        expression: When the job fires
        serial: Run on at most one process per matching minute
        name: Job identity; serial jobs lock "cronjob.<name>"
    """

    def __init__(
            self,
            expression: CronExpression,
            serial: bool = True,
            context: CoordinationContext = None,
            name: str = None,
            tick_interval: float = None,
            lock_ttl_ms: int = None,
    ):
        """
        Initialize the job.

        Args:
            expression: Parsed cron expression
            serial: Serialize runs fleet-wide through a distributed lock
            context: Coordination context; one is created (and owned) if omitted
            name: Job identity (default: class name)
            tick_interval: Seconds between ticks (default from settings)
            lock_ttl_ms: Serial lock expiry (default from settings)
        """
        self.expression = expression
        self.serial = serial
        self.name = name if name is not None else type(self).__name__
        self.tick_interval = tick_interval if tick_interval is not None else settings.CRON_TICK_INTERVAL
        self.lock_ttl_ms = lock_ttl_ms if lock_ttl_ms is not None else settings.CRON_LOCK_TTL_MS

        self._owns_context = context is None
        self.context = context if context is not None else CoordinationContext()

        self.last_minute = 0
        self._task: Optional[asyncio.Task] = None

    @abstractmethod
    def run(self, now: datetime) -> Any:
        """Do the job's work; may be a coroutine function."""

    @property
    def lock_name(self) -> str:
        return f"cronjob.{self.name}"

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking on the running event loop."""
        if self.is_running():
            return
        self._task = asyncio.create_task(self._loop())
        logger.debug(f"Cron job {self.name} started")

    async def stop(self) -> None:
        """
        Stop ticking. Safe to call while a tick is in flight.

        Shuts down the coordination context if the job created it.
        """
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_context:
            await self.context.shutdown()
        logger.debug(f"Cron job {self.name} stopped")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.tick_interval)

    async def tick(self, now: datetime = None) -> bool:
        """
        Evaluate one tick.

        Args:
            now: The time to evaluate (default: current local time)

        Returns:
            True if run() was invoked
        """
        now = now if now is not None else datetime.now()
        minute = int(now.timestamp() // MINUTE_SECONDS)
        if not self.last_minute:
            self.last_minute = minute
        if minute <= self.last_minute or not self.expression.matches(now):
            return False

        self.last_minute = minute
        try:
            if self.serial:
                lock = await self.context.locks.acquire(
                    self.lock_name, wait=False, timeout_ms=self.lock_ttl_ms
                )
                if lock is None:
                    logger.debug(f"Cron job {self.name} skipped, another instance holds the lock")
                    return False

            result = self.run(now)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception as exc:
            logger.error(f"Cron job {self.name} failed: {exc}", exc_info=True)
            return False


class CallableCronJob(CronJob):
    """A cron job that calls a function with the firing time."""

    def __init__(
            self,
            expression: CronExpression,
            fn: Callable[[datetime], Any],
            name: str = None,
            **kwargs,
    ):
        super().__init__(expression, name=name if name is not None else fn.__name__, **kwargs)
        self.fn = fn

    def run(self, now: datetime) -> Any:
        return self.fn(now)


class CronScheduler:
    """
    A set of cron jobs sharing one coordination context.

    Usage:
        scheduler = CronScheduler()
        scheduler.schedule("0 * * * *", rotate_logs)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, context: CoordinationContext = None, tick_interval: float = None):
        self._owns_context = context is None
        self.context = context if context is not None else CoordinationContext()
        self.tick_interval = tick_interval
        self.jobs: List[CronJob] = []

    def schedule(
            self,
            cron: Union[str, CronExpression],
            fn: Callable[[datetime], Any],
            name: str = None,
            serial: bool = True,
    ) -> CronJob:
        """
        Register a function to run on a schedule.

        Raises:
            MalformedCronExpression: If cron cannot be parsed
        """
        expression = cron if isinstance(cron, CronExpression) else CronExpression.from_cron_string(cron)
        job = CallableCronJob(
            expression,
            fn,
            name=name,
            serial=serial,
            context=self.context,
            tick_interval=self.tick_interval,
        )
        self.jobs.append(job)
        return job

    def start(self) -> None:
        for job in self.jobs:
            job.start()

    async def stop(self) -> None:
        for job in self.jobs:
            await job.stop()
        if self._owns_context:
            await self.context.shutdown()
