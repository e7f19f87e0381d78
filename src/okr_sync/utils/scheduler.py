"""APScheduler-backed recurring jobs for auto-sync and auto-backup."""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class RecurringJob:
    """A single named interval job owned by one engine.

    Starting an already running job is a no-op; stopping cancels the timer and
    clears the handle. Errors raised by a run are logged and never reach the
    scheduler, so one failed run does not stop later ones. Stopping does not
    cancel a run that is already in flight.
    """

    def __init__(self, name: str, func: Callable[[], Awaitable[Any]], interval_minutes: float):
        self.name = name
        self.func = func
        self.interval_minutes = interval_minutes
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def next_run_time(self) -> Optional[datetime]:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(self.name)
        return job.next_run_time if job else None

    def start(self) -> bool:
        """Start the timer. Must be called from inside a running event loop.

        Returns:
            True if a timer was started, False if one was already running
        """
        if self._scheduler is not None:
            logger.debug(f"{self.name} already running")
            return False

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self.interval_minutes),
            id=self.name,
            name=self.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"{self.name} started, interval: {self.interval_minutes} minutes")
        return True

    def stop(self) -> bool:
        """Cancel the timer.

        Returns:
            True if a running timer was stopped
        """
        if self._scheduler is None:
            return False
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info(f"{self.name} stopped")
        return True

    def reschedule(self, interval_minutes: float) -> None:
        """Change the interval, restarting the timer if it is running."""
        self.interval_minutes = interval_minutes
        if self.running:
            self.stop()
            self.start()

    async def run_once(self) -> None:
        """Run the job body once, logging instead of raising on failure."""
        try:
            await self.func()
            logger.info(f"{self.name} run completed")
        except Exception as e:
            logger.error(f"{self.name} run failed: {e}")
