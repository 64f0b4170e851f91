"""Fixed-interval background timers."""

import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class IntervalScheduler:
    """Runs one independent periodic job per key.

    Jobs for different keys are not synchronized with each other. A job that
    raises is logged and runs again on the next tick.
    """

    def __init__(self, name: str):
        self.name = name
        self._jobs: Dict[str, asyncio.Task] = {}

    def schedule(
        self,
        key: str,
        interval: float,
        job: Callable[[], Awaitable[object]],
        run_immediately: bool = False,
    ) -> None:
        """Start a periodic job for ``key``, replacing an existing one."""
        self.cancel(key)
        self._jobs[key] = asyncio.create_task(
            self._run(key, interval, job, run_immediately),
            name=f"{self.name}:{key}",
        )
        logger.info(f"Scheduled {self.name} job {key} every {interval}s")

    def cancel(self, key: str) -> None:
        task = self._jobs.pop(key, None)
        if task and not task.done():
            task.cancel()

    def is_scheduled(self, key: str) -> bool:
        task = self._jobs.get(key)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        """Cancel every job and wait for them to exit."""
        tasks = list(self._jobs.values())
        self._jobs.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"{self.name} scheduler stopped")

    async def _run(self, key, interval, job, run_immediately):
        if not run_immediately:
            await asyncio.sleep(interval)
        while True:
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{self.name} job {key} failed: {e}", exc_info=True)
            await asyncio.sleep(interval)
