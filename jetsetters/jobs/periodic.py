"""
Fixed-interval asyncio job runner shared by the background jobs.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Runs ``run_once`` every ``interval`` seconds until stopped. Subclasses set ``name``."""

    name = "job"

    def __init__(self, interval: float):
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self):
        raise NotImplementedError

    async def _run(self):
        logger.info(f"🔄 {self.name} started (every {self.interval}s)")
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # keep the loop alive; the next tick retries
                logger.error(f"{self.name} failed: {e}")
            await asyncio.sleep(self.interval)

    def start(self):
        if not self.running:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info(f"📴 {self.name} stopped")
