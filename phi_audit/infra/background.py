"""
Periodic background tasks.

Retention sweeps, outbox draining and monitor sweeps all share the same
start/stop/loop shape.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs `run_once()` every `interval_seconds` until stopped.

    Errors in one iteration are logged and the loop carries on.
    """

    name = "periodic-task"

    def __init__(self, interval_seconds: float):
        self.interval_seconds = interval_seconds
        self.running = False
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> None:
        raise NotImplementedError

    def start(self) -> None:
        if self.running:
            logger.warning(f"{self.name} already started")
            return

        self.running = True
        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started {self.name} with {self.interval_seconds}s interval")

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info(f"Stopped {self.name}")

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Error in {self.name} loop: {e}")
            await asyncio.sleep(self.interval_seconds)
