from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from tillguard.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run an async callable on a fixed interval until stopped.

    The first run happens one interval after ``start``. A failing run is
    logged and retried on the next tick; it never ends the loop.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Awaitable[object]],
    ) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.func = func
        self.runs = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            logger.warning("periodic_task_already_running", task=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("periodic_task_started", task=self.name, interval=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("periodic_task_stopped", task=self.name)

    async def run_once(self) -> object:
        result = await self.func()
        self.runs += 1
        return result

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                result = await self.run_once()
                logger.debug("periodic_task_ran", task=self.name, result=result)
            except Exception as exc:
                logger.warning(
                    "periodic_task_failed",
                    task=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
