"""Periodic background tasks with an explicit start/stop lifecycle"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

log = logging.getLogger(__name__)


class PeriodicTask:
    """
    Run ``callback`` every ``interval`` seconds on the running event loop

    The first run happens one interval after ``start()``. A failing run is
    logged and the loop keeps going; ``stop()`` cancels the loop and waits for
    it to finish so no timer outlives its owner.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Union[Any, Awaitable[Any]]],
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Schedule the loop on the current event loop"""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        log.info("Periodic task %s started (every %ss)", self.name, self.interval)

    async def stop(self):
        """Cancel the loop and wait for it"""
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("Periodic task %s stopped", self.name)

    async def run_once(self) -> Any:
        result = self.callback()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                log.exception("Periodic task %s failed", self.name)
