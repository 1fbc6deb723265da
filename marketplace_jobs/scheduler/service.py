import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

class PeriodicService:
    """
    Runs an async callable on a fixed interval until stopped.

    Errors from one run are logged and the loop carries on; the process
    must stay alive through store outages.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval: float,
        run_immediately: bool = False,
    ):
        self.name = name
        self.func = func
        self.interval = interval
        self.run_immediately = run_immediately
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    async def start(self):
        self._running = True
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name=f"periodic-{self.name}")
        logger.info("%s service started (every %ss).", self.name, self.interval)

    async def stop(self):
        self._running = False
        self._stopped.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("%s service stopped.", self.name)

    async def run_once(self) -> Any:
        try:
            return await self.func()
        except Exception as e:
            logger.error(f"Error in {self.name} run: {e}", exc_info=True)
            return None

    async def _loop(self):
        if not self.run_immediately:
            await self._sleep()
        while self._running:
            await self.run_once()
            await self._sleep()

    async def _sleep(self):
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass
