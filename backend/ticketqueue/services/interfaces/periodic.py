"""
Background loop interface.

The reconcilers all share the same shape: run once immediately, then every
`interval` seconds, and never let a failing tick kill the loop task.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ticketqueue.core.logging import get_logger, loop_context
from ticketqueue.core.metrics import sweep_runs
from ticketqueue.db.session import async_session_maker

logger = get_logger(__name__)


class PeriodicService(ABC):
    """
    A global polling loop.

    Implementations:
    - ExpiryReconciler: expires purchase sessions past their window
    - LimitEnforcer: evicts queue entries of users with no allowance left
    - ReminderService: "minutes left" emails for active sessions
    - EventStatusUpdater: moves events through their sale lifecycle
    """

    name: str = "periodic"

    def __init__(self, interval: float, session_factory: Optional[async_sessionmaker] = None):
        self.interval = interval
        self.session_factory = session_factory or async_session_maker
        self._task: Optional[asyncio.Task] = None

    @abstractmethod
    async def run_once(self) -> int:
        """
        One sweep. Returns the number of items acted on.

        Implementations catch per-item errors themselves so that one bad row
        does not abort the sweep.
        """
        pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-loop")
        logger.info("background_loop_started", loop=self.name, interval=self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("background_loop_stopped", loop=self.name)

    async def tick(self) -> int:
        sweep_runs.labels(loop=self.name).inc()
        with loop_context(self.name):
            try:
                return await self.run_once()
            except Exception as e:
                logger.error("background_tick_failed", error=str(e), exc_info=True)
                return 0

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    def status(self) -> dict:
        return {"name": self.name, "running": self.running, "interval_seconds": self.interval}
