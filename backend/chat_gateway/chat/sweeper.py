"""Background retention sweep for the message store.

Runs ``MessageStore.evict_expired`` on a fixed interval, independent of any
client activity. The interval, the clock and the sleep function are all
injectable so tests drive sweeps with ``run_once()`` instead of waiting.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from .store import MessageStore

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Periodically evicts messages older than the retention window.

    Lifecycle:
      * ``start()`` from the application lifespan (needs a running loop).
      * ``stop()`` on shutdown; cancels the task and waits for it.
    """

    def __init__(
        self,
        store: MessageStore,
        retention: timedelta,
        interval: timedelta,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if retention <= timedelta(0) or interval <= timedelta(0):
            raise ValueError("retention and interval must be positive")
        self.store = store
        self.retention = retention
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Run a single sweep now. Returns the number of evicted messages."""
        now = self._clock() if self._clock else None
        return await self.store.evict_expired(self.retention, now=now)

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval.total_seconds())
            try:
                await self.run_once()
            except Exception as exc:  # pylint: disable=broad-except
                # A failed sweep must not end the loop; the next one retries
                logger.exception(f"[Sweeper] Retention sweep failed: {exc}")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="retention-sweeper")
        logger.info(
            f"[Sweeper] Started (retention={self.retention}, interval={self.interval})"
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[Sweeper] Stopped")
