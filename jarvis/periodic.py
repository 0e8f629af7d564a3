"""
Repeating background task on the running event loop.

Components that need a sweep (rate limiter cleanup, conversation expiry,
upstream health probe) own one of these and expose start()/stop(); the
composition root decides when they run. Tests can skip start() entirely
and call the component's sweep method directly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Call `callback` every `interval` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], object | Awaitable[object]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop. Must be called with an event loop running."""
        if self.running:
            logger.warning("Periodic task '%s' already running", self.name)
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")
        logger.debug("Periodic task '%s' started (every %.0fs)", self.name, self.interval)

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Periodic task '%s' stopped", self.name)

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            try:
                result = self.callback()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic task '%s' failed", self.name)
