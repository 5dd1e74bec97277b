"""
Cancellable periodic polling.

The client drives the protocol with two independent pollers (exchange
sessions and pending messages). Each tick is awaited to completion; stopping
a task takes effect between ticks.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from e2ee.exceptions import NetworkError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Shared stop signal for one or more pollers"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """
        Sleep for up to `timeout` seconds, waking early on cancellation.

        Returns:
            True if cancelled
        """
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()


class PeriodicTask:
    """
    Runs `tick` every `interval` seconds until its token is cancelled.

    A failing tick is logged and the next one runs on schedule, so a relay
    outage never stops the poller.
    """

    def __init__(self, name: str, interval: float, tick: Callable[[], Awaitable],
                 token: Optional[CancellationToken] = None, initial_delay: float = 0.0):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.tick = tick
        self.token = token or CancellationToken()
        self.initial_delay = initial_delay
        self.ticks = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None

    async def run(self):
        if self.initial_delay and await self.token.wait(self.initial_delay):
            return
        while not self.token.cancelled:
            try:
                await self.tick()
            except NetworkError as e:
                self.failures += 1
                logger.info("%s: relay unavailable, retrying next tick: %s", self.name, e)
            except Exception:
                self.failures += 1
                logger.exception("%s: tick failed", self.name)
            self.ticks += 1
            if await self.token.wait(self.interval):
                break
        logger.debug("%s stopped after %d ticks", self.name, self.ticks)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self):
        """Cancel and wait for the current tick to finish"""
        self.token.cancel()
        if self._task is not None:
            await self._task
            self._task = None
