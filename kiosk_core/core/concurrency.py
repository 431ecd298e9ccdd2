"""Single-flight guard and debouncer used by the session and reader components."""
import asyncio
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator, Optional

import structlog

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class SingleFlight:
    """
    Marks an operation as in progress.

    A second caller while the guard is held gets ``False`` from ``claim()``
    and is expected to return without doing anything. The guard is always
    released on exit, including when the body raises or is cancelled.
    """

    def __init__(self, name: str):
        self.name = name
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @contextmanager
    def claim(self) -> Iterator[bool]:
        if self._active:
            logger.debug("single_flight_skipped", operation=self.name)
            yield False
            return

        self._active = True
        try:
            yield True
        finally:
            self._active = False


class Debouncer:
    """
    Coalesces calls that arrive too soon after the last completed one.

    - A call within ``interval`` of the last completion schedules one
      deferred call; further calls before it runs are dropped.
    - A call while another one is running is deferred until ``interval``
      after that run completes.
    - Otherwise the call runs immediately.
    """

    def __init__(self, interval: float, clock: Clock, sleep: Sleep):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._flight = SingleFlight("debounced_call")
        self._last_completed: Optional[float] = None
        self._deferred: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def deferred(self) -> Optional[asyncio.Task]:
        return self._deferred

    async def call(self, func: Callable[[], Awaitable[None]]) -> bool:
        """
        Run ``func`` now, later, or not at all.

        Returns:
            bool: True if ``func`` ran during this call
        """
        if self._flight.active:
            self._defer(func, None)
            return False

        if self._last_completed is not None:
            elapsed = self._clock() - self._last_completed
            if elapsed < self.interval:
                self._defer(func, self.interval - elapsed)
                return False

        await self._run(func)
        return True

    def _defer(self, func: Callable[[], Awaitable[None]], delay: Optional[float]) -> None:
        if self._deferred is None or self._deferred.done():
            self._deferred = asyncio.create_task(self._run_later(func, delay))

    async def _run_later(
        self, func: Callable[[], Awaitable[None]], delay: Optional[float]
    ) -> None:
        if delay is None:
            await self._idle.wait()
            delay = self.interval
        await self._sleep(delay)
        self._deferred = None
        await self._run(func)

    async def _run(self, func: Callable[[], Awaitable[None]]) -> None:
        with self._flight.claim() as claimed:
            if not claimed:
                return
            self._idle.clear()
            try:
                await func()
            finally:
                self._last_completed = self._clock()
                self._idle.set()

    def cancel(self) -> None:
        if self._deferred is not None and not self._deferred.done():
            self._deferred.cancel()
        self._deferred = None
