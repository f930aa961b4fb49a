import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Fires a coroutine function on a fixed wall-clock cadence.

    Firings are spaced by ``interval`` from a deadline, not from the end of
    the previous run: every run is spawned as its own task, so a run that
    outlasts the interval overlaps the next one instead of delaying it.
    Each run is wrapped in an error boundary that logs and moves on.
    Stopping cancels future firings only; in-flight runs finish on their own.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self.interval = interval
        self._func = func
        self._timer: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self.runs = 0
        self.failures = 0

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        if self.armed:
            return
        self._timer = asyncio.create_task(self._timer_loop(), name=f"timer:{self.name}")

    async def stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        try:
            await self._timer
        except asyncio.CancelledError:
            pass
        self._timer = None

    async def wait_idle(self) -> None:
        """Wait for runs that were already fired to complete."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def _timer_loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, deadline - loop.time()))
            deadline += self.interval
            task = asyncio.create_task(self._run(), name=f"run:{self.name}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _run(self) -> None:
        self.runs += 1
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.failures += 1
            logger.exception("Job %s failed", self.name)
