import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)


class SnapshotHub:
    """In-process fan-out of tick snapshots to WebSocket subscribers.

    Each subscriber gets a bounded queue; when a slow consumer falls behind,
    its oldest snapshot is dropped so publishing never blocks the tick.
    """

    def __init__(self, queue_size: int = 16) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self._latest: dict[str, Any] | None = None

    @property
    def latest(self) -> dict[str, Any] | None:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, snapshot: dict[str, Any]) -> None:
        self._latest = snapshot
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.info("Snapshot subscriber added (%d total)", len(self._subscribers))
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
            logger.info("Snapshot subscriber removed (%d total)", len(self._subscribers))
