import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Set

from cryptotracker.schemas.portfolio import Holding

logger = logging.getLogger(__name__)


class PortfolioUpdates:
    """Broadcast channel of holdings lists.

    Each subscriber gets its own bounded queue. A slow subscriber loses its
    oldest pending update rather than blocking the publisher.
    """

    def __init__(self, max_pending: int = 16):
        self._max_pending = max_pending
        self._subscribers: Set[asyncio.Queue] = set()
        self.latest: Optional[List[Holding]] = None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, holdings: List[Holding]) -> None:
        self.latest = list(holdings)
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(self.latest)
        logger.debug(f"Published {len(holdings)} holdings to {len(self._subscribers)} subscribers")

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[asyncio.Queue]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_pending)
        if self.latest is not None:
            queue.put_nowait(self.latest)
        self._subscribers.add(queue)
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)

    async def stream(self) -> AsyncIterator[List[Holding]]:
        async with self.subscribe() as queue:
            while True:
                yield await queue.get()
