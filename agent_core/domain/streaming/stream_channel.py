from typing import AsyncIterator, Generic, List, Optional, TypeVar
import asyncio

T = TypeVar("T")

_END = object()


class StreamChannel(Generic[T]):
    """Single-producer, multi-subscriber channel with replay

    Each subscriber gets every item from the first one, whenever it starts
    reading. Subscriber queues are bounded, so a slow reader holds the
    producer back instead of letting the queue grow.
    """

    def __init__(self, maxsize: int = 64):
        self.maxsize = maxsize
        self._log: List[T] = []
        self._subscribers: List[asyncio.Queue] = []
        self._closed = False
        self._error: Optional[BaseException] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def items(self) -> List[T]:
        return list(self._log)

    async def publish(self, item: T):
        if self._closed:
            raise RuntimeError("Cannot publish to a closed channel")

        self._log.append(item)
        for queue in list(self._subscribers):
            await queue.put(item)

    async def close(self, error: Optional[BaseException] = None):
        """End the channel; subscribers re-raise `error` once drained"""

        if self._closed:
            return

        self._closed = True
        self._error = error
        for queue in list(self._subscribers):
            await queue.put(_END)

    async def subscribe(self) -> AsyncIterator[T]:
        snapshot = list(self._log)
        queue: Optional[asyncio.Queue] = None
        if not self._closed:
            queue = asyncio.Queue(self.maxsize)
            self._subscribers.append(queue)

        try:
            for item in snapshot:
                yield item

            if queue is not None:
                while True:
                    item = await queue.get()
                    if item is _END:
                        break
                    yield item

            if self._error is not None:
                raise self._error
        finally:
            if queue is not None:
                self._unsubscribe(queue)

    def _unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

        # Unblock a producer waiting on this queue
        while not queue.empty():
            queue.get_nowait()
