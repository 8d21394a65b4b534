import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Generic, Iterable, List, Optional, TypeVar


T = TypeVar('T')

_CLOSED = object()


class ReceiverClosed(Exception):
    """Raised by ``BoundedReceiver.get`` once the producer closed it and it is drained."""


class BoundedReceiver(Generic[T]):
    """Single-consumer FIFO with a fixed capacity that the producer closes on exit.

    ``put`` suspends while the queue is full, which gives the producer
    backpressure from a slow consumer. After ``close`` the consumer still
    receives buffered items, then iteration stops.
    """

    def __init__(self, name: str = '', capacity: int = 1):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, capacity))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def put(self, item: T) -> None:
        if self._closed:
            raise ReceiverClosed(self.name)
        await self._queue.put(item)

    async def get(self) -> T:
        if self._closed and self._queue.empty():
            raise ReceiverClosed(self.name)
        item = await self._queue.get()
        if item is _CLOSED:
            raise ReceiverClosed(self.name)
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # wake a consumer parked on an empty queue
        if self._queue.empty():
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ReceiverClosed:
            raise StopAsyncIteration


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> List[Any]:
    """Await tasks together; on failure or cancellation cancel the rest, then run cleanup.

    Cancellation of the caller is swallowed here; the first task exception is re-raised
    after every task has settled and cleanup has run.
    """
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            return await asyncio.gather(*task_list)
        return []
    except asyncio.CancelledError:
        return []
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


async def cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
