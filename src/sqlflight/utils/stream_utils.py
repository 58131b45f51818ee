import asyncio
import logging
import threading
from typing import AsyncIterable, Awaitable, Coroutine, Iterator, Optional, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


class AsyncToSyncConverter:
    """Runs coroutines on an event loop owned by a background thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self.loop_thread = threading.Thread(target=self._start_loop, name="sqlflight-loop", daemon=True)
        self.loop_thread.start()

    def _start_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def stop_loop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.loop_thread.join()
        self.loop.close()

    def run_coroutine(self, coro: Coroutine[object, object, T], timeout: Optional[float] = None) -> T:
        """
        Submit a coroutine to the background loop and wait for its result.
        """
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)


def syncify_async_iter(
    aiter: AsyncIterable[T] | Awaitable[AsyncIterable[T]], converter: AsyncToSyncConverter
) -> Iterator[T]:
    """
    Convert an async iterable to a sync iterator driven by the converter's loop.

    Items are pulled one at a time, so the async side only advances when the caller asks
    for the next item. Closing the iterator early closes the async iterator as well.

    :param aiter: An async iterable or an awaitable that returns an async iterable
    :param converter: The converter owning the event loop
    :return: A synchronous iterator
    """

    async def _resolve():
        resolved = await aiter if asyncio.iscoroutine(aiter) else aiter
        return resolved.__aiter__()

    iterator = converter.run_coroutine(_resolve())

    async def _next():
        return await iterator.__anext__()

    async def _close():
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    try:
        while True:
            try:
                item = converter.run_coroutine(_next())
            except StopAsyncIteration:
                break
            yield item
    finally:
        converter.run_coroutine(_close())
