"""Debounced fan-in/fan-out batching of keyed requests."""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Set, TypeVar

from src.utils.exceptions import DataError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RequestBatcher(Generic[T]):
    """
    Coalesce requests arriving within a short window into one batch call.

    The first request of an idle period arms a single timer. When it fires,
    every queued key is handed to ``process_batch`` once and each waiting
    caller is resolved from the returned mapping. Callers asking for the same
    key inside one window share the upstream result. Nothing is retained after
    a flush, so this is not a cache.
    """

    def __init__(
        self,
        process_batch: Callable[[List[str]], Awaitable[Dict[str, T]]],
        batch_delay_ms: float = 50
    ):
        """
        Initialize request batcher.

        Args:
            process_batch: Coroutine function resolving a list of keys to a
                mapping of key -> result
            batch_delay_ms: Debounce delay in milliseconds
        """
        self.process_batch = process_batch
        self.batch_delay_ms = batch_delay_ms

        self._queue: Dict[str, List[asyncio.Future]] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._batches_processed = 0

    async def request(self, key: str) -> T:
        """
        Queue a request for key and wait for its batch to resolve.

        Args:
            key: Request key

        Returns:
            Result produced for key by the batch processor

        Raises:
            DataError: If the batch produced no result for key
            Exception: Whatever the batch processor raised
        """
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queue.setdefault(key, []).append(future)
        self._schedule_batch(loop)
        return await future

    def _schedule_batch(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._timer is not None:
            return
        self._timer = loop.call_later(self.batch_delay_ms / 1000, self._fire, loop)

    def _fire(self, loop: asyncio.AbstractEventLoop) -> None:
        self._timer = None
        task = loop.create_task(self._execute_batch())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute_batch(self) -> None:
        if not self._queue:
            return

        current_queue = self._queue
        self._queue = {}
        keys = list(current_queue.keys())
        self._batches_processed += 1

        logger.debug(f"Processing batch of {len(keys)} keys: {keys}")

        try:
            results = await self.process_batch(keys)
        except Exception as e:
            logger.warning(f"Batch processing failed for {keys}: {e}")
            for waiters in current_queue.values():
                for future in waiters:
                    if not future.done():
                        future.set_exception(e)
            return

        for key, waiters in current_queue.items():
            if key in results:
                for future in waiters:
                    if not future.done():
                        future.set_result(results[key])
            else:
                error = DataError(f"No result for key: {key}")
                for future in waiters:
                    if not future.done():
                        future.set_exception(error)

    @property
    def pending_keys(self) -> List[str]:
        """Keys waiting for the next flush."""
        return list(self._queue.keys())

    @property
    def batches_processed(self) -> int:
        return self._batches_processed

    def clear(self) -> None:
        """Disarm the timer and cancel every waiting caller."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        for waiters in self._queue.values():
            for future in waiters:
                if not future.done():
                    future.cancel()
        self._queue.clear()
