from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Generic, Hashable, TypeVar

from sanic.log import logger

from cerberus.metric import error_counter

K = TypeVar("K", bound=Hashable)

Job = Callable[[], Awaitable[Any]]


def _consume_exception(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class KeyedWorkerPool(Generic[K]):
    """Runs jobs one at a time per key, in submission order.

    A worker task exists for a key only while its queue is non-empty, and
    different keys run concurrently. Jobs must not submit-and-await work for
    their own key, that would wait on itself.
    """

    def __init__(self) -> None:
        self._queues: Dict[K, asyncio.Queue] = {}
        self._tasks: Dict[K, asyncio.Task] = {}
        self._closed = False

    def __len__(self) -> int:
        return len(self._tasks)

    @property
    def closed(self) -> bool:
        return self._closed

    def busy(self, key: K) -> bool:
        return key in self._tasks

    def submit(self, key: K, job: Job) -> asyncio.Future:
        if self._closed:
            raise RuntimeError("Worker pool is closed")
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_consume_exception)

        queue = self._queues.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._queues[key] = queue
            self._tasks[key] = asyncio.create_task(self._run_key(key, queue))
        queue.put_nowait((job, future))
        return future

    async def _run_key(self, key: K, queue: asyncio.Queue) -> None:
        try:
            while True:
                try:
                    job, future = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    result = await job()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:  # noqa: BLE001
                    error_counter.labels(context="worker").inc()
                    logger.error("Job for %s failed", key, exc_info=True)
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
        finally:
            if self._queues.get(key) is queue:
                self._queues.pop(key, None)
                self._tasks.pop(key, None)
            while not queue.empty():
                _, future = queue.get_nowait()
                future.cancel()

    def close(self) -> None:
        self._closed = True

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def drain(self, timeout: float) -> bool:
        """Wait for queued jobs to finish, cancel whatever is left at the deadline.

        Returns True if everything finished in time.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)
        while self._tasks:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.wait(list(self._tasks.values()), timeout=remaining)

        leftover = list(self._tasks.values())
        if not leftover:
            return True
        logger.warning("Cancelling %d workers after drain deadline", len(leftover))
        for task in leftover:
            task.cancel()
        await asyncio.gather(*leftover, return_exceptions=True)
        return False
