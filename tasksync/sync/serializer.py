"""Single-worker queue that runs sync operations one at a time."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class OperationChain:
    """FIFO chain of async operations.

    Batch flushes, reconciliation passes and incremental pulls are all
    submitted here, so they never overlap and run in submission order.
    The worker task is started lazily on the running event loop.
    """

    def __init__(self, name: str = "sync"):
        self.name = name
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_worker(self) -> asyncio.Queue:
        if self._closed:
            raise RuntimeError(f"Operation chain '{self.name}' is closed")
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(self._queue), name=f"{self.name}-operations"
            )
        return self._queue

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            operation, future = await queue.get()
            try:
                if future is not None and future.cancelled():
                    continue
                try:
                    result = await operation()
                except asyncio.CancelledError:
                    if future is not None and not future.done():
                        future.cancel()
                    raise
                except Exception as e:
                    if future is None:
                        logger.error(f"Queued sync operation failed: {e}")
                    elif not future.done():
                        future.set_exception(e)
                else:
                    if future is not None and not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()

    def submit(self, operation: Operation) -> "asyncio.Future[Any]":
        """Queue an operation and return a future for its result."""
        queue = self._ensure_worker()
        future = asyncio.get_running_loop().create_future()
        queue.put_nowait((operation, future))
        return future

    def enqueue(self, operation: Operation) -> None:
        """Queue an operation without waiting. Failures are logged."""
        queue = self._ensure_worker()
        queue.put_nowait((operation, None))

    async def join(self) -> None:
        """Wait until every operation submitted so far has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Stop the worker. Queued operations are cancelled."""
        self._closed = True
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        if self._queue is not None:
            while not self._queue.empty():
                _, future = self._queue.get_nowait()
                if future is not None and not future.done():
                    future.cancel()
                self._queue.task_done()
        self._worker = None
