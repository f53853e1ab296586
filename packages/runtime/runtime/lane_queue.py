import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Dict, Tuple, TypeVar

from protocol.errors import SandboxError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LaneQueueClosed(SandboxError):
    code = "SANDBOX_CLOSED"
    http_status = 503


class LaneQueue:
    """Per-lane FIFO execution.

    Work submitted to the same lane runs strictly one item at a time in
    submission order; separate lanes may interleave. The coordinator uses one
    lane per interpreter so neither is ever re-entered.
    """

    def __init__(self, max_concurrency: int = 2) -> None:
        self._lanes: Dict[str, asyncio.Queue[Tuple[Callable[[], Awaitable[T] | T], asyncio.Future[T]]]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._state_lock = asyncio.Lock()
        self._global_semaphore = asyncio.Semaphore(max_concurrency)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, lane_key: str, fn: Callable[[], Awaitable[T] | T]) -> T:
        if self._closed:
            raise LaneQueueClosed(f"Lane queue is closed; rejected work for lane {lane_key!r}")
        loop = asyncio.get_running_loop()
        future: asyncio.Future[T] = loop.create_future()

        async with self._state_lock:
            queue = self._lanes.get(lane_key)
            if queue is None:
                queue = asyncio.Queue()
                self._lanes[lane_key] = queue
                self._workers[lane_key] = asyncio.create_task(self._lane_worker(lane_key))

        await queue.put((fn, future))
        return await future

    async def _lane_worker(self, lane_key: str) -> None:
        queue = self._lanes[lane_key]
        while True:
            fn, future = await queue.get()
            try:
                async with self._global_semaphore:
                    result = fn()
                    if inspect.isawaitable(result):
                        result = await result
                if not future.cancelled():
                    future.set_result(result)
            except Exception as exc:
                if not future.cancelled():
                    future.set_exception(exc)
            finally:
                queue.task_done()

    async def close(self) -> None:
        """Reject new work, let queued work finish, then stop the workers."""
        if self._closed:
            return
        self._closed = True
        async with self._state_lock:
            queues = list(self._lanes.values())
            workers = list(self._workers.values())
        for queue in queues:
            await queue.join()
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        logger.debug(f"Lane queue closed ({len(workers)} lanes)")
