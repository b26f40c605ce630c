"""Single-writer job queue and per-platform request throttle.

Both are plain instances built once per process by the engine and handed to
whoever needs them; there is no module-level state.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from priceguard.logging_config import get_logger

__all__ = ["VerificationQueue", "PlatformThrottle", "QueueClosedError"]

logger = get_logger("jobs")

JobFactory = Callable[[], Awaitable[Any]]


class QueueClosedError(RuntimeError):
    """Raised when submitting to a queue that has been closed."""


class VerificationQueue:
    """FIFO queue drained by exactly one worker task.

    At most one job runs at a time, so at most one catalog
    read-modify-write is ever in flight. ``submit`` returns a future that
    resolves with the job's result (or its exception).

    Usage:
        queue = VerificationQueue()
        queue.start()
        result = await queue.submit(lambda: service.verify_offer_by_id("offer_x"))
        await queue.close()
    """

    def __init__(self) -> None:
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """Start the worker on the running event loop (idempotent)."""
        if self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._closed = False
        self._worker = asyncio.get_running_loop().create_task(self._drain())

    def submit(self, job: JobFactory) -> "asyncio.Future[Any]":
        if self._closed:
            raise QueueClosedError("Verification queue is closed")
        self.start()
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        return future

    async def _drain(self) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                if job is None:
                    return
                if future.cancelled():
                    continue
                try:
                    result = await job()
                except Exception as e:
                    logger.exception(f"Verification job failed: {e}")
                    if not future.done():
                        future.set_exception(e)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Finish queued jobs, then stop the worker."""
        if self._closed:
            return
        self._closed = True
        if self.running:
            self._queue.put_nowait((None, None))
            await self._worker
        self._worker = None


class PlatformThrottle:
    """Minimum spacing between consecutive calls to the same platform.

    A simple leaky throttle: remember when each platform was last called and
    sleep out whatever is left of its interval before the next call.

    Args:
        min_intervals: Seconds between calls, per platform name
        clock: Monotonic clock in seconds (injectable for tests)
        sleep: Coroutine used to wait (injectable for tests)
    """

    def __init__(
        self,
        min_intervals: Dict[str, float],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.min_intervals = dict(min_intervals)
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def wait(self, platform: str) -> float:
        """Block until ``platform`` may be called again; returns seconds waited."""
        interval = self.min_intervals.get(platform, 0.0)
        lock = self._locks.setdefault(platform, asyncio.Lock())
        async with lock:
            waited = 0.0
            last = self._last_call.get(platform)
            if last is not None:
                waited = max(0.0, last + interval - self._clock())
                if waited > 0:
                    await self._sleep(waited)
            self._last_call[platform] = self._clock()
            return waited
