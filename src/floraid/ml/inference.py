"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

With the default N=1 overlapping classification calls are serialized.
Requests beyond the semaphore limit queue with a 5s timeout, then fail as
busy. A running call that exceeds the inference timeout is abandoned by the
caller; the worker thread cannot be cancelled and keeps its slot until it
finishes.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from floraid.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0


class PoolSaturatedError(TimeoutError):
    """Raised when no inference slot frees up within the semaphore timeout."""


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._timeout = settings.inference_timeout or None
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor. The slot is released once the worker finishes.

        Raises:
            PoolSaturatedError: If the semaphore cannot be acquired within the timeout.
            TimeoutError: If the function runs longer than the inference timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        except TimeoutError:
            logger.warning("Inference queue full, rejecting request")
            raise PoolSaturatedError(f"No inference slot free after {SEMAPHORE_TIMEOUT_SECONDS}s") from None
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        loop = asyncio.get_running_loop()
        with self._counter_lock:
            self._active_count += 1
        try:
            future = self._executor.submit(func, *args)
        except BaseException:
            self._release_slot()
            raise

        # The slot stays taken until the worker finishes, even if the caller gave up.
        future.add_done_callback(lambda _: self._schedule_release(loop))
        try:
            return await asyncio.wait_for(asyncio.shield(asyncio.wrap_future(future)), timeout=self._timeout)
        except TimeoutError:
            logger.warning("Inference exceeded %ss timeout", self._timeout)
            raise

    def _schedule_release(self, loop: asyncio.AbstractEventLoop) -> None:
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self._release_slot)

    def _release_slot(self) -> None:
        self._semaphore.release()
        with self._counter_lock:
            self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)
