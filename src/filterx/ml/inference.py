"""Inference concurrency layer.

Architecture:
    FastAPI (async) -> asyncio.Lock (one batch at a time) -> ThreadPoolExecutor(N) -> ONNX inference
    FastAPI (async) -> ThreadPoolExecutor(1) -> model reload, archive rebuild

A batch runs synchronously on a worker thread so the event loop keeps serving
progress and cancellation requests. A second batch while one is running is
rejected immediately rather than queued.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from filterx.batch import BatchJob
    from filterx.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BatchBusyError(RuntimeError):
    """Raised when a batch is submitted while another is still running."""


class InferencePool:
    """Runs one batch at a time on a dedicated thread pool and tracks it."""

    def __init__(self, settings: Settings) -> None:
        self._batch_lock = asyncio.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._control_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="filterx-control")
        self._state_lock = threading.Lock()
        self._current_job: BatchJob | None = None
        self._cancel_event: threading.Event | None = None

    async def run_batch(
        self,
        job: BatchJob,
        func: Callable[[threading.Event], T],
    ) -> T:
        """Run ``func(cancel_event)`` for ``job`` in the executor.

        Raises:
            BatchBusyError: If another batch holds the pool.
        """
        if self._batch_lock.locked():
            raise BatchBusyError("A batch is already being processed")

        async with self._batch_lock:
            cancel_event = threading.Event()
            with self._state_lock:
                self._current_job = job
                self._cancel_event = cancel_event
            try:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, cancel_event)
            finally:
                with self._state_lock:
                    self._current_job = None
                    self._cancel_event = None

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run a short synchronous call (model reload, archive rebuild) off the batch workers.

        These calls use their own single-thread executor so they do not wait
        behind a running batch.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._control_executor, func, *args)

    def cancel_current(self) -> BatchJob | None:
        """Request cancellation of the running batch; returns it, or None if idle."""
        with self._state_lock:
            if self._current_job is None or self._cancel_event is None:
                return None
            self._cancel_event.set()
            logger.info("Cancellation requested for batch %s", self._current_job.id)
            return self._current_job

    @property
    def current_job(self) -> BatchJob | None:
        """The batch currently running, if any."""
        with self._state_lock:
            return self._current_job

    @property
    def busy(self) -> bool:
        return self._batch_lock.locked()

    def shutdown(self) -> None:
        """Shut down both thread pool executors."""
        self._executor.shutdown(wait=True)
        self._control_executor.shutdown(wait=True)
