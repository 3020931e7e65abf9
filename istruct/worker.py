"""Single-thread execution of engine operations.

The libvirt connection handle must not be used from more than one thread, and
the engine's check-then-act sequences need mutual exclusion. Both come from
running every operation on one dedicated thread, one at a time, in submission
order. The engine is built on that thread and never leaves it.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Callable, TypeVar

from istruct.engine import Engine
from istruct.metrics import worker_pending_operations

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WorkerClosed(RuntimeError):
    """Raised when work is submitted after shutdown()."""


def _log_abandoned(future: asyncio.Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning(f"Operation abandoned by its caller failed: {exc!r}")


class EngineWorker:
    """Owns the engine and runs submitted operations against it."""

    def __init__(self, factory: Callable[[], Engine]):
        self._factory = factory
        self._engine: Engine | None = None
        self._thread_id: int | None = None
        self._closed = False
        self._engine_closed = False
        # Guards _closed together with queueing onto the executor.
        self._lock = threading.Lock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="libvirt",
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def thread_id(self) -> int | None:
        """Ident of the thread the engine was built on, once it has been."""
        return self._thread_id

    def _get_engine(self) -> Engine:
        if self._engine_closed:
            raise WorkerClosed("engine worker is shut down")
        if self._engine is None:
            self._thread_id = threading.get_ident()
            self._engine = self._factory()
            logger.info("Engine initialized on worker thread")
        return self._engine

    def _execute(self, fn: Callable[..., T], args: tuple, kwargs: dict) -> T:
        try:
            return fn(self._get_engine(), *args, **kwargs)
        finally:
            worker_pending_operations.dec()

    async def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run fn(engine, *args, **kwargs) on the worker thread.

        Cancelling the awaiting task does not cancel the work: once submitted
        it runs to completion and its effects persist. A failure nobody is
        left to receive is logged.
        """
        with self._lock:
            if self._closed:
                raise WorkerClosed("engine worker is shut down")
            worker_pending_operations.inc()
            try:
                future = self._executor.submit(self._execute, fn, args, kwargs)
            except RuntimeError as e:
                worker_pending_operations.dec()
                raise WorkerClosed("engine worker is shut down") from e
        inner = asyncio.wrap_future(future)
        try:
            return await asyncio.shield(inner)
        except asyncio.CancelledError:
            inner.add_done_callback(_log_abandoned)
            raise

    def _close_engine(self) -> None:
        self._engine_closed = True
        if self._engine is None:
            return
        try:
            self._engine.close()
        finally:
            self._engine = None
            logger.info("Engine closed")

    def shutdown(self) -> None:
        """Finish queued work, close the engine on its thread, stop the thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            close = self._executor.submit(self._close_engine)
        try:
            close.result()
        except Exception as e:
            logger.error(f"Error closing engine: {e}")
        self._executor.shutdown(wait=True)
