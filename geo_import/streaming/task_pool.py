"""Bounded task pool with explicit ownership.

A ``TaskPool`` is created and owned by whoever needs it (there is no
process-wide pool).  Each submitted callable gets a ``TaskHandle``: the
task is either owned by the pool (queued or running) or handed back to
the caller (finished or cancelled).  ``max_pending`` bounds the number of
tasks the pool owns at once; ``submit`` refuses work beyond it.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Generic, TypeVar

from geo_import.core.exceptions import ContractError

logger = logging.getLogger("geo_import.streaming.task_pool")

T = TypeVar("T")


class PoolSaturatedError(ContractError):
    """The pool already owns ``max_pending`` tasks."""

    default_stage = "stream"
    default_code = "TASK_POOL_SATURATED"


class TaskState(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskHandle(Generic[T]):
    """Caller-side view of one task."""

    def __init__(self, name: str, future: Future[T]) -> None:
        self.name = name
        self._future = future

    @property
    def state(self) -> TaskState:
        f = self._future
        if f.cancelled():
            return TaskState.CANCELLED
        if f.done():
            return TaskState.FAILED if f.exception() is not None else TaskState.DONE
        if f.running():
            return TaskState.RUNNING
        return TaskState.PENDING

    @property
    def owned_by_pool(self) -> bool:
        return self.state in (TaskState.PENDING, TaskState.RUNNING)

    def cancel(self) -> bool:
        """Cancel a task that has not started; running tasks finish normally."""
        return self._future.cancel()

    def result(self, timeout: float | None = None) -> T:
        """Wait for the task's value.

        Raises:
            CancelledError: If the task was cancelled.
        """
        return self._future.result(timeout=timeout)

    def add_done_callback(self, fn: Callable[[TaskHandle[T]], Any]) -> None:
        self._future.add_done_callback(lambda _f: fn(self))


class TaskPool:
    """Thread pool bounded in workers and in owned tasks.

    Args:
        max_workers: Concurrent worker threads.
        max_pending: Tasks the pool may own (queued + running).
        name: Thread name prefix.
    """

    def __init__(self, max_workers: int = 2, *, max_pending: int = 8, name: str = "geo-import") -> None:
        if max_workers <= 0 or max_pending <= 0:
            msg = "max_workers and max_pending must be > 0"
            raise ValueError(msg)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._slots = threading.BoundedSemaphore(max_pending)
        self._max_pending = max_pending
        self._handles: list[TaskHandle[Any]] = []
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, name: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> TaskHandle[T]:
        """Hand *fn* to the pool.

        Raises:
            PoolSaturatedError: If ``max_pending`` tasks are already owned.
            RuntimeError: If the pool was shut down.
        """
        if self._closed:
            msg = "task pool is shut down"
            raise RuntimeError(msg)
        if not self._slots.acquire(blocking=False):
            raise PoolSaturatedError(f"task pool owns {self._max_pending} tasks; refusing {name}")

        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(lambda _f: self._slots.release())
        handle: TaskHandle[T] = TaskHandle(name, future)
        with self._lock:
            self._handles.append(handle)
        logger.debug("task submitted | name=%s", name)
        return handle

    @property
    def owned(self) -> list[TaskHandle[Any]]:
        """Handles the pool currently owns."""
        with self._lock:
            self._handles = [h for h in self._handles if h.owned_by_pool]
            return list(self._handles)

    def cancel_all(self) -> int:
        """Cancel every queued task; returns how many were cancelled."""
        with self._lock:
            handles = list(self._handles)
        return sum(1 for h in handles if h.cancel())

    def shutdown(self, *, wait: bool = True, cancel_pending: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def __enter__(self) -> TaskPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()


__all__ = [
    "CancelledError",
    "PoolSaturatedError",
    "TaskHandle",
    "TaskPool",
    "TaskState",
]
