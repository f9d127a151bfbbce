"""Bounded worker pool for upload and download work.

This module provides:
- WorkerPool: Fixed number of threads consuming submitted tasks
- WorkerTask: A queued callable with the future receiving its outcome
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


@dataclass
class WorkerTask:
    """A task to be executed by the worker pool.

    Attributes:
        fn: Callable to run on a worker thread.
        args: Positional arguments for fn.
        future: Receives the return value or the raised exception.
    """

    fn: Callable[..., Any]
    args: tuple[Any, ...] = ()
    future: Future[Any] = field(default_factory=Future)


class WorkerPool:
    """Pool of worker threads with a fixed size.

    Each task runs on exactly one worker; an exception raised by a task is
    logged and stored on its future, and the worker moves on to the next task.

    Usage:
        pool = WorkerPool("upload", max_workers=4)
        pool.start()

        future = pool.submit(handler.handle, path, connector)

        pool.stop(timeout=10.0)
    """

    def __init__(self, name: str, max_workers: int) -> None:
        """Initialize the worker pool.

        Args:
            name: Name used for worker threads and log messages.
            max_workers: Number of worker threads.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._name = name
        self._max_workers = max_workers

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._task_queue: queue.Queue[WorkerTask | None] = queue.Queue()
        self._workers: list[threading.Thread] = []

        # Statistics
        self._active_count = 0
        self._completed_count = 0
        self._error_count = 0

    @property
    def name(self) -> str:
        """Get the pool name."""
        return self._name

    @property
    def max_workers(self) -> int:
        """Get the number of worker threads."""
        return self._max_workers

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._pool_state

    @property
    def active_count(self) -> int:
        """Get number of tasks currently running."""
        with self._lock:
            return self._active_count

    @property
    def queue_size(self) -> int:
        """Get number of queued tasks."""
        return self._task_queue.qsize()

    @property
    def completed_count(self) -> int:
        """Get number of completed tasks."""
        with self._lock:
            return self._completed_count

    @property
    def error_count(self) -> int:
        """Get number of tasks that raised."""
        with self._lock:
            return self._error_count

    def start(self) -> None:
        """Start the worker pool."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool '%s' already running", self._name)
                return

            self._pool_state = PoolState.RUNNING

            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"{self._name}-worker-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

            logger.info("Worker pool '%s' started with %d workers", self._name, self._max_workers)

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker pool.

        Running tasks get up to ``timeout`` seconds to finish their current
        step; queued tasks that never started are cancelled.

        Args:
            timeout: Maximum time to wait for workers to finish.
        """
        self.begin_stop()
        self.join(timeout)

    def begin_stop(self) -> None:
        """Cancel queued tasks and tell every worker to exit without waiting."""
        with self._lock:
            if self._pool_state != PoolState.RUNNING:
                return

            self._pool_state = PoolState.STOPPING
            logger.info("Worker pool '%s' stopping...", self._name)

            # Cancel tasks that never started
            cancelled = 0
            while True:
                try:
                    task = self._task_queue.get_nowait()
                except queue.Empty:
                    break
                if task is not None and task.future.cancel():
                    cancelled += 1
            if cancelled:
                logger.info("Cancelled %d queued tasks in pool '%s'", cancelled, self._name)

            # Send poison pills to stop workers
            for _ in self._workers:
                self._task_queue.put(None)

    def join(self, timeout: float) -> None:
        """Wait for the workers of a stopping pool to exit.

        Args:
            timeout: Maximum time to wait for all workers together.
        """
        with self._lock:
            if self._pool_state != PoolState.STOPPING:
                return
            workers = list(self._workers)

        deadline = time.monotonic() + timeout
        for worker in workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0.0))
            if worker.is_alive():
                logger.warning("Worker %s did not finish within the grace period", worker.name)

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            logger.info("Worker pool '%s' stopped", self._name)

    def submit(self, fn: Callable[..., Any], *args: Any) -> Future[Any] | None:
        """Submit a task to the pool.

        Args:
            fn: Callable to run.
            *args: Positional arguments for fn.

        Returns:
            Future of the task, or None if the pool is not running.
        """
        if self._pool_state != PoolState.RUNNING:
            logger.warning("Cannot submit task: pool '%s' not running", self._name)
            return None

        task = WorkerTask(fn=fn, args=args)
        self._task_queue.put(task)
        return task.future

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            try:
                task = self._task_queue.get(timeout=1.0)
            except queue.Empty:
                if self._pool_state != PoolState.RUNNING:
                    break
                continue

            if task is None:
                # Poison pill - stop worker
                break

            self._process_task(task)

    def _process_task(self, task: WorkerTask) -> None:
        """Run a single task and record its outcome on the future."""
        if not task.future.set_running_or_notify_cancel():
            return

        with self._lock:
            self._active_count += 1
        try:
            result = task.fn(*task.args)
        except Exception as e:
            with self._lock:
                self._error_count += 1
            logger.exception("Task error in pool '%s'", self._name)
            task.future.set_exception(e)
        else:
            with self._lock:
                self._completed_count += 1
            task.future.set_result(result)
        finally:
            with self._lock:
                self._active_count -= 1
