"""
Bounded worker pool used by the reconciliation engine.

With a single thread every task runs inline, in submission order. With more
threads, tasks run on a ThreadPoolExecutor and the orchestrator waits on a
WorkTracker until every task (including tasks submitted by other tasks) has
finished.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# Generous ceiling while waiting for the pool to shut down
DEFAULT_SHUTDOWN_TIMEOUT = 24 * 60 * 60


class WorkTracker:
    """
    Counts outstanding work and lets one party wait for it to drain.

    The count starts at one, standing for the orchestrator itself. Every
    dispatch registers before the task is handed over and every task arrives
    when done; the orchestrator deregisters with arrive_and_wait() and blocks
    until the count reaches zero.
    """

    def __init__(self):
        self._pending = 1
        self._orchestrator_arrived = False
        self._condition = threading.Condition()

    @property
    def pending(self) -> int:
        with self._condition:
            return self._pending

    def register(self):
        with self._condition:
            if self._pending <= 0:
                raise RuntimeError("WorkTracker already drained")
            self._pending += 1

    def arrive(self):
        with self._condition:
            self._pending -= 1
            if self._pending <= 0:
                self._condition.notify_all()

    def arrive_and_wait(self, timeout: Optional[float] = None) -> bool:
        """
        Deregister the orchestrator and block until all work is done.

        Returns:
            True if the work drained, False on timeout
        """
        with self._condition:
            if not self._orchestrator_arrived:
                self._orchestrator_arrived = True
                self._pending -= 1
                if self._pending <= 0:
                    self._condition.notify_all()
            return self._condition.wait_for(lambda: self._pending <= 0, timeout=timeout)


class TaskScheduler:
    """
    Runs units of work either inline or on a fixed size thread pool.

    Args:
        threads: Number of worker threads; 1 (or less) means synchronous execution
    """

    def __init__(self, threads: int = 1):
        self.threads = max(1, int(threads))
        self.executor = None
        self.tracker = None
        self._failed = 0
        self._failed_lock = threading.Lock()

        if self.threads > 1:
            self.executor = ThreadPoolExecutor(max_workers=self.threads, thread_name_prefix='group-sync')
            self.tracker = WorkTracker()
            logger.debug(f"Started worker pool with {self.threads} threads")

    @property
    def concurrent(self) -> bool:
        return self.executor is not None

    @property
    def failed_tasks(self) -> int:
        with self._failed_lock:
            return self._failed

    def submit(self, func: Callable[..., Any], *args, description: str = 'task', **kwargs):
        """
        Dispatch a unit of work.

        In synchronous mode the function runs right away, in pooled mode it is
        queued. Either way an exception raised by the function is logged and
        counted in failed_tasks, and never reaches the caller or other tasks.
        """
        if not self.concurrent:
            self._execute(func, args, kwargs, description)
            return

        self.tracker.register()
        try:
            self.executor.submit(self._run, func, args, kwargs, description)
        except Exception:
            self.tracker.arrive()
            raise

    def _execute(self, func, args, kwargs, description):
        try:
            func(*args, **kwargs)
        except Exception as e:
            with self._failed_lock:
                self._failed += 1
            logger.error(f"Failed {description}: {e}", exc_info=True)

    def _run(self, func, args, kwargs, description):
        try:
            self._execute(func, args, kwargs, description)
        finally:
            self.tracker.arrive()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched task has completed."""
        if not self.concurrent:
            return True
        drained = self.tracker.arrive_and_wait(timeout)
        if not drained:
            logger.error(f"Timed out waiting for {self.tracker.pending} pending tasks")
        return drained

    def shutdown(self, timeout: Optional[float] = DEFAULT_SHUTDOWN_TIMEOUT) -> bool:
        """
        Wait for outstanding work, then stop the worker threads.

        If the work does not drain within the timeout, queued tasks are
        cancelled and the running ones are left to finish on their own.

        Returns:
            True if every task completed before the pool was stopped
        """
        if not self.concurrent:
            return True
        drained = False
        try:
            drained = self.wait(timeout)
        finally:
            self.executor.shutdown(wait=drained, cancel_futures=not drained)
            self.executor = None
        return drained

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()
