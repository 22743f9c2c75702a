"""Bounded worker pool for independent upload/delete tasks."""

from __future__ import annotations

import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from loguru import logger

from attachery.domain.errors import BatchTaskFailure

_POLL_SECONDS = 0.05


class ParallelExecutor:
    """Fixed-size pool draining a task queue, fail-fast on the first error.

    Usage:
        executor = ParallelExecutor(workers=3)
        for ref in refs:
            executor.submit(storage.delete, ref.id)
        executor.run_to_completion()

    Tasks queue up until the workers are started, either explicitly with
    ``start()`` (to stream tasks into a bounded queue) or by
    ``run_to_completion()``, which closes the queue and waits for the
    workers to drain it.

    If any task raises, the shared abort signal is set: workers stop
    picking up queued tasks, ``submit()`` refuses further work, and the
    first error is raised as ``BatchTaskFailure`` once in-flight tasks have
    finished. Results of sibling tasks are discarded in that case. An
    executor is single-use.
    """

    def __init__(self, workers: int = 3, max_queue: int = 0, name: str = "attachery"):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers
        self.name = name
        self._tasks: queue.Queue = queue.Queue(maxsize=max_queue)
        self._abort = threading.Event()
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._results: list[Any] = []
        self._error: BaseException | None = None
        self._finished = False

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Queue a task. Returns False if the executor no longer accepts work."""
        item = (task, args, kwargs)
        while True:
            if self._abort.is_set() or self._closed.is_set():
                logger.debug(f"{self.name} executor refused task {getattr(task, '__name__', task)!r}")
                return False
            try:
                self._tasks.put(item, timeout=_POLL_SECONDS)
                return True
            except queue.Full:
                # Nobody drains a full queue until the workers exist
                self.start()

    def start(self) -> None:
        """Start the workers without closing the queue."""
        with self._lock:
            if self._finished:
                raise RuntimeError("executor has already been run")
            if self._pool is not None:
                return
            self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=self.name)
            for _ in range(self.workers):
                self._pool.submit(self._work)
        logger.debug(f"{self.name} executor started {self.workers} worker(s)")

    def run_to_completion(self) -> list[Any]:
        """Close the queue, drain it with the workers and wait for all of them."""
        if self._finished:
            raise RuntimeError("executor has already been run")
        if self._pool is None and self._tasks.empty():
            self._closed.set()
            self._finished = True
            return []

        self.start()
        self._closed.set()
        try:
            self._pool.shutdown(wait=True)
        finally:
            self._finished = True

        if isinstance(self._error, Exception):
            raise BatchTaskFailure(self._error) from self._error
        if self._error is not None:
            # interpreter exits and interrupts are not task failures
            raise self._error
        return list(self._results)

    def _work(self) -> None:
        while not self._abort.is_set():
            try:
                task, args, kwargs = self._tasks.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue
            try:
                result = task(*args, **kwargs)
            except BaseException as e:
                with self._lock:
                    if self._error is None:
                        self._error = e
                        logger.error(f"{self.name} task failed, aborting batch: {e!r}")
                self._abort.set()
                if not isinstance(e, Exception):
                    raise
                return
            with self._lock:
                self._results.append(result)

    def __enter__(self) -> ParallelExecutor:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.run_to_completion()
            return
        self._abort.set()
        self._closed.set()
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        self._finished = True


def run_all(tasks: list[Callable[[], Any]], workers: int = 3, name: str = "attachery") -> list[Any]:
    """Run zero-argument callables, inline when there's nothing to parallelize."""
    if not tasks:
        return []
    if len(tasks) == 1 or workers == 1:
        results = []
        for task in tasks:
            try:
                results.append(task())
            except Exception as e:
                raise BatchTaskFailure(e) from e
        return results
    executor = ParallelExecutor(workers=min(workers, len(tasks)), name=name)
    for task in tasks:
        executor.submit(task)
    return executor.run_to_completion()
