"""Background dispatcher running tasks on a thread pool."""

from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Any, Callable

from loguru import logger


class ThreadDispatcher:
    """Runs submitted tasks on background threads.

    Failures are logged and kept in ``errors``; they never reach the code
    that submitted the task. ``wait()`` blocks until everything submitted so
    far has finished.
    """

    def __init__(self, max_workers: int = 2, name: str = "attachery-bg"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        self.errors: list[BaseException] = []
        self.completed = 0

    def submit(self, task: Callable[[], Any]) -> None:
        future = self._executor.submit(self._run, task)
        with self._lock:
            self._futures.add(future)
        future.add_done_callback(self._done)

    def _run(self, task: Callable[[], Any]) -> Any:
        try:
            result = task()
        except Exception as e:
            logger.error(f"Background task failed | dispatcher={self.name} error={e}")
            with self._lock:
                self.errors.append(e)
            raise
        with self._lock:
            self.completed += 1
        return result

    def _done(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for pending tasks. Returns False if some are still running after ``timeout``."""
        deadline = None if timeout is None else time.monotonic() + timeout
        # Tasks may submit further tasks, so keep waiting until nothing is pending
        while True:
            with self._lock:
                pending = {f for f in self._futures if not f.done()}
            if not pending:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            _, not_done = wait_futures(pending, timeout=remaining)
            if not_done:
                return False

    def shutdown(self, wait: bool = True) -> None:
        logger.info(f"Shutting down dispatcher {self.name}...")
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> ThreadDispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)


class InlineDispatcher:
    """Runs tasks immediately on the caller's thread, letting errors propagate."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, task: Callable[[], Any]) -> None:
        self.submitted += 1
        task()
