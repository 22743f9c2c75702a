from __future__ import annotations

from typing import Any, Callable, Protocol


class Dispatcher(Protocol):
    """Hands work to a background job system (queue, worker pool, ...)."""

    def submit(self, task: Callable[[], Any]) -> None: ...
