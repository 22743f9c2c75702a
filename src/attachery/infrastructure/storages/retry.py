from __future__ import annotations

import time
from typing import Any, BinaryIO, Mapping

from loguru import logger


class RetryingStorage:
    """Wraps a storage, retrying failed uploads up to ``tries`` attempts in total.

    The stream is rewound before every retry, so it must be seekable. Only
    uploads are retried; other calls go straight to the wrapped storage.
    That includes ``movable`` and ``move`` when the wrapped storage has them,
    so a failed move is raised on its first attempt.
    """

    def __init__(self, storage: Any, tries: int = 3, delay: float = 0.0):
        if tries < 1:
            raise ValueError("tries must be at least 1")
        self.storage = storage
        self.tries = tries
        self.delay = delay

    def __getattr__(self, name: str) -> Any:
        return getattr(self.storage, name)

    def upload(self, io: BinaryIO, id: str, metadata: Mapping[str, Any] | None = None) -> None:
        for attempt in range(1, self.tries + 1):
            try:
                return self.storage.upload(io, id, metadata)
            except Exception as e:
                if attempt == self.tries:
                    raise
                logger.warning(f"Upload of {id!r} failed (attempt {attempt}/{self.tries}), retrying: {e}")
                io.seek(0)
                if self.delay:
                    time.sleep(self.delay)

    def delete(self, id: str) -> None:
        self.storage.delete(id)

    def open(self, id: str) -> BinaryIO:
        return self.storage.open(id)

    def exists(self, id: str) -> bool:
        return self.storage.exists(id)
