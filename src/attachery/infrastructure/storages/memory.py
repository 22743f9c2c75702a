"""In-memory storage, used as cache in development and for tests."""

from __future__ import annotations

import io as iolib
import threading
from typing import Any, BinaryIO, Iterable, Mapping

from loguru import logger

from attachery.domain.errors import FileNotFound


class MemoryFile(iolib.BytesIO):
    """Stream returned by ``MemoryStorage.open``; remembers where it came from."""

    def __init__(self, data: bytes, storage: MemoryStorage, id: str):
        super().__init__(data)
        self.storage = storage
        self.id = id


class MemoryStorage:
    def __init__(self, name: str = "memory"):
        self.name = name
        self.files: dict[str, bytes] = {}
        self.metadata: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<MemoryStorage {self.name} ({len(self.files)} files)>"

    def upload(self, io: BinaryIO, id: str, metadata: Mapping[str, Any] | None = None) -> None:
        data = io.read()
        if isinstance(data, str):
            data = data.encode("utf-8")
        with self._lock:
            self.files[id] = data
            self.metadata[id] = dict(metadata or {})

    def open(self, id: str) -> MemoryFile:
        with self._lock:
            try:
                data = self.files[id]
            except KeyError:
                raise FileNotFound(f"file {id!r} not found on {self.name!r}") from None
        return MemoryFile(data, self, id)

    def exists(self, id: str) -> bool:
        with self._lock:
            return id in self.files

    def delete(self, id: str) -> None:
        with self._lock:
            self.files.pop(id, None)
            self.metadata.pop(id, None)

    def multi_delete(self, ids: Iterable[str]) -> None:
        with self._lock:
            for id in ids:
                self.files.pop(id, None)
                self.metadata.pop(id, None)

    def movable(self, io: Any, id: str) -> bool:
        return isinstance(io, MemoryFile) and io.storage is not self

    def move(self, io: MemoryFile, id: str, metadata: Mapping[str, Any] | None = None) -> None:
        self.upload(iolib.BytesIO(io.getvalue()), id, metadata)
        io.storage.delete(io.id)
        logger.debug(f"Moved {io.id!r} from {io.storage.name!r} to {id!r} on {self.name!r}")

    def read(self, id: str) -> bytes:
        with self.open(id) as f:
            return f.read()

    def clear(self) -> None:
        with self._lock:
            self.files.clear()
            self.metadata.clear()
