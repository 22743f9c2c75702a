from __future__ import annotations

from typing import Any, BinaryIO, Iterable, Mapping, Protocol, runtime_checkable


@runtime_checkable
class Storage(Protocol):
    """Capabilities the core needs from a storage backend.

    Storages may additionally implement ``movable``/``move`` and
    ``multi_delete``; callers probe for them with ``supports()``.
    """

    def upload(self, io: BinaryIO, id: str, metadata: Mapping[str, Any]) -> None: ...

    def delete(self, id: str) -> None: ...

    def open(self, id: str) -> BinaryIO: ...

    def exists(self, id: str) -> bool: ...


class MovableStorage(Storage, Protocol):
    def movable(self, io: Any, id: str) -> bool: ...

    def move(self, io: Any, id: str, metadata: Mapping[str, Any]) -> None: ...


class MultiDeleteStorage(Storage, Protocol):
    def multi_delete(self, ids: Iterable[str]) -> None: ...


def supports(storage: Storage, capability: str) -> bool:
    return callable(getattr(storage, capability, None))
