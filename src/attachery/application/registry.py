from __future__ import annotations

from typing import Iterator, Mapping

from attachery.application.ports.storage import Storage
from attachery.domain.errors import ConfigurationError


class StorageRegistry(Mapping[str, Storage]):
    """Storages by key ("cache", "store", mirror and backup keys)."""

    def __init__(self, storages: Mapping[str, Storage] | None = None, **named: Storage):
        self._storages: dict[str, Storage] = {**(storages or {}), **named}

    def __getitem__(self, key: str) -> Storage:
        return self._storages[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._storages)

    def __len__(self) -> int:
        return len(self._storages)

    def find(self, key: str) -> Storage:
        try:
            return self._storages[key]
        except KeyError:
            raise ConfigurationError(
                f"storage {key!r} isn't registered (known: {', '.join(sorted(self._storages)) or 'none'})"
            ) from None

    def require(self, *keys: str) -> None:
        for key in keys:
            self.find(key)
