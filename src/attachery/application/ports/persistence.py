from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import VariantTree


class PersistResult(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


class PersistenceAdapter(Protocol):
    """Compare-and-swap access to one attachment column of one record.

    ``reload`` reads the persisted value fresh and raises ``RecordMissing``
    when the record is gone. ``persist`` writes a new value only if the
    persisted value is still the one seen by the last ``reload``.
    """

    def reload(self) -> Optional[VariantTree[StoredFileRef]]: ...

    def persist(self, tree: Optional[VariantTree[StoredFileRef]]) -> PersistResult: ...


@dataclass(frozen=True)
class FunctionPersistence:
    """Adapter built from two plain callables supplied by the host framework."""

    reload_fn: Callable[[], Optional[VariantTree[StoredFileRef]]]
    persist_fn: Callable[[Optional[VariantTree[StoredFileRef]]], PersistResult]

    def reload(self) -> Optional[VariantTree[StoredFileRef]]:
        return self.reload_fn()

    def persist(self, tree: Optional[VariantTree[StoredFileRef]]) -> PersistResult:
        return self.persist_fn(tree)
