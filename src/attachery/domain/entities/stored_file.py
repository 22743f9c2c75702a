from __future__ import annotations

import posixpath
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from attachery.domain.errors import InvalidFileData


@dataclass(frozen=True, eq=False)
class StoredFileRef:
    storage_key: str
    id: str

    # Informational only, never part of identity
    metadata: Mapping[str, Any] = field(default_factory=dict)
    byte_size: Optional[int] = None

    @property
    def identity(self) -> tuple[str, str]:
        return (self.storage_key, self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StoredFileRef):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)

    @property
    def filename(self) -> Optional[str]:
        return self.metadata.get("filename")

    @property
    def mime_type(self) -> Optional[str]:
        return self.metadata.get("mime_type")

    @property
    def size(self) -> Optional[int]:
        if self.byte_size is not None:
            return self.byte_size
        size = self.metadata.get("size")
        return int(size) if size is not None else None

    @property
    def extension(self) -> Optional[str]:
        ext = posixpath.splitext(self.id)[1] or posixpath.splitext(self.filename or "")[1]
        return ext[1:].lower() if ext else None

    def with_storage(self, storage_key: str) -> StoredFileRef:
        """Same file id on another storage (mirrors, backups)."""
        return replace(self, storage_key=storage_key)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "storage": self.storage_key, "metadata": dict(self.metadata)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StoredFileRef:
        if not isinstance(data, Mapping) or not data.get("id") or not data.get("storage"):
            raise InvalidFileData(f"{data!r} isn't valid stored file data")
        metadata = dict(data.get("metadata") or {})
        size = metadata.get("size")
        return cls(
            storage_key=str(data["storage"]),
            id=str(data["id"]),
            metadata=metadata,
            byte_size=int(size) if isinstance(size, int) else None,
        )
