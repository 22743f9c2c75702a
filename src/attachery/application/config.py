"""Immutable configuration for attachers and their collaborators.

Built once (by hand or from ``Settings``) and passed into constructors.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from attachery.domain.entities.variant_tree import VariantSchema

Validator = Callable[[Any], Iterable[str]]


class KeepFiles(BaseModel):
    """Which deletions to skip. References are cleared either way."""

    model_config = ConfigDict(frozen=True)

    destroyed: bool = False
    replaced: bool = False
    cached: bool = False


class MirrorSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    mirrors: dict[str, tuple[str, ...]]
    upload: bool = True
    delete: bool = True
    # Hand fan-out to a Dispatcher instead of running it inline
    background: bool = False
    best_effort: bool = False

    @field_validator("mirrors", mode="before")
    @classmethod
    def _normalize_mirrors(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {
                str(key): (targets,) if isinstance(targets, str) else tuple(targets)
                for key, targets in value.items()
            }
        return value

    @model_validator(mode="after")
    def _check_targets(self) -> MirrorSet:
        for source, targets in self.mirrors.items():
            if source in targets:
                raise ValueError(f"storage {source!r} cannot mirror to itself")
        return self

    def mirrors_for(self, storage_key: str) -> tuple[str, ...]:
        return self.mirrors.get(storage_key, ())


class BackupConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    storage: str
    # Delete the backup copy when the stored file is deleted
    delete: bool = True
    best_effort: bool = False


class AttacherConfig(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    cache: str = "cache"
    store: str = "store"
    variants: VariantSchema = Field(default_factory=VariantSchema.single)
    threads: int = Field(default=3, ge=1)
    keep_files: KeepFiles = Field(default_factory=KeepFiles)
    keep_location: bool = False
    mirroring: MirrorSet | None = None
    backup: BackupConfig | None = None
    validators: tuple[Validator, ...] = ()

    @model_validator(mode="after")
    def _check_storages(self) -> AttacherConfig:
        if self.cache == self.store:
            raise ValueError("cache and store must be different storages")
        if self.backup is not None and self.backup.storage in (self.cache, self.store):
            raise ValueError(f"backup storage {self.backup.storage!r} must differ from cache and store")
        return self
