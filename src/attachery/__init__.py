"""attachery - attachment lifecycle for files owned by records.

Upload into a cache storage, validate, promote atomically into a store
storage, keep named variants, and replicate to mirror and backup storages.
"""

from attachery.application import (
    Attacher,
    AttacherConfig,
    BackupConfig,
    KeepFiles,
    MirrorSet,
    StorageRegistry,
)
from attachery.application.ports import FunctionPersistence, PersistResult
from attachery.domain import (
    AttacheryError,
    Branch,
    Leaf,
    MirrorFailure,
    PromotionConflict,
    RecordMissing,
    StoredFileRef,
    UploadError,
    ValidationError,
    VariantSchema,
)

__version__ = "0.1.0"

__all__ = [
    "Attacher",
    "AttacherConfig",
    "BackupConfig",
    "KeepFiles",
    "MirrorSet",
    "StorageRegistry",
    "FunctionPersistence",
    "PersistResult",
    "AttacheryError",
    "Branch",
    "Leaf",
    "MirrorFailure",
    "PromotionConflict",
    "RecordMissing",
    "StoredFileRef",
    "UploadError",
    "ValidationError",
    "VariantSchema",
]
