"""Domain layer - value types and errors, no I/O."""

from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import (
    Branch,
    Leaf,
    VariantKind,
    VariantSchema,
    VariantTree,
)
from attachery.domain.errors import (
    AttacheryError,
    BatchTaskFailure,
    ConfigurationError,
    FileNotFound,
    InvalidFileData,
    InvalidInput,
    MirrorFailure,
    MirrorFailureDetail,
    PromotionConflict,
    RecordMissing,
    UnknownVariantName,
    UploadError,
    ValidationError,
)

__all__ = [
    # Entities
    "StoredFileRef",
    "Leaf",
    "Branch",
    "VariantTree",
    "VariantKind",
    "VariantSchema",
    # Errors
    "AttacheryError",
    "BatchTaskFailure",
    "ConfigurationError",
    "FileNotFound",
    "InvalidFileData",
    "InvalidInput",
    "MirrorFailure",
    "MirrorFailureDetail",
    "PromotionConflict",
    "RecordMissing",
    "UnknownVariantName",
    "UploadError",
    "ValidationError",
]
