"""Exception taxonomy for attachment lifecycle operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence


class AttacheryError(Exception):
    """Base exception for all attachery errors."""


class ConfigurationError(AttacheryError):
    """Raised when components are wired with an inconsistent configuration."""


class InvalidInput(AttacheryError):
    """Raised when raw upload input is neither a stream nor a mapping of streams."""


class InvalidFileData(AttacheryError):
    """Raised when serialized file data cannot be turned into a stored file."""


class FileNotFound(AttacheryError):
    """Raised by storages when a file id does not exist."""


class UnknownVariantName(AttacheryError):
    """Raised when a variant name is outside the declared set."""

    def __init__(self, name: str, message: str | None = None):
        self.name = name
        super().__init__(message or f"unknown variant: {name!r}")


class ValidationError(AttacheryError):
    """Raised when an assigned file fails validation.

    The newly cached files are already deleted when this propagates.
    """

    def __init__(self, errors: Sequence[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "validation failed")


class UploadError(AttacheryError):
    """Raised when uploading to a storage fails. No attachment state was changed."""

    def __init__(self, message: str, storage_key: str | None = None, file_id: str | None = None):
        self.storage_key = storage_key
        self.file_id = file_id
        super().__init__(message)


class RecordMissing(AttacheryError):
    """Raised when the owning record no longer exists."""


class PromotionConflict(AttacheryError):
    """Signals that the persisted attachment changed while promoting.

    Not a failure as such: the caller decides whether to retry or abandon.
    """

    def __init__(self, message: str = "attachment has changed", attempt: Any = None):
        self.attempt = attempt
        super().__init__(message)


class BatchTaskFailure(AttacheryError):
    """Raised by ParallelExecutor when a task fails. Carries the first error."""

    def __init__(self, error: BaseException):
        self.error = error
        super().__init__(f"batch task failed: {error!r}")


@dataclass(frozen=True)
class MirrorFailureDetail:
    """One failed secondary-storage operation."""

    storage_key: str
    file_id: str
    action: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.action} {self.file_id!r} on {self.storage_key!r}: {self.error}"


class MirrorFailure(AttacheryError):
    """Raised after the primary operation committed but some mirrors failed.

    ``result`` holds whatever the primary operation returned, so callers
    can keep using it while retrying the individual ``details``.
    """

    def __init__(self, details: Sequence[MirrorFailureDetail], result: Any = None):
        self.details = list(details)
        self.result = result
        summary = ", ".join(str(d) for d in self.details)
        super().__init__(f"{len(self.details)} mirror operation(s) failed: {summary}")
