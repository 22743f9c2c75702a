"""Shared test doubles."""

from __future__ import annotations

import io
import threading

from attachery.application.ports.persistence import PersistResult
from attachery.domain.entities.variant_tree import dumps, loads

TEST_BUCKET_NAME = "attachery-test"


class FakeUpload(io.BytesIO):
    """Uploaded file as a web framework hands it over."""

    def __init__(self, data: bytes = b"image data", filename: str | None = "photo.jpg", content_type: str | None = None):
        super().__init__(data)
        self.filename = filename
        self.content_type = content_type


def upload(data: bytes = b"image data", filename: str | None = "photo.jpg", content_type: str | None = None) -> FakeUpload:
    return FakeUpload(data, filename, content_type)


class MemoryRecord:
    """One attachment column of one record, with compare-and-swap writes."""

    def __init__(self, schema=None):
        self.schema = schema
        self.data: str | None = None
        self.lock = threading.Lock()
        self.exists = True

    def save(self, attacher) -> None:
        """What the host framework does when the record is saved."""
        with self.lock:
            self.data = attacher.dumps()

    def value(self):
        return loads(self.data, self.schema)

    def persistence(self) -> RecordPersistence:
        return RecordPersistence(self)


class RecordPersistence:
    def __init__(self, record: MemoryRecord):
        self.record = record
        self.reloads = 0
        self._seen: str | None = None

    def reload(self):
        from attachery.domain.errors import RecordMissing

        with self.record.lock:
            if not self.record.exists:
                raise RecordMissing("record was deleted")
            self.reloads += 1
            self._seen = self.record.data
        return loads(self._seen, self.record.schema)

    def persist(self, tree) -> PersistResult:
        with self.record.lock:
            if self.record.data != self._seen:
                return PersistResult.CONFLICT
            self.record.data = dumps(tree)
            self._seen = self.record.data
            return PersistResult.SUCCESS


class FailingStorage:
    """Storage double whose operations fail on demand."""

    def __init__(self, inner, fail_upload: bool = False, fail_delete: bool = False, fail_after: int = 0):
        self.inner = inner
        self.fail_upload = fail_upload
        self.fail_delete = fail_delete
        self.fail_after = fail_after
        self.uploads = 0
        self.lock = threading.Lock()

    def upload(self, io, id, metadata=None):
        with self.lock:
            self.uploads += 1
            count = self.uploads
        if self.fail_upload and count > self.fail_after:
            raise OSError(f"upload of {id} refused")
        self.inner.upload(io, id, metadata)

    def delete(self, id):
        if self.fail_delete:
            raise OSError(f"delete of {id} refused")
        self.inner.delete(id)

    def open(self, id):
        return self.inner.open(id)

    def exists(self, id):
        return self.inner.exists(id)
