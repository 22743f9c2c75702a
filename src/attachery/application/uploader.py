"""Uploading into, and deleting from, one storage."""

from __future__ import annotations

import mimetypes
import os
import threading
import uuid
from collections import defaultdict
from contextlib import closing
from functools import partial
from typing import Any, BinaryIO, Callable, Iterable, Mapping, Optional

from loguru import logger

from attachery.application.executor import run_all
from attachery.application.ports.storage import supports
from attachery.application.registry import StorageRegistry
from attachery.application.replication import MirrorReport, Replicator
from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import (
    Leaf,
    Path,
    VariantTree,
    iter_leaves,
    leaves,
    map_tree_with_path,
)
from attachery.domain.errors import AttacheryError, BatchTaskFailure, UploadError


def extract_filename(io: Any) -> Optional[str]:
    for attr in ("filename", "original_filename"):
        value = getattr(io, attr, None)
        if isinstance(value, str) and value:
            return value
    name = getattr(io, "name", None)
    if isinstance(name, str) and name:
        return os.path.basename(name)
    return None


def extract_mime_type(io: Any, filename: Optional[str]) -> Optional[str]:
    for attr in ("content_type", "mime_type"):
        value = getattr(io, attr, None)
        if isinstance(value, str) and value:
            return value
    if filename:
        return mimetypes.guess_type(filename)[0]
    return None


def extract_size(io: Any) -> Optional[int]:
    size = getattr(io, "size", None)
    if isinstance(size, int):
        return size
    try:
        position = io.tell()
        io.seek(0, os.SEEK_END)
        size = io.tell()
        io.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return size


def extract_metadata(io: Any) -> dict[str, Any]:
    filename = extract_filename(io)
    return {
        "filename": filename,
        "size": extract_size(io),
        "mime_type": extract_mime_type(io, filename),
    }


class Uploader:
    """Uploads streams (or files from other storages) into one storage key.

    Every successful primary upload/delete is handed to the replicator, and
    mirror failures are collected into a ``MirrorReport``. Methods called
    without a report raise ``MirrorFailure`` themselves once the primary
    operation is done.
    """

    def __init__(
        self,
        storage_key: str,
        storages: StorageRegistry,
        threads: int = 3,
        replicator: Replicator | None = None,
    ):
        self.storage_key = storage_key
        self.storages = storages
        self.storage = storages.find(storage_key)
        self.threads = threads
        self.replicator = replicator

    def generate_id(self, metadata: Mapping[str, Any], source_id: Optional[str] = None) -> str:
        """Random basename, keeping the extension of the source id or filename."""
        extension = os.path.splitext(source_id or "")[1] or os.path.splitext(metadata.get("filename") or "")[1]
        return uuid.uuid4().hex + extension.lower()

    def uploaded(self, ref: StoredFileRef) -> bool:
        return ref.storage_key == self.storage_key

    def upload(
        self,
        io: BinaryIO,
        id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        report: Optional[MirrorReport] = None,
    ) -> StoredFileRef:
        own_report = report is None
        report = report or MirrorReport()
        ref = self._put(io, id, {**extract_metadata(io), **(metadata or {})}, report, allow_move=True)
        if own_report:
            report.raise_for_failures(ref)
        return ref

    def upload_tree(
        self,
        tree: VariantTree[Any],
        metadata: Optional[Mapping[str, Any]] = None,
        keep_ids: bool = False,
        report: Optional[MirrorReport] = None,
        on_failure: Optional[Callable[[list[StoredFileRef]], None]] = None,
    ) -> VariantTree[StoredFileRef]:
        """Upload every leaf of ``tree`` in parallel.

        Leaves are raw streams, or ``StoredFileRef``s on another storage that
        get copied over (keeping their id when ``keep_ids``). If any upload
        fails, the leaves already uploaded are handed to ``on_failure``
        (deleted by default) and the failure is raised as ``UploadError``.
        """
        own_report = report is None
        report = report or MirrorReport()
        uploaded: dict[Path, StoredFileRef] = {}
        lock = threading.Lock()

        def upload_leaf(path: Path, value: Any) -> None:
            ref = self._upload_value(value, metadata, keep_ids, report)
            with lock:
                uploaded[path] = ref

        tasks = [partial(upload_leaf, path, value) for path, value in iter_leaves(tree)]
        try:
            run_all(tasks, workers=self.threads, name=f"upload-{self.storage_key}")
        except BatchTaskFailure as e:
            (on_failure or self._discard)(list(uploaded.values()))
            if isinstance(e.error, AttacheryError):
                raise e.error from e.error.__cause__
            raise UploadError(f"upload to {self.storage_key!r} failed: {e.error}", self.storage_key) from e.error

        result = map_tree_with_path(tree, lambda path, _: uploaded[path])
        logger.debug(f"Uploaded {len(uploaded)} file(s) to {self.storage_key!r}")
        if own_report:
            report.raise_for_failures(result)
        return result

    def delete(self, ref: StoredFileRef, report: Optional[MirrorReport] = None) -> None:
        own_report = report is None
        report = report or MirrorReport()
        self.storages.find(ref.storage_key).delete(ref.id)
        logger.debug(f"Deleted {ref.id!r} from {ref.storage_key!r}")
        if self.replicator:
            self.replicator.replicate_delete(ref, report)
        if own_report:
            report.raise_for_failures(ref)

    def delete_tree(self, tree: Optional[VariantTree[StoredFileRef]], report: Optional[MirrorReport] = None) -> None:
        self.delete_many(leaves(tree), report)

    def delete_many(self, refs: Iterable[StoredFileRef], report: Optional[MirrorReport] = None) -> None:
        """Delete refs, batching per storage through ``multi_delete`` when available."""
        own_report = report is None
        report = report or MirrorReport()
        by_storage: dict[str, list[StoredFileRef]] = defaultdict(list)
        for ref in refs:
            by_storage[ref.storage_key].append(ref)

        for storage_key, group in by_storage.items():
            storage = self.storages.find(storage_key)
            if len(group) > 1 and supports(storage, "multi_delete"):
                storage.multi_delete([ref.id for ref in group])
                logger.debug(f"Multi-deleted {len(group)} file(s) from {storage_key!r}")
            else:
                tasks = [partial(storage.delete, ref.id) for ref in group]
                run_all(tasks, workers=self.threads, name=f"delete-{storage_key}")
                logger.debug(f"Deleted {len(group)} file(s) from {storage_key!r}")
            if self.replicator:
                for ref in group:
                    self.replicator.replicate_delete(ref, report)

        if own_report:
            report.raise_for_failures()

    def _upload_value(
        self,
        value: Any,
        metadata: Optional[Mapping[str, Any]],
        keep_ids: bool,
        report: MirrorReport,
    ) -> StoredFileRef:
        if isinstance(value, Leaf):
            value = value.value
        if isinstance(value, StoredFileRef):
            source = self.storages.find(value.storage_key)
            file_id = value.id if keep_ids else self.generate_id(value.metadata, value.id)
            with closing(source.open(value.id)) as io:
                return self._put(io, file_id, {**value.metadata, **(metadata or {})}, report)
        return self._put(value, None, {**extract_metadata(value), **(metadata or {})}, report, allow_move=True)

    def _put(
        self,
        io: Any,
        id: Optional[str],
        metadata: dict[str, Any],
        report: MirrorReport,
        allow_move: bool = False,
    ) -> StoredFileRef:
        file_id = id or self.generate_id(metadata)
        try:
            # Files already stored elsewhere are copied, never moved
            if allow_move and supports(self.storage, "movable") and self.storage.movable(io, file_id):
                self.storage.move(io, file_id, metadata)
            else:
                self.storage.upload(io, file_id, metadata)
        except Exception as e:
            logger.error(f"Upload of {file_id!r} to {self.storage_key!r} failed: {e}")
            raise UploadError(f"upload of {file_id!r} to {self.storage_key!r} failed: {e}", self.storage_key, file_id) from e

        size = metadata.get("size")
        ref = StoredFileRef(
            storage_key=self.storage_key,
            id=file_id,
            metadata=metadata,
            byte_size=size if isinstance(size, int) else None,
        )
        if self.replicator:
            self.replicator.replicate_upload(ref, report)
        return ref

    def _discard(self, refs: list[StoredFileRef]) -> None:
        """Best-effort removal of files uploaded by a batch that failed."""
        if not refs:
            return
        try:
            self.delete_many(refs, MirrorReport())
        except Exception as e:
            logger.error(f"Failed to clean up {len(refs)} partially uploaded file(s) on {self.storage_key!r}: {e}")
        else:
            logger.warning(f"Cleaned up {len(refs)} partially uploaded file(s) on {self.storage_key!r}")
