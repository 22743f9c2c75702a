"""Replication of primary uploads and deletes to mirror and backup storages.

Failures never roll back the primary operation. They are collected as
``MirrorFailureDetail`` records into a ``MirrorReport`` and raised as a
single ``MirrorFailure`` once the primary operation has committed, or only
logged when the mirror set is configured as best-effort.
"""

from __future__ import annotations

import threading
from contextlib import closing
from functools import partial
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from attachery.application.config import BackupConfig, MirrorSet
from attachery.application.executor import run_all
from attachery.application.ports.dispatcher import Dispatcher
from attachery.application.registry import StorageRegistry
from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import VariantTree, leaves
from attachery.domain.errors import ConfigurationError, MirrorFailure, MirrorFailureDetail

UPLOAD = "upload"
DELETE = "delete"


class MirrorReport:
    """Thread-safe collector of failed secondary operations for one primary operation."""

    def __init__(self) -> None:
        self._details: list[MirrorFailureDetail] = []
        self._lock = threading.Lock()

    @property
    def details(self) -> list[MirrorFailureDetail]:
        with self._lock:
            return list(self._details)

    def record(self, details: Iterable[MirrorFailureDetail], best_effort: bool = False) -> None:
        for detail in details:
            if best_effort:
                logger.warning(f"Ignoring failed mirror operation (best effort): {detail}")
                continue
            logger.error(f"Mirror operation failed: {detail}")
            with self._lock:
                self._details.append(detail)

    def raise_for_failures(self, result: Any = None) -> None:
        details = self.details
        if details:
            raise MirrorFailure(details, result)


def copy_file(storages: StorageRegistry, ref: StoredFileRef, target: str) -> None:
    """Stream a stored file to another storage under the same id."""
    source = storages.find(ref.storage_key)
    with closing(source.open(ref.id)) as io:
        storages.find(target).upload(io, ref.id, dict(ref.metadata))


def _attempt(action: str, target: str, ref: StoredFileRef, op: Callable[[], None]) -> Optional[MirrorFailureDetail]:
    try:
        op()
    except Exception as e:
        return MirrorFailureDetail(storage_key=target, file_id=ref.id, action=action, error=e)
    logger.debug(f"Mirrored {action} of {ref.id!r} to {target!r}")
    return None


def fan_out(
    storages: StorageRegistry,
    action: str,
    ref: StoredFileRef,
    targets: Iterable[str],
    threads: int = 3,
) -> list[MirrorFailureDetail]:
    """Repeat ``action`` for ``ref`` on every target, returning the failures.

    Every target is attempted; one failing mirror doesn't stop the others.
    """
    tasks = []
    for target in targets:
        if action == UPLOAD:
            op = partial(copy_file, storages, ref, target)
        else:
            op = partial(storages.find(target).delete, ref.id)
        tasks.append(partial(_attempt, action, target, ref, op))
    results = run_all(tasks, workers=threads, name=f"mirror-{ref.storage_key}")
    return [detail for detail in results if detail is not None]


class Replicator:
    """Fans primary uploads/deletes out to the mirrors registered for their storage.

    Runs the fan-out inline (in parallel across mirrors) or, when the mirror
    set is marked ``background``, hands each fan-out to the dispatcher.
    """

    def __init__(
        self,
        mirroring: MirrorSet,
        storages: StorageRegistry,
        dispatcher: Dispatcher | None = None,
        threads: int = 3,
    ):
        if mirroring.background and dispatcher is None:
            raise ConfigurationError("background mirroring needs a dispatcher")
        for source, targets in mirroring.mirrors.items():
            storages.require(source, *targets)
        self.mirroring = mirroring
        self.storages = storages
        self.dispatcher = dispatcher
        self.threads = threads

    def targets(self, ref: StoredFileRef) -> tuple[str, ...]:
        return self.mirroring.mirrors_for(ref.storage_key)

    def replicate_upload(self, ref: StoredFileRef, report: MirrorReport) -> None:
        if self.mirroring.upload:
            self._replicate(UPLOAD, ref, report)

    def replicate_delete(self, ref: StoredFileRef, report: MirrorReport) -> None:
        if self.mirroring.delete:
            self._replicate(DELETE, ref, report)

    def mirror(self, action: str, ref: StoredFileRef) -> list[MirrorFailureDetail]:
        """Run the fan-out now and return the failed operations."""
        return fan_out(self.storages, action, ref, self.targets(ref), self.threads)

    def retry(self, detail: MirrorFailureDetail, ref: StoredFileRef) -> None:
        """Re-run one failed mirror operation, raising if it fails again."""
        if detail.action == UPLOAD:
            copy_file(self.storages, ref, detail.storage_key)
        else:
            self.storages.find(detail.storage_key).delete(detail.file_id)
        logger.info(f"Retried mirror {detail.action} of {detail.file_id!r} on {detail.storage_key!r}")

    def _replicate(self, action: str, ref: StoredFileRef, report: MirrorReport) -> None:
        if not self.targets(ref):
            return
        if self.mirroring.background:
            self.dispatcher.submit(partial(self._background, action, ref))
            logger.debug(f"Scheduled background mirror {action} of {ref.id!r}")
            return
        report.record(self.mirror(action, ref), best_effort=self.mirroring.best_effort)

    def _background(self, action: str, ref: StoredFileRef) -> None:
        report = MirrorReport()
        report.record(self.mirror(action, ref), best_effort=self.mirroring.best_effort)
        report.raise_for_failures(ref)


class Backup:
    """Copies promoted files to a backup storage, optionally keeping them after deletion."""

    def __init__(self, config: BackupConfig, storages: StorageRegistry, threads: int = 3):
        storages.require(config.storage)
        self.config = config
        self.storages = storages
        self.threads = threads

    def backup_tree(self, tree: Optional[VariantTree[StoredFileRef]], report: MirrorReport) -> None:
        self._each(UPLOAD, tree, report)

    def delete_tree(self, tree: Optional[VariantTree[StoredFileRef]], report: MirrorReport) -> None:
        if not self.config.delete:
            logger.debug("Keeping backup copies (backup delete disabled)")
            return
        self._each(DELETE, tree, report)

    def backup_ref(self, ref: StoredFileRef) -> StoredFileRef:
        return ref.with_storage(self.config.storage)

    def _each(self, action: str, tree: Optional[VariantTree[StoredFileRef]], report: MirrorReport) -> None:
        refs = leaves(tree)
        if not refs:
            return
        tasks = [partial(fan_out, self.storages, action, ref, (self.config.storage,), 1) for ref in refs]
        for details in run_all(tasks, workers=self.threads, name="backup"):
            report.record(details, best_effort=self.config.best_effort)
