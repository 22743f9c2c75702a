"""Attacher: current/previous state of one attachment on one record.

Typical flow:

    attacher = Attacher("avatar", config, storages, record_key="user:42")
    attacher.load(row["avatar_data"])       # last persisted value
    attacher.assign(uploaded_io)            # -> cache
    row["avatar_data"] = attacher.data()    # host framework saves the record
    attacher.finalize(persistence)          # delete replaced files, promote to store

``assign``, ``promote``, ``replace`` and ``destroy`` run through the
configured stages (see ``attachery.application.stages``), outermost first.
"""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from functools import partial
from typing import Any, Callable, Iterator, Mapping, Optional, Sequence

from loguru import logger

from attachery.application.config import AttacherConfig
from attachery.application.ports.dispatcher import Dispatcher
from attachery.application.ports.persistence import PersistenceAdapter
from attachery.application.promotion import AtomicPromotion
from attachery.application.registry import StorageRegistry
from attachery.application.replication import Backup, MirrorReport, Replicator
from attachery.application.stages import BackupStage, compose
from attachery.application.uploader import Uploader
from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import (
    Branch,
    Leaf,
    VariantKind,
    VariantTree,
    deserialize,
    from_raw,
    get_path,
    leaves,
    serialize,
    tree_equals,
)
from attachery.domain.errors import ConfigurationError, InvalidFileData, InvalidInput, ValidationError

Tree = Optional[VariantTree[StoredFileRef]]


class Attacher:
    def __init__(
        self,
        name: str,
        config: AttacherConfig,
        storages: StorageRegistry,
        record_key: Optional[str] = None,
        replicator: Replicator | None = None,
        stages: Sequence[Any] = (),
        dispatcher: Dispatcher | None = None,
    ):
        storages.require(config.cache, config.store)
        if config.mirroring is not None:
            if replicator is not None:
                raise ConfigurationError(f"{name!r} got both a replicator and a mirroring config")
            replicator = Replicator(config.mirroring, storages, dispatcher, config.threads)
        stages = compose(*stages)
        if config.backup is not None and not any(isinstance(stage, BackupStage) for stage in stages):
            # innermost
            stages += (BackupStage(Backup(config.backup, storages, config.threads)),)
        self.name = name
        self.config = config
        self.storages = storages
        self.record_key = record_key
        self.stages = stages
        self.cache = Uploader(config.cache, storages, config.threads, replicator)
        self.store = Uploader(config.store, storages, config.threads, replicator)
        self.promotion = AtomicPromotion(
            self.cache,
            self.store,
            keep_cached=config.keep_files.cached,
            keep_location=config.keep_location,
        )
        self.errors: list[str] = []

        self._current: Tree = None
        self._persisted: Tree = None
        self._previous: Tree = None
        self._replacing = False
        self._local = threading.local()

    def __repr__(self) -> str:
        return f"<Attacher {self.name}[{self.record_key or '?'}]>"

    # State

    @property
    def previous(self) -> Tree:
        return self._previous

    @property
    def report(self) -> Optional[MirrorReport]:
        """Report of the operation running on this thread, if any."""
        return getattr(self._local, "report", None)

    def get(self) -> Tree:
        return self._current

    def __getitem__(self, name: str) -> Tree:
        return get_path(self._current, *name.split("/"))

    def changed(self) -> bool:
        return not tree_equals(self._current, self._persisted)

    def cached(self, tree: Tree = None) -> bool:
        tree = self._current if tree is None else tree
        refs = leaves(tree)
        return bool(refs) and all(self.cache.uploaded(ref) for ref in refs)

    def stored(self, tree: Tree = None) -> bool:
        tree = self._current if tree is None else tree
        refs = leaves(tree)
        return bool(refs) and all(self.store.uploaded(ref) for ref in refs)

    def load(self, data: Any) -> Tree:
        """Initialise from the persisted column value (JSON text, dict or tree)."""
        tree = self._coerce(data)
        self._current = self._persisted = tree
        self._previous = None
        self._replacing = False
        self.errors = []
        return tree

    def data(self) -> Optional[dict[str, Any]]:
        return serialize(self._current)

    def dumps(self) -> Optional[str]:
        data = self.data()
        return json.dumps(data) if data is not None else None

    # Lifecycle

    def assign(self, raw: Any, context: Optional[Mapping[str, Any]] = None) -> Tree:
        """Upload ``raw`` to cache and make it the current value.

        ``raw`` is a readable stream, a mapping of variant names to streams
        (nested for derivatives), or ``None`` to detach. ``context`` may carry
        ``metadata`` merged into every uploaded file's metadata.
        """
        with self.reporting() as report:
            result = self._through("assign", self._assign, raw, context or {})
            report.raise_for_failures(result)
        return result

    def assign_cached(self, data: Any) -> Tree:
        """Attach files that were already uploaded to cache (e.g. by a direct upload)."""
        tree = self._coerce(data)
        if tree is not None and not self.cached(tree):
            raise InvalidFileData(f"{self!r} only accepts files already on {self.config.cache!r}")
        self._validate(tree)
        self._change(tree)
        return tree

    def promote(self, persistence: PersistenceAdapter | None = None) -> Tree:
        """Move the cached value into store, atomically when ``persistence`` is given."""
        with self.reporting() as report:
            result = self._through("promote", self._promote, persistence)
            report.raise_for_failures(result)
        return result

    def replace(self) -> None:
        """Delete the value that the last saved change replaced."""
        if not self._replacing:
            return
        previous, self._previous, self._replacing = self._previous, None, False
        if previous is None:
            return
        with self.reporting() as report:
            self._through("replace", self._replace, previous)
            report.raise_for_failures()

    def finalize(self, persistence: PersistenceAdapter | None = None) -> Tree:
        """Call once the record was saved with ``data()``."""
        with self.reporting() as report:
            self._persisted = self._current
            self.replace()
            result = self._current
            if self.cached():
                result = self.promote(persistence)
            report.raise_for_failures(result)
        return result

    def destroy(self) -> None:
        """Delete every file of the current value and clear it."""
        tree, self._current, self._persisted = self._current, None, None
        self._previous, self._replacing = None, False
        with self.reporting() as report:
            self._through("destroy", self._destroy, tree)
            report.raise_for_failures()

    def add_derivatives(self, raw: Mapping[str, Any], persistence: PersistenceAdapter) -> Tree:
        """Upload derivatives straight to store and merge them into the persisted value."""
        if self.config.variants.kind is not VariantKind.DERIVATIVES:
            raise InvalidInput(f"{self!r} isn't configured for derivatives")
        if not isinstance(raw, Mapping):
            raise InvalidInput("derivatives must be given as a mapping of names to files")
        with self.reporting() as report:
            uploaded = self.store.upload_tree(from_raw(raw, self.config.variants), report=report)
            merged = self.promotion.add_variants(
                self._current, uploaded, persistence, self.name, self.record_key, report
            )
            self._current = self._persisted = merged
            report.raise_for_failures(merged)
        return merged

    # Core operations, wrapped by stages

    def _assign(self, raw: Any, context: Mapping[str, Any]) -> Tree:
        if raw is None:
            self._change(None)
            return None
        pending = from_raw(raw, self.config.variants)
        tree = self.cache.upload_tree(pending, metadata=context.get("metadata"), report=self.report)
        try:
            self._validate(tree)
        except ValidationError:
            logger.info(f"Rejected assignment to {self!r}: {'; '.join(self.errors)}")
            self.cache.delete_tree(tree, self.report)
            raise
        self._change(tree)
        return tree

    def _promote(self, persistence: PersistenceAdapter | None) -> Tree:
        cached_tree = self._current
        if cached_tree is None or not self.cached(cached_tree):
            return cached_tree
        if persistence is None:
            stored = self.store.upload_tree(cached_tree, keep_ids=self.config.keep_location, report=self.report)
            if not self.config.keep_files.cached:
                self.cache.delete_tree(cached_tree, self.report)
            logger.debug(f"Promoted {self!r} without persistence checks")
        else:
            stored = self.promotion.promote(cached_tree, persistence, self.name, self.record_key, self.report)
        self._current = self._persisted = stored
        return stored

    def _replace(self, previous: Tree) -> None:
        if previous is None:
            return
        if self.cached(previous):
            # never promoted
            if not self.config.keep_files.cached:
                self.cache.delete_tree(previous, self.report)
            return
        if self.config.keep_files.replaced:
            logger.debug(f"Keeping replaced files of {self!r}")
            return
        self.store.delete_tree(previous, self.report)
        logger.info(f"Deleted {len(leaves(previous))} replaced file(s) of {self!r}")

    def _destroy(self, tree: Tree) -> None:
        if tree is None:
            return
        if self.config.keep_files.destroyed:
            logger.debug(f"Keeping destroyed files of {self!r}")
            return
        self.store.delete_tree(tree, self.report)
        logger.info(f"Destroyed {len(leaves(tree))} file(s) of {self!r}")

    # Helpers

    def _change(self, tree: Tree) -> None:
        current = self._current
        if tree_equals(tree, current):
            return
        if not self._replacing:
            self._previous, self._replacing = current, True
        elif current is not None and self.cached(current):
            # Superseded before it was ever saved
            if self.config.keep_files.cached:
                logger.debug(f"Keeping superseded cached files of {self!r}")
            else:
                self.cache.delete_tree(current, self.report)
        self._current = tree

    def _validate(self, tree: Tree) -> None:
        self.errors = []
        if tree is None:
            return
        for validator in self.config.validators:
            self.errors.extend(validator(tree))
        if self.errors:
            raise ValidationError(self.errors)

    def _coerce(self, data: Any) -> Tree:
        if data is None or data == "" or data == {}:
            return None
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise InvalidFileData(f"{self!r} data is not valid JSON: {e}") from e
        if isinstance(data, (Leaf, Branch)):
            return data
        return deserialize(data, self.config.variants)

    @contextmanager
    def reporting(self) -> Iterator[MirrorReport]:
        """Scope in which mirror failures of one public operation are collected."""
        # Nested lifecycle calls share the outermost operation's report
        current = self.report
        if current is not None:
            yield _NestedReport(current)
            return
        self._local.report = MirrorReport()
        try:
            yield self._local.report
        finally:
            self._local.report = None

    def _through(self, operation: str, core: Callable[..., Any], *args: Any) -> Any:
        call = core
        for stage in reversed(self.stages):
            call = partial(getattr(stage, operation), self, call)
        return call(*args)


class _NestedReport:
    """Report view for nested calls: failures are raised by the outermost call only."""

    def __init__(self, report: MirrorReport):
        self._report = report

    def __getattr__(self, name: str) -> Any:
        return getattr(self._report, name)

    def raise_for_failures(self, result: Any = None) -> None:
        return None
