"""Lifecycle stages wrapping an attacher's assign/promote/replace/destroy.

A stage implements any of the four operations as
``operation(attacher, call_next, *args)`` and decides whether, when and how
to call the rest of the chain. Stages are given to the ``Attacher`` as an
ordered list; the first one is the outermost.
"""

from __future__ import annotations

import time
from functools import partial
from typing import Any, Callable, Iterable

from loguru import logger

from attachery.application.ports.dispatcher import Dispatcher
from attachery.application.replication import Backup
from attachery.domain.entities.variant_tree import leaves
from attachery.domain.errors import ConfigurationError

OPERATIONS = ("assign", "promote", "replace", "destroy")

Next = Callable[..., Any]


class Stage:
    """Pass-through base; subclasses override the operations they care about."""

    def assign(self, attacher, call_next: Next, raw: Any, context: dict) -> Any:
        return call_next(raw, context)

    def promote(self, attacher, call_next: Next, persistence: Any) -> Any:
        return call_next(persistence)

    def replace(self, attacher, call_next: Next, tree: Any) -> Any:
        return call_next(tree)

    def destroy(self, attacher, call_next: Next, tree: Any) -> Any:
        return call_next(tree)


class BackupStage(Stage):
    """Copies promoted files to the backup storage and deletes them with the originals."""

    def __init__(self, backup: Backup):
        self.backup = backup

    def promote(self, attacher, call_next: Next, persistence: Any) -> Any:
        result = call_next(persistence)
        if attacher.stored(result):
            self.backup.backup_tree(result, attacher.report)
        return result

    def replace(self, attacher, call_next: Next, tree: Any) -> Any:
        result = call_next(tree)
        if self._removed(attacher, tree, attacher.config.keep_files.replaced):
            self.backup.delete_tree(tree, attacher.report)
        return result

    def destroy(self, attacher, call_next: Next, tree: Any) -> Any:
        result = call_next(tree)
        if self._removed(attacher, tree, attacher.config.keep_files.destroyed):
            self.backup.delete_tree(tree, attacher.report)
        return result

    @staticmethod
    def _removed(attacher, tree: Any, kept: bool) -> bool:
        return tree is not None and not kept and attacher.stored(tree)


class BackgroundStage(Stage):
    """Hands promote and/or destroy to a dispatcher instead of running them inline.

    The attacher is handed over with the task; callers shouldn't touch it
    again until the task has run. Mirror failures inside the task are raised
    there, where the dispatcher logs them.
    """

    def __init__(self, dispatcher: Dispatcher, promote: bool = True, destroy: bool = True):
        self.dispatcher = dispatcher
        self.background_promote = promote
        self.background_destroy = destroy

    def promote(self, attacher, call_next: Next, persistence: Any) -> Any:
        if not self.background_promote or not attacher.cached():
            return call_next(persistence)
        self.dispatcher.submit(partial(_run_reported, attacher, call_next, persistence))
        logger.info(f"Scheduled background promotion of {attacher!r}")
        return attacher.get()

    def destroy(self, attacher, call_next: Next, tree: Any) -> Any:
        if not self.background_destroy or tree is None:
            return call_next(tree)
        self.dispatcher.submit(partial(_run_reported, attacher, call_next, tree))
        logger.info(f"Scheduled background deletion of {len(leaves(tree))} file(s) of {attacher!r}")
        return None


def _run_reported(attacher, call_next: Next, arg: Any) -> Any:
    with attacher.reporting() as report:
        result = call_next(arg)
        report.raise_for_failures(result)
    return result


class InstrumentationStage(Stage):
    """Logs every operation with the number of files involved and its duration.

        PROMOTE[avatar] user:42 1 file(s) (0.12s)
    """

    def __init__(self, level: str = "INFO"):
        self.level = level

    def assign(self, attacher, call_next: Next, raw: Any, context: dict) -> Any:
        return self._timed("assign", attacher, lambda result: result, call_next, raw, context)

    def promote(self, attacher, call_next: Next, persistence: Any) -> Any:
        return self._timed("promote", attacher, lambda result: result, call_next, persistence)

    def replace(self, attacher, call_next: Next, tree: Any) -> Any:
        return self._timed("replace", attacher, lambda _: tree, call_next, tree)

    def destroy(self, attacher, call_next: Next, tree: Any) -> Any:
        return self._timed("destroy", attacher, lambda _: tree, call_next, tree)

    def _timed(self, operation: str, attacher, files_of: Callable[[Any], Any], call_next: Next, *args: Any) -> Any:
        started = time.perf_counter()
        result = call_next(*args)
        elapsed = time.perf_counter() - started
        count = len(leaves(files_of(result)))
        logger.log(
            self.level,
            f"{operation.upper()}[{attacher.name}] {attacher.record_key or '-'} {count} file(s) ({elapsed:.2f}s)",
        )
        return result


def compose(*stages: Any) -> tuple[Any, ...]:
    """Validate an ordered stage list (outermost first) for an ``Attacher``."""
    flat: list[Any] = []
    for stage in stages:
        if isinstance(stage, (list, tuple)):
            flat.extend(stage)
        else:
            flat.append(stage)
    for stage in flat:
        missing = [op for op in OPERATIONS if not callable(getattr(stage, op, None))]
        if missing:
            raise ConfigurationError(f"{stage!r} doesn't implement {', '.join(missing)}")
    return tuple(flat)


def default_stages(
    backup: Backup | None = None,
    dispatcher: Dispatcher | None = None,
    instrument: bool = False,
    extra: Iterable[Any] = (),
) -> tuple[Any, ...]:
    """Conventional ordering: instrumentation outermost, then backgrounding, then backup."""
    stages: list[Any] = []
    if instrument:
        stages.append(InstrumentationStage())
    if dispatcher is not None:
        stages.append(BackgroundStage(dispatcher))
    if backup is not None:
        stages.append(BackupStage(backup))
    stages.extend(extra)
    return compose(*stages)
