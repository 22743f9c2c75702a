"""Race-safe promotion of cached files into permanent storage.

Promotion can't take a local lock because the record usually lives in a
database shared by several processes (a web request and a background job
promoting the same upload, for example). Instead it relies on the
compare-and-swap contract of the ``PersistenceAdapter``:

    1. before := reload()
    2. before != cached tree            -> PromotionConflict, nothing uploaded
    3. candidate := upload cached leaves to store
    4. persist(candidate)
         SUCCESS  -> delete cached leaves, return candidate
         CONFLICT -> delete candidate leaves, PromotionConflict

An upload failure in step 3 leaves the cached tree untouched and removes
whatever part of the candidate was already uploaded, so the attempt can be
retried. At most one attempt per (record, attachment) commits; losers leave
no files behind in store because every attempt uploads under fresh ids.
With ``keep_location`` attempts share the cached ids, so a loser only
deletes the files the freshly reloaded value doesn't point at.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from functools import partial
from typing import Optional

from loguru import logger

from attachery.application.ports.persistence import PersistenceAdapter, PersistResult
from attachery.application.replication import MirrorReport
from attachery.application.uploader import Uploader
from attachery.domain.entities.stored_file import StoredFileRef
from attachery.domain.entities.variant_tree import Branch, VariantTree, leaves, merge, tree_equals
from attachery.domain.errors import PromotionConflict, RecordMissing


def as_persist_result(value) -> PersistResult:
    """Accept enum members, their string values, or plain booleans from adapters."""
    if isinstance(value, bool):
        return PersistResult.SUCCESS if value else PersistResult.CONFLICT
    return PersistResult(value)


@dataclass(frozen=True)
class PromotionAttempt:
    record_key: Optional[str]
    attachment_name: str
    cached_tree: Optional[VariantTree[StoredFileRef]]
    candidate_tree: Optional[VariantTree[StoredFileRef]] = None

    def describe(self) -> str:
        return f"{self.attachment_name}[{self.record_key or '?'}]"


class AtomicPromotion:
    def __init__(
        self,
        cache: Uploader,
        store: Uploader,
        keep_cached: bool = False,
        keep_location: bool = False,
    ):
        self.cache = cache
        self.store = store
        self.keep_cached = keep_cached
        self.keep_location = keep_location

    def promote(
        self,
        cached_tree: VariantTree[StoredFileRef],
        persistence: PersistenceAdapter,
        name: str,
        record_key: Optional[str] = None,
        report: Optional[MirrorReport] = None,
    ) -> VariantTree[StoredFileRef]:
        own_report = report is None
        report = report if report is not None else MirrorReport()
        attempt = PromotionAttempt(record_key, name, cached_tree)

        before = persistence.reload()
        if not tree_equals(before, cached_tree):
            logger.warning(f"Not promoting {attempt.describe()}: attachment changed before upload")
            raise PromotionConflict("attachment has changed", attempt)

        candidate = self.store.upload_tree(
            cached_tree,
            keep_ids=self.keep_location,
            report=report,
            on_failure=partial(self._release, persistence, report, "partially uploaded"),
        )
        attempt = replace(attempt, candidate_tree=candidate)
        self._commit(attempt, candidate, persistence, report)

        if self.keep_cached:
            logger.debug(f"Keeping cached files of {attempt.describe()}")
        else:
            self._cleanup(self.cache, cached_tree, report, "cached")
        logger.info(f"Promoted {attempt.describe()}: {len(leaves(candidate))} file(s) to {self.store.storage_key!r}")
        if own_report:
            report.raise_for_failures(candidate)
        return candidate

    def add_variants(
        self,
        current: Optional[VariantTree[StoredFileRef]],
        uploaded: Branch[StoredFileRef],
        persistence: PersistenceAdapter,
        name: str,
        record_key: Optional[str] = None,
        report: Optional[MirrorReport] = None,
    ) -> Branch[StoredFileRef]:
        """Merge already-stored variants into ``current`` and persist atomically.

        Replaced variants are deleted after the merge commits; on conflict
        the freshly uploaded variants are deleted instead.
        """
        own_report = report is None
        report = report if report is not None else MirrorReport()
        attempt = PromotionAttempt(record_key, name, current, uploaded)

        try:
            before = persistence.reload()
        except Exception:
            self._cleanup(self.store, uploaded, report, "new")
            raise
        if not tree_equals(before, current):
            logger.warning(f"Not adding variants to {attempt.describe()}: attachment changed")
            self._cleanup(self.store, uploaded, report, "new")
            raise PromotionConflict("attachment has changed", attempt)

        merged = merge(current, uploaded)
        replaced = [current[variant] for variant in uploaded.names() if isinstance(current, Branch) and variant in current]
        self._commit(replace(attempt, candidate_tree=merged), merged, persistence, report, discard=uploaded)

        for subtree in replaced:
            self._cleanup(self.store, subtree, report, "replaced")
        logger.info(f"Added {len(uploaded.names())} variant(s) to {attempt.describe()}")
        if own_report:
            report.raise_for_failures(merged)
        return merged

    def _commit(
        self,
        attempt: PromotionAttempt,
        candidate: VariantTree[StoredFileRef],
        persistence: PersistenceAdapter,
        report: MirrorReport,
        discard: Optional[VariantTree[StoredFileRef]] = None,
    ) -> None:
        orphaned = discard if discard is not None else candidate
        try:
            result = as_persist_result(persistence.persist(candidate))
        except Exception as e:
            logger.error(f"Persisting {attempt.describe()} failed, removing uploaded files: {e}")
            self._release(persistence, report, "orphaned", leaves(orphaned))
            raise

        if result is PersistResult.CONFLICT:
            logger.warning(f"Lost promotion race for {attempt.describe()}, removing uploaded files")
            self._release(persistence, report, "orphaned", leaves(orphaned))
            raise PromotionConflict("attachment changed while promoting", attempt)

    def _cleanup(
        self,
        uploader: Uploader,
        tree: Optional[VariantTree[StoredFileRef]],
        report: MirrorReport,
        label: str,
    ) -> None:
        # The outcome is already decided; a failed delete only leaves garbage behind
        try:
            uploader.delete_tree(tree, report)
        except Exception as e:
            logger.error(f"Failed to delete {label} files {[ref.id for ref in leaves(tree)]}: {e}")

    def _release(
        self,
        persistence: PersistenceAdapter,
        report: MirrorReport,
        label: str,
        refs: list[StoredFileRef],
    ) -> None:
        """Delete uploaded store files, except those the persisted value points at.

        With ``keep_location`` every attempt uploads under the cached ids, so a
        competing promotion may already have committed the very same files.
        """
        if self.keep_location and refs:
            try:
                persisted = set(leaves(persistence.reload()))
            except RecordMissing:
                persisted = set()
            except Exception as e:
                logger.error(f"Could not reload before removing {label} files, leaving them in place: {e}")
                return
            committed = [ref for ref in refs if ref in persisted]
            if committed:
                logger.info(f"Keeping {len(committed)} {label} file(s) committed by a concurrent promotion")
            refs = [ref for ref in refs if ref not in persisted]
        if not refs:
            return
        try:
            self.store.delete_many(refs, report)
        except Exception as e:
            logger.error(f"Failed to delete {label} files {[ref.id for ref in refs]}: {e}")
