# worker/app/services/reconcile.py
"""
Catalogue reconciler: the only writer of catalogue rows' identity and
classification columns.

Contract:
    reconcile(store, scope, discovered, complete=..., batch_size=..., budget=...,
              scan_started=None)
        -> ReconcileResult(created, updated, unchanged, deleted_stale, failures, exhausted)

Rules:
    * Join key is the lower-cased remote path, never the id.
    * New path -> classification columns only (asset and dimension columns
      are left to their table defaults). Known path -> only MUTABLE_COLUMNS +
      scanned_at, written under the existing row's id, so asset and dimension
      columns survive the merge.
    * Creates and updates go out in separate batches: every object in one
      bulk upsert carries the same keys.
    * Decisions for one path never depend on the order of other paths.
    * Rows of `scope` whose path was not observed are deleted only when the
      walk was complete and every write batch got a chance to run.
    * With `scan_started` (a walk spread over several invocations), rows
      already confirmed since then are neither rewritten nor stale.
    * Writes go out in batches; a failed batch is retried row by row and rows
      that still fail are reported, not dropped.
    * The budget is checked before each batch. A batch in flight always
      finishes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from worker.app.schema.catalogue_schema import MUTABLE_COLUMNS, CatalogueEntry, ItemFailure
from worker.app.services.catalogue_store import CatalogueStore
from worker.app.services.supabase_client import SupabaseError
from worker.app.utils.batching import batched
from worker.app.utils.budget import TimeBudget, unbounded
from worker.app.utils.entry_ids import canonical_remote_path

log = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    scope: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    # unchanged rows skipped because this scan already confirmed them
    already_current: int = 0
    deleted_stale: int = 0
    failures: List[ItemFailure] = field(default_factory=list)
    exhausted: bool = False
    tombstoned: bool = False

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.unchanged

    @property
    def written(self) -> int:
        return self.processed - self.already_current + self.deleted_stale


@dataclass
class _Write:
    row: Optional[Dict[str, Any]]  # None: nothing to send
    path: str
    kind: str  # created | updated | unchanged


def _changed(old: CatalogueEntry, new: CatalogueEntry) -> bool:
    a = old.model_dump(mode="json", include=set(MUTABLE_COLUMNS))
    b = new.model_dump(mode="json", include=set(MUTABLE_COLUMNS))
    return a != b


def _confirmed_since(row: CatalogueEntry, since: Optional[datetime]) -> bool:
    return since is not None and row.scanned_at is not None and row.scanned_at >= since


def plan_writes(
    existing: Sequence[CatalogueEntry],
    discovered: Sequence[CatalogueEntry],
    *,
    scan_started: Optional[datetime] = None,
) -> Tuple[List[_Write], List[CatalogueEntry]]:
    """Split discovered entries into writes; return (writes, stale rows)."""
    by_path: Dict[str, CatalogueEntry] = {}
    for row in existing:
        by_path[canonical_remote_path(row.remote_path)] = row

    seen: Dict[str, CatalogueEntry] = {}
    for cand in discovered:
        # same path twice in one walk (case variants): last one wins
        seen[canonical_remote_path(cand.remote_path)] = cand

    writes: List[_Write] = []
    for path, cand in seen.items():
        old = by_path.get(path)
        if old is None:
            writes.append(_Write(cand.create_row(), path, "created"))
            continue
        merged = cand.model_copy(update={"id": old.id})
        if _changed(old, merged):
            writes.append(_Write(merged.mutable_row(), path, "updated"))
        elif _confirmed_since(old, scan_started):
            writes.append(_Write(None, path, "unchanged"))
        else:
            writes.append(_Write(merged.mutable_row(), path, "unchanged"))

    stale = [
        row
        for path, row in by_path.items()
        if path not in seen and not _confirmed_since(row, scan_started)
    ]
    return writes, stale


def _apply(
    store: CatalogueStore,
    writes: List[_Write],
    result: ReconcileResult,
    *,
    batch_size: int,
    budget: TimeBudget,
) -> None:
    for batch in batched(writes, batch_size):
        if budget.exhausted():
            result.exhausted = True
            log.info("budget exhausted during %s writes", result.scope)
            return
        try:
            store.upsert_rows([w.row for w in batch], timeout=budget.op_timeout())
            ok = batch
        except SupabaseError as e:
            log.warning(
                "batch of %d failed for %s (%s); retrying one by one",
                len(batch),
                result.scope,
                e,
            )
            ok = []
            for w in batch:
                try:
                    store.upsert_rows([w.row], timeout=budget.op_timeout())
                    ok.append(w)
                except SupabaseError as item_err:
                    result.failures.append(
                        ItemFailure(
                            id=w.row.get("id"),
                            path=w.path,
                            stage="write",
                            error=str(item_err),
                        )
                    )
        for w in ok:
            setattr(result, w.kind, getattr(result, w.kind) + 1)


def _tombstone(
    store: CatalogueStore,
    stale: List[CatalogueEntry],
    result: ReconcileResult,
    *,
    batch_size: int,
    budget: TimeBudget,
) -> None:
    for batch in batched(stale, batch_size):
        if budget.exhausted():
            result.exhausted = True
            return
        ids = [row.id for row in batch]
        try:
            store.delete_ids(ids, timeout=budget.op_timeout())
            result.deleted_stale += len(ids)
        except SupabaseError as e:
            log.warning("stale delete failed for %s: %s", result.scope, e)
            for row in batch:
                result.failures.append(
                    ItemFailure(
                        id=row.id, path=row.remote_path, stage="delete", error=str(e)
                    )
                )


def reconcile(
    store: CatalogueStore,
    scope: str,
    discovered: Sequence[CatalogueEntry],
    *,
    complete: bool,
    batch_size: int = 25,
    budget: Optional[TimeBudget] = None,
    scan_started: Optional[datetime] = None,
) -> ReconcileResult:
    budget = budget or unbounded()
    result = ReconcileResult(scope=scope)

    # SupabaseError here means we cannot tell new from known; let it propagate
    existing = store.rows_for_project(scope, timeout=budget.op_timeout())
    writes, stale = plan_writes(existing, discovered, scan_started=scan_started)

    current = [w for w in writes if w.row is None]
    result.unchanged += len(current)
    result.already_current = len(current)

    # full rows and partial rows never share a request
    for kinds in (("created",), ("updated", "unchanged")):
        group = [w for w in writes if w.row is not None and w.kind in kinds]
        _apply(store, group, result, batch_size=batch_size, budget=budget)
        if result.exhausted:
            break

    if not complete:
        if stale:
            log.info(
                "skipping tombstone for %s: walk incomplete (%d unobserved kept)",
                scope,
                len(stale),
            )
    elif not result.exhausted:
        result.tombstoned = True
        _tombstone(store, stale, result, batch_size=batch_size, budget=budget)

    log.info(
        "reconciled %s: created=%d updated=%d unchanged=%d deleted=%d failed=%d",
        scope,
        result.created,
        result.updated,
        result.unchanged,
        result.deleted_stale,
        len(result.failures),
    )
    return result


__all__ = ["ReconcileResult", "plan_writes", "reconcile"]
